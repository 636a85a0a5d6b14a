"""Adapter for the remote session store.

Public API
----------
.. autoclass:: SessionStoreClient
"""

from techxfer.api.client import (
    AuthenticationError,
    NotFoundError,
    PermanentError,
    SessionStoreClient,
    SessionStoreError,
    TransientError,
)

__all__ = [
    "AuthenticationError",
    "NotFoundError",
    "PermanentError",
    "SessionStoreClient",
    "SessionStoreError",
    "TransientError",
]

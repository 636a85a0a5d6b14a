"""Rich progress display for task batches.

Plugs into :class:`~techxfer.workflow.poller.TaskQueuePoller` as its
progress listener.
"""

from __future__ import annotations

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)


class BatchProgressTracker:
    """Single-bar Rich tracker for one task batch.

    Usage::

        tracker = BatchProgressTracker("Conversion", total=9)
        poller.listener = tracker
        with tracker:
            await poller.run_batch(session_id, tasks)

    The bar is indeterminate when the total is unknown (resumed sessions).
    """

    def __init__(
        self,
        description: str,
        total: int | None = None,
        console: Console | None = None,
    ) -> None:
        self._description = description
        self._total = total
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
            console=console,
        )
        self._task: TaskID | None = None
        self.history: list[str] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()
        self._task = self._progress.add_task(
            f"[green]{self._description}",
            total=self._total,
            status="starting...",
        )

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> BatchProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Listener
    # ------------------------------------------------------------------

    def __call__(self, completed: int | None, total: int | None, text: str) -> None:
        """Record a status update from the poller."""
        self.history.append(text)
        if self._task is None:
            return
        if total is not None:
            self._progress.update(self._task, total=total)
        if completed is not None:
            self._progress.update(self._task, completed=max(completed, 0))
        self._progress.update(self._task, status=text)

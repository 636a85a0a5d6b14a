"""Instruction templates for the session agent.

Builds the task batches submitted to the queue (conversion, metadata
generation) and the one-shot chat prompts (metadata sync, critique,
lifecycle generation).  The agent reads these as plain text; only the
``[SYSTEM: ...]`` tags are conventions it keys on.
"""

from __future__ import annotations

import json

from techxfer.models import StartType

SYSTEM_PROMPT = """
[SYSTEM: MANUFACTURING_AGENT]
You are a helpful industrial manufacturing assistant specialized in Tech Transfer.

CENTRAL METADATA OBJECT:
- There is a file named 'metadata.json' which acts as the 'Source of Truth' for this Tech Transfer session.
- Your PRIMARY GOAL is to populate and refine this 'metadata.json' file based on the documents you read.
- This JSON object is what the manufacturer will use to validate the project.
    - IMPORTANT: The JSON MUST contain a root key 'project_data' which holds CSV-friendly tabular data.
    - 'project_data' should be a dictionary where keys are table names (e.g. "Bill_Of_Materials", "Specifications") and values are objects representing columns.
- ALWAYS try to keep 'metadata.json' up to date. If you find new information, update 'metadata.json' using 'create_text_file'.

GUIDELINES:
1. FILE MANAGEMENT: If you upload or generate a file with the same name as an existing one, it will automatically overwrite the old version.
2. DATA ENRICHMENT: You can use "Magic Fill" to automatically populate missing CSV data based on best-guess estimates.
3. VERIFICATION: The user can force-override verification checks. Be pragmatic in your "Risk Scans".
"""

DOC_PROMPTS: dict[str, str] = {
    "Production": """
[SYSTEM: DOC_GENERATION]
Generate a "Mass_Production_Plan.docx".
CRITICAL: This is a manufacturing execution plan.
SECTIONS:
- Scaling Strategy: Transition from pilot to mass production.
- Quality Control Points: Specific inspection criteria for high volume.
- Line Balancing: Takt time analysis and station assignments.
- Supply Chain: Bulk material handling and logistics.
""",
    "Pilot Runs": """
[SYSTEM: DOC_GENERATION]
Generate a "Pilot_Run_Report.docx".
CRITICAL: Focus on validation and initial data gathering.
SECTIONS:
- Pilot Objectives: What are we trying to prove? (Yield, speed, quality).
- Batch Configuration: Setups used for the pilot.
- Measurement Plan: Key metrics to track during the run.
- Failure Mode Prediction: What is likely to go wrong and how to monitor it.
""",
    "Installation & Testing": """
[SYSTEM: DOC_GENERATION]
Generate an "Installation_and_SAT_Protocol.docx".
CRITICAL: Field work instructions.
SECTIONS:
- Site Prep: Power, air, floor space requirements.
- Rigging & Handling: How to move the equipment.
- IQ/OQ/PQ Protocols: Detailed steps for acceptance testing.
- Safety Lockout/Tagout procedures specific to this machine.
""",
    "Process Development": """
[SYSTEM: DOC_GENERATION]
Generate a "Process_Development_Study.docx".
CRITICAL: Engineering parameter optimization.
SECTIONS:
- DOE (Design of Experiments) Setup: Variables tested (Temp, Pressure, Speed).
- Process Window: Upper and lower control limits.
- Optimization Results: Theoretical best settings.
- Material Interaction Analysis.
""",
    "Design for manufacturing": """
[SYSTEM: DOC_GENERATION]
Generate a "DFM_Analysis_Report.docx".
CRITICAL: Design critique for cost and ease of assembly.
SECTIONS:
- Tolerance Analysis: Are specs achievable?
- Part Simplification: Opportunities to combine or remove parts.
- Material Selection: Cost vs Performance trade-offs.
- Assembly Access: Tool clearance and ergonomic review.
""",
    "Review & Capabilities Analysis": """
[SYSTEM: DOC_GENERATION]
Generate a "Capabilities_Gap_Analysis.docx".
CRITICAL: Vendor vs Requirement match.
SECTIONS:
- Requirement Matrix: Detailed breakdown of specs vs current vendor capabilities.
- Gap Identification: Where do we fall short?
- Risk Assessment: Scoring of identified gaps.
- Correction Plan: Steps to close the gaps (Training, new equipment, outsourcing).
""",
    "Visual Aids": """
[SYSTEM: VISUAL_GENERATION]
INSTRUCTION: Use the 'generate_image' tool to create 3 distinct technical diagrams.
1. "assembly_exploded_view.png": An exploded view showing part relationships.
2. "process_flow_diagram.png": A block diagram of the manufacturing process steps.
3. "finished_product_render.png": High-fidelity photorealistic render of the final output.
Ensure these are high-resolution and technical in style (blueprint or clean CAD style).
""",
}

_DOC_GENERAL_INSTRUCTIONS = """
CRITICAL GENERAL INSTRUCTIONS FOR WORD DOCS (Ignore for Images):
1. FILE MANAGEMENT: If a file with the same name exists, it will be overwritten. Use this to update documents.
2. Create a "FULL, DETAILED PROFESSIONAL REPORT" (3-4 pages min).
3. DO NOT use placeholders. Approximate values based on context.
4. Use professional formatting (headers, bullet points).
"""

SUMMARY_TASK = "Generate a 'Summary_Report.docx' listing all generated assets and next steps."

DEFAULT_LIFECYCLE_STEPS = [
    "Design Review",
    "Engineering",
    "Prototyping",
    "Validation",
    "Production Launch",
]


def _with_system(body: str) -> str:
    return f"{SYSTEM_PROMPT}\n\n{body}"


def initial_metadata(project_id: str | None, description: str = "") -> dict:
    """Skeleton ``metadata.json`` the agent is asked to create first."""
    return {
        "projectId": project_id,
        "revision": "A.1",
        "status": "DRAFT",
        "product_definition": {
            "description": description or "Extracted from assets",
            "specifications": {},
        },
        "lifecycle": {"stage": "Ingestion", "steps": []},
        "bom_summary": {"total_parts": 0, "critical_items": []},
        "risk_assessment": {"score": "Pending", "issues": []},
    }


def build_conversion_tasks(
    start_type: StartType | None,
    target_columns: str,
    selected_docs: list[str],
    *,
    project_id: str | None = None,
    product_description: str = "",
) -> list[str]:
    """Build the task batch that turns uploaded assets into structured artifacts.

    Order: metadata init, core analysis, one task per selected deliverable,
    final summary.
    """
    tasks: list[str] = []

    skeleton = json.dumps(initial_metadata(project_id, product_description))
    tasks.append(
        _with_system(
            "[SYSTEM: METADATA_INIT] Create the initial 'metadata.json' file with the "
            f"following content: {skeleton}. This file will be the Source of Truth for "
            "the project."
        )
    )

    lines = [f"[SYSTEM: TECH_TRANSFER_INIT]\nGOAL: {target_columns}\nINSTRUCTION:"]
    if start_type == StartType.DESCRIPTION and product_description:
        lines.append(
            "1. Use the following PRODUCT DESCRIPTION as the source of truth:\n"
            f'"{product_description}"'
        )
        lines.append(
            "2. Architect a plausible 'BOM_Standardized.csv' with columns: "
            f"{target_columns} based on this description."
        )
    elif start_type == StartType.SKETCH:
        lines.append(
            "1. Analyze the uploaded image(s)/sketch(es) to understand the product structure."
        )
        lines.append(
            "2. Brainstorm and architect a 'BOM_Standardized.csv' with columns: "
            f"{target_columns} based on visual analysis."
        )
    else:
        lines.append("1. Analyze the uploaded technical file(s) (BOM, specifications).")
        lines.append(f"2. Create a 'BOM_Standardized.csv' with columns: {target_columns}.")
    lines.extend(
        [
            "3. Sync all extracted information into 'metadata.json'. Ensure the "
            "product_definition, lifecycle, and bom_summary fields in 'metadata.json' "
            "are fully populated.",
            "4. Create a 'data_summary.csv' of the main parts list.",
            "5. Extract key technical parameters and manufacturing requirements.",
            "6. NOTE: If you generate a file with the same name as an existing one, it "
            "will overwrite the old version. Maintain consistent filenames for updates.",
        ]
    )
    tasks.append("\n".join(lines) + "\n")

    for doc_type in selected_docs:
        instruction = DOC_PROMPTS.get(
            doc_type,
            f"[SYSTEM: DOC_GENERATION] Generate a detailed report for {doc_type}.",
        )
        tasks.append(f"\n{instruction}\n{_DOC_GENERAL_INSTRUCTIONS}")

    tasks.append(SUMMARY_TASK)
    return tasks


def build_metadata_tasks() -> list[str]:
    """Five-step batch that (re)builds ``metadata.json`` from the session files."""
    return [
        _with_system(
            "[SYSTEM: METADATA_INIT] Initialize (or reset) the 'metadata.json' file "
            "structure. Ensure all fields (product_definition, bom_summary, lifecycle, "
            "risk_assessment) are present and empty/default."
        ),
        _with_system(
            "[SYSTEM: METADATA_SPECS] Analyze all uploaded documents and extracted text. "
            "Populate 'product_definition' in 'metadata.json' with detailed description "
            "and specifications found."
        ),
        _with_system(
            "[SYSTEM: METADATA_BOM] Analyze any BOM files (Excel/CSV) and technical "
            "documents. Update 'bom_summary' in 'metadata.json' with total part counts "
            "and identify critical items."
        ),
        _with_system(
            "[SYSTEM: METADATA_RISK] Perform a risk assessment based on the known "
            "specifications and complexity. Update 'risk_assessment' in 'metadata.json'."
        ),
        _with_system(
            "[SYSTEM: METADATA_LIFECYCLE] Define a recommended product lifecycle for this "
            "project. Update 'lifecycle' in 'metadata.json'."
        ),
    ]


def metadata_sync_prompt() -> str:
    return _with_system(
        "[SYSTEM: METADATA_SYNC] Analyze all available files (blobs) in the session. "
        "Update 'metadata.json' to reflect the latest information found in these files. "
        "Ensure product_definition, lifecycle, and bom_summary are accurate."
    )


def critique_prompt() -> str:
    return _with_system(
        "[SYSTEM: CRITIQUE_GENERATION] Analyze the currently generated assets "
        "(documents, images, data) in this session. Provide a critical review of how "
        "they align with the original request and the overall tech transfer goals. "
        "Identify any gaps, inconsistencies, or areas for improvement."
    )


def lifecycle_prompt() -> str:
    return _with_system(
        "[SYSTEM: LIFECYCLE_GENERATION] Generate a sequential product lifecycle plan for "
        "this project as a JSON list of strings. Example: [\"Design Review\", "
        "\"Prototyping\", \"Testing\", \"Production\"]. Do not include any other text."
    )

from typing import Iterable

from profiler import ScenarioOutcome

TIMEOUT_MESSAGE = "Timeout while waiting for profiling to complete."
FETCH_FAILED_MESSAGE = "Failed to retrieve profiling results."
UPLOAD_FAILED_MESSAGE = "Failed to upload the build artifact for profiling."

TABLE_HEADER = "Scenario | Status | Time (ms)"
TABLE_SEPARATOR = "---------|--------|----------"


def format_profile_table(outcomes: Iterable[ScenarioOutcome]) -> str:
    """
    Markdown table, one row per scenario in the order the service returned them.
    Cells are emitted as-is.
    """
    lines = [TABLE_HEADER, TABLE_SEPARATOR]
    for o in outcomes:
        lines.append(f"{o.name} | {o.status} | {o.time_ms}")
    return "\n".join(lines)

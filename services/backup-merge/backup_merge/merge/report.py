import json
import logging
from datetime import datetime
from typing import List, Optional

from ..config import get_settings
from ..schemas.merge import Conflict, ConflictType, MergeConflictReport, MergeSummary

logger = logging.getLogger(__name__)


class ExportError(RuntimeError):
    """Raised when a conflict report cannot be serialised."""


def summarize(conflicts: List[Conflict], can_proceed: bool) -> MergeSummary:
    counts = {kind: 0 for kind in ConflictType}
    for conflict in conflicts:
        counts[conflict.type] += 1
    return MergeSummary(
        totalConflicts=sum(counts.values()),
        goalConflicts=counts[ConflictType.goal],
        questionConflicts=counts[ConflictType.question],
        dataPointConflicts=counts[ConflictType.dataPoint],
        canProceedWithoutConflictingData=can_proceed,
    )


def build_report(conflicts: List[Conflict], can_proceed: bool, generated_at: datetime) -> MergeConflictReport:
    return MergeConflictReport(
        generatedAt=generated_at,
        summary=summarize(conflicts, can_proceed),
        conflicts=list(conflicts),
    )


def export_conflict_report(report: MergeConflictReport, indent: Optional[int] = None) -> bytes:
    """Serialise a conflict report to pretty-printed JSON bytes.

    Keys are sorted and dates written as ISO-8601 so two exports of the same
    report are byte-identical and diff cleanly.
    """
    if indent is None:
        indent = get_settings().reportIndent
    try:
        document = report.model_dump(mode="json")
        text = json.dumps(document, sort_keys=True, indent=indent, ensure_ascii=False)
    except (TypeError, ValueError) as error:
        logger.warning("Conflict report export failed: %s", error)
        raise ExportError(f"Export failed: {error}") from error
    return text.encode("utf-8")

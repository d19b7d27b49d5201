"""Reconcile two independently-evolved backups of the same user's data.

Goals and questions are matched by id. Data points are matched by
(question id, timestamp floored to the configured resolution) because two
devices logging the same moment assign different data point ids.

Every divergence between records sharing an id becomes a ``Conflict``.
Conflicts are data, never exceptions: under ``stopOnConflict`` they make the
result unsuccessful, under ``skipConflicting`` the conflicting items are left
out of the merged payload. Goal fields are required, so a conflicting goal
field keeps the primary value rather than being removed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import UUID

from ..config import MergeSettings, get_settings
from ..schemas.backup import BackupPayload, DataPoint, Goal, Question, TrackingCategory
from ..schemas.merge import Conflict, ConflictType, MergeResult, MergeStrategy
from .report import build_report

logger = logging.getLogger(__name__)

PointKey = Tuple[Optional[UUID], datetime]

QUESTION_FIELDS = ("responseType", "options", "validationRules")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def bucket_timestamp(timestamp: datetime, resolution_seconds: int = 60) -> datetime:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    else:
        timestamp = timestamp.astimezone(timezone.utc)
    seconds = timestamp.hour * 3600 + timestamp.minute * 60 + timestamp.second
    floored = seconds - seconds % resolution_seconds
    return timestamp.replace(
        hour=floored // 3600,
        minute=floored % 3600 // 60,
        second=floored % 60,
        microsecond=0,
    )


@dataclass
class _GoalMerge:
    goal: Goal
    conflicts: List[Conflict] = field(default_factory=list)
    clean_items: int = 0


def _item_count(goal: Goal) -> int:
    return 1 + len(goal.questions) + len(goal.dataPoints)


def _preview(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def _category_key(goal: Goal) -> Tuple[TrackingCategory, Optional[str]]:
    # The label only means something for custom categories.
    label = goal.customCategoryLabel if goal.category == TrackingCategory.custom else None
    return goal.category, label


def _question_value(question: Question, name: str) -> str:
    if name == "responseType":
        return question.responseType.value
    if name == "options":
        return ", ".join(question.options) if question.options is not None else "none"
    rules = question.validationRules
    return rules.display() if rules is not None else "none"


def _goal_field_checks(settings: MergeSettings) -> List[Tuple[str, Callable[[Goal], Any], Callable[[Goal], str]]]:
    limit = settings.descriptionPreviewLength
    return [
        ("title", lambda goal: goal.title, lambda goal: goal.title),
        ("description", lambda goal: goal.goalDescription, lambda goal: _preview(goal.goalDescription, limit)),
        ("category", _category_key, lambda goal: goal.category_display()),
        ("isActive", lambda goal: goal.isActive, lambda goal: "true" if goal.isActive else "false"),
        ("schedule", lambda goal: goal.schedule.comparable(), lambda goal: goal.schedule.display()),
    ]


def _index_points(points: List[DataPoint], resolution: int) -> Dict[PointKey, DataPoint]:
    indexed: Dict[PointKey, DataPoint] = {}
    for point in points:
        # Duplicate keys within one backup: the later record wins.
        indexed[(point.questionID, bucket_timestamp(point.timestamp, resolution))] = point
    return indexed


def _merge_goal(primary: Goal, secondary: Goal, settings: MergeSettings) -> _GoalMerge:
    secondary_is_newer = secondary.updatedAt > primary.updatedAt
    newer = secondary if secondary_is_newer else primary
    newer_side = "secondary" if secondary_is_newer else "primary"

    def conflict(kind: ConflictType, name: str, ours: str, theirs: str, recommendation: str, **where: Any) -> Conflict:
        return Conflict(
            type=kind,
            goalID=primary.id,
            goalTitle=newer.title,
            field=name,
            primaryValue=ours,
            secondaryValue=theirs,
            recommendation=recommendation,
            **where,
        )

    result = _GoalMerge(goal=primary)

    for name, compare, display in _goal_field_checks(settings):
        if compare(primary) == compare(secondary):
            continue
        result.conflicts.append(
            conflict(
                ConflictType.goal,
                name,
                display(primary),
                display(secondary),
                f"Use '{display(newer)}' from the {newer_side} backup (most recently updated)",
            )
        )
    if not result.conflicts:
        result.clean_items += 1

    secondary_questions = {question.id: question for question in secondary.questions}
    primary_question_ids = {question.id for question in primary.questions}
    order: List[UUID] = [question.id for question in primary.questions]
    order += [question.id for question in secondary.questions if question.id not in primary_question_ids]
    rank = {question_id: position for position, question_id in enumerate(order)}

    # (question rank, phase, timestamp, sequence) keeps question fields ahead of their data points.
    ranked: List[Tuple[Tuple[int, int, float, int], Conflict]] = []
    merged_questions: List[Question] = []
    dropped: Dict[UUID, bool] = {}

    for question in primary.questions:
        other = secondary_questions.get(question.id)
        if other is None:
            merged_questions.append(question)
            result.clean_items += 1
            continue
        differing = [name for name in QUESTION_FIELDS if getattr(question, name) != getattr(other, name)]
        if not differing:
            merged_questions.append(other if secondary_is_newer else question)
            result.clean_items += 1
            continue
        dropped[question.id] = question.value_kind == other.value_kind
        for name in differing:
            ranked.append(
                (
                    (rank[question.id], 0, 0.0, len(ranked)),
                    conflict(
                        ConflictType.question,
                        name,
                        _question_value(question, name),
                        _question_value(other, name),
                        "Manual resolution required",
                        questionID=question.id,
                    ),
                )
            )
    for question in secondary.questions:
        if question.id not in primary_question_ids:
            merged_questions.append(question)
            result.clean_items += 1

    resolution = settings.timestampResolutionSeconds
    primary_points = _index_points(primary.dataPoints, resolution)
    secondary_points = _index_points(secondary.dataPoints, resolution)
    merged_points: List[DataPoint] = []

    for key, point in primary_points.items():
        question_id, bucket = key
        comparable = dropped.get(question_id, True)
        other_point = secondary_points.get(key)
        if other_point is not None and comparable and other_point.value != point.value:
            ranked.append(
                (
                    (rank.get(question_id, len(order)), 1, bucket.timestamp(), len(ranked)),
                    conflict(
                        ConflictType.dataPoint,
                        "value",
                        point.value.display(),
                        other_point.value.display(),
                        f"Manual resolution required for the entry logged at {bucket.isoformat()}",
                        questionID=question_id,
                        timestamp=bucket,
                    ),
                )
            )
            continue
        if question_id in dropped:
            continue
        merged_points.append(point)
        result.clean_items += 1
    for key, point in secondary_points.items():
        if key in primary_points or point.questionID in dropped:
            continue
        merged_points.append(point)
        result.clean_items += 1

    ranked.sort(key=lambda entry: entry[0])
    result.conflicts.extend(entry[1] for entry in ranked)

    merged_points.sort(key=lambda point: point.timestamp)
    result.goal = primary.model_copy(
        update={
            "createdAt": min(primary.createdAt, secondary.createdAt),
            "updatedAt": max(primary.updatedAt, secondary.updatedAt),
            "questions": merged_questions,
            "dataPoints": merged_points,
        }
    )
    return result


def merge_backups(
    primary: BackupPayload,
    secondary: BackupPayload,
    strategy: Union[MergeStrategy, str] = MergeStrategy.stopOnConflict,
    *,
    now: Optional[datetime] = None,
    settings: Optional[MergeSettings] = None,
) -> MergeResult:
    strategy = MergeStrategy(strategy)
    settings = settings or get_settings()
    now = now or _utcnow()

    conflicts: List[Conflict] = []
    merged_goals: List[Goal] = []
    clean_items = 0

    secondary_goals = {goal.id: goal for goal in secondary.goals}
    primary_goal_ids = set()
    for goal in primary.goals:
        primary_goal_ids.add(goal.id)
        other = secondary_goals.get(goal.id)
        if other is None:
            merged_goals.append(goal)
            clean_items += _item_count(goal)
            continue
        outcome = _merge_goal(goal, other, settings)
        conflicts.extend(outcome.conflicts)
        clean_items += outcome.clean_items
        merged_goals.append(outcome.goal)
    for goal in secondary.goals:
        if goal.id not in primary_goal_ids:
            merged_goals.append(goal)
            clean_items += _item_count(goal)

    report = build_report(conflicts, can_proceed=clean_items > 0, generated_at=now)

    if conflicts and strategy == MergeStrategy.stopOnConflict:
        logger.info("Merge stopped: %d conflicts found", len(conflicts))
        return MergeResult(success=False, merged=None, conflicts=report)

    merged = BackupPayload(
        version=max(primary.version, secondary.version),
        exportedAt=now,
        goals=merged_goals,
    )
    logger.info(
        "Merged %d goals (%d conflicts skipped, strategy=%s)",
        len(merged_goals),
        len(conflicts),
        strategy.value,
    )
    return MergeResult(success=True, merged=merged, conflicts=report)

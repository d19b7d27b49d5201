from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .backup import BackupPayload, UtcDatetime


class MergeStrategy(str, Enum):
    stopOnConflict = "stopOnConflict"
    skipConflicting = "skipConflicting"


class ConflictType(str, Enum):
    goal = "goal"
    question = "question"
    dataPoint = "dataPoint"


class Conflict(BaseModel):
    type: ConflictType
    goalID: UUID
    goalTitle: str
    field: str
    primaryValue: str
    secondaryValue: str
    recommendation: str
    questionID: Optional[UUID] = None
    timestamp: Optional[UtcDatetime] = None


class MergeSummary(BaseModel):
    totalConflicts: int
    goalConflicts: int
    questionConflicts: int
    dataPointConflicts: int
    canProceedWithoutConflictingData: bool


class MergeConflictReport(BaseModel):
    generatedAt: UtcDatetime
    summary: MergeSummary
    conflicts: List[Conflict] = Field(default_factory=list)


class MergeResult(BaseModel):
    success: bool
    merged: Optional[BackupPayload] = None
    conflicts: Optional[MergeConflictReport] = None

    @property
    def hasConflicts(self) -> bool:
        return self.conflicts is not None and self.conflicts.summary.totalConflicts > 0

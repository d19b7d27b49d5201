from datetime import datetime, time, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator


class TrackingCategory(str, Enum):
    health = "health"
    fitness = "fitness"
    productivity = "productivity"
    habits = "habits"
    mood = "mood"
    learning = "learning"
    social = "social"
    finance = "finance"
    custom = "custom"


class Frequency(str, Enum):
    once = "once"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    custom = "custom"


class ResponseType(str, Enum):
    numeric = "numeric"
    scale = "scale"
    slider = "slider"
    waterIntake = "waterIntake"
    boolean = "boolean"
    text = "text"
    multipleChoice = "multipleChoice"
    time = "time"


ValueKind = Literal["numeric", "boolean", "text", "choice", "time"]

RESPONSE_VALUE_KINDS: Dict[ResponseType, ValueKind] = {
    ResponseType.numeric: "numeric",
    ResponseType.scale: "numeric",
    ResponseType.slider: "numeric",
    ResponseType.waterIntake: "numeric",
    ResponseType.boolean: "boolean",
    ResponseType.text: "text",
    ResponseType.multipleChoice: "choice",
    ResponseType.time: "time",
}


def _as_utc(value: datetime) -> datetime:
    # Offset-less timestamps in a backup are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def _format_number(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else repr(float(number))


class ValidationRules(BaseModel):
    minimumValue: Optional[float] = None
    maximumValue: Optional[float] = None
    allowsEmpty: bool = False

    def display(self) -> str:
        low = "-" if self.minimumValue is None else _format_number(self.minimumValue)
        high = "-" if self.maximumValue is None else _format_number(self.maximumValue)
        empty = "empty allowed" if self.allowsEmpty else "required"
        return f"{low}..{high}, {empty}"


class ScheduleTime(BaseModel):
    hour: int = Field(ge=0, le=23)
    minute: int = Field(ge=0, le=59)

    def display(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


class Schedule(BaseModel):
    id: UUID
    startDate: UtcDatetime
    frequency: Frequency
    times: List[ScheduleTime] = Field(default_factory=list)
    endDate: Optional[UtcDatetime] = None
    timezoneIdentifier: str
    selectedWeekdays: List[int] = Field(default_factory=list)
    intervalDayCount: Optional[int] = None

    def comparable(self) -> Dict[str, Any]:
        """Everything that defines when reminders fire; the schedule's own id is device-local."""
        return self.model_dump(exclude={"id"})

    def display(self) -> str:
        times = ", ".join(t.display() for t in self.times) or "no times"
        parts = [f"{self.frequency.value} at {times} ({self.timezoneIdentifier})"]
        if self.selectedWeekdays:
            parts.append("weekdays " + ",".join(str(day) for day in self.selectedWeekdays))
        if self.intervalDayCount:
            parts.append(f"every {self.intervalDayCount} days")
        parts.append(f"from {self.startDate.date().isoformat()}")
        if self.endDate:
            parts.append(f"until {self.endDate.date().isoformat()}")
        return "; ".join(parts)


class NumericValue(BaseModel):
    kind: Literal["numeric"] = "numeric"
    number: float
    delta: Optional[float] = None

    def display(self) -> str:
        return _format_number(self.number)


class BooleanValue(BaseModel):
    kind: Literal["boolean"] = "boolean"
    flag: bool

    def display(self) -> str:
        return "true" if self.flag else "false"


class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    text: str

    def display(self) -> str:
        return self.text


class ChoiceValue(BaseModel):
    kind: Literal["choice"] = "choice"
    selected: List[str]

    @field_validator("selected")
    @classmethod
    def _as_set(cls, value: List[str]) -> List[str]:
        # Selections are a set; sorted so equal selections compare equal.
        return sorted(set(value))

    def display(self) -> str:
        return ", ".join(self.selected)


class TimeValue(BaseModel):
    kind: Literal["time"] = "time"
    timeOfDay: time

    def display(self) -> str:
        return self.timeOfDay.strftime("%H:%M")


DataPointValue = Annotated[
    Union[NumericValue, BooleanValue, TextValue, ChoiceValue, TimeValue],
    Field(discriminator="kind"),
]


def _parse_iso(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


_LEGACY_VALUE_FIELDS = ("numericValue", "numericDelta", "textValue", "boolValue", "selectedOptions", "timeValue")

# Flat field holding each value kind in documents written by the app, in fallback order.
_LEGACY_SOURCES = (
    ("time", "timeValue"),
    ("choice", "selectedOptions"),
    ("numeric", "numericValue"),
    ("boolean", "boolValue"),
    ("text", "textValue"),
)


def _legacy_value(kind: str, data: Dict[str, Any]) -> Dict[str, Any]:
    if kind == "time":
        return {"kind": "time", "timeOfDay": _parse_iso(data["timeValue"]).time()}
    if kind == "choice":
        return {"kind": "choice", "selected": data["selectedOptions"]}
    if kind == "numeric":
        return {"kind": "numeric", "number": data["numericValue"], "delta": data.get("numericDelta")}
    if kind == "boolean":
        return {"kind": "boolean", "flag": data["boolValue"]}
    return {"kind": "text", "text": data["textValue"]}


def _lift_legacy_value(data: Dict[str, Any], expected: Optional[str] = None) -> Dict[str, Any]:
    """Return a copy of a flat data point record with its value moved into ``value``.

    ``expected`` is the value kind of the point's question; the app fills
    several flat fields at once, so the question decides which one counts.
    """
    sources = dict(_LEGACY_SOURCES)
    if expected is not None and data.get(sources[expected]) is not None:
        kind: Optional[str] = expected
    else:
        kind = next((name for name, source in _LEGACY_SOURCES if data.get(source) is not None), None)
    if kind is None:
        raise ValueError("data point carries no value")
    lifted = {key: item for key, item in data.items() if key not in _LEGACY_VALUE_FIELDS}
    lifted["value"] = _legacy_value(kind, data)
    return lifted


class DataPoint(BaseModel):
    id: UUID
    goalID: UUID
    questionID: Optional[UUID] = None
    timestamp: UtcDatetime
    value: DataPointValue
    mood: Optional[int] = None
    location: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _from_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "value" in data:
            return data
        return _lift_legacy_value(data)


class Question(BaseModel):
    id: UUID
    text: str
    responseType: ResponseType
    isActive: bool = True
    options: Optional[List[str]] = None
    validationRules: Optional[ValidationRules] = None

    @property
    def value_kind(self) -> ValueKind:
        return RESPONSE_VALUE_KINDS[self.responseType]


class Goal(BaseModel):
    id: UUID
    title: str
    goalDescription: str = ""
    category: TrackingCategory
    customCategoryLabel: Optional[str] = None
    isActive: bool = True
    createdAt: UtcDatetime
    updatedAt: UtcDatetime
    schedule: Schedule
    questions: List[Question] = Field(default_factory=list)
    dataPoints: List[DataPoint] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _lift_legacy_points(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("dataPoints"), list):
            return data
        kinds: Dict[str, str] = {}
        for question in data.get("questions") or []:
            if isinstance(question, dict) and question.get("responseType") in {item.value for item in ResponseType}:
                kinds[str(question.get("id"))] = RESPONSE_VALUE_KINDS[ResponseType(question["responseType"])]
        points = []
        for point in data["dataPoints"]:
            if isinstance(point, dict) and "value" not in point:
                point = _lift_legacy_value(point, kinds.get(str(point.get("questionID"))))
            points.append(point)
        return {**data, "dataPoints": points}

    @model_validator(mode="after")
    def _check_children(self) -> "Goal":
        questions: Dict[UUID, Question] = {}
        for question in self.questions:
            if question.id in questions:
                raise ValueError(f"duplicate question id {question.id} in goal {self.id}")
            questions[question.id] = question
        for point in self.dataPoints:
            question = questions.get(point.questionID) if point.questionID else None
            if question and point.value.kind != question.value_kind:
                raise ValueError(
                    f"data point {point.id} holds a {point.value.kind} value "
                    f"but question {question.id} expects {question.value_kind}"
                )
        return self

    def category_display(self) -> str:
        if self.category == TrackingCategory.custom and self.customCategoryLabel:
            return f"custom ({self.customCategoryLabel})"
        return self.category.value


class BackupPayload(BaseModel):
    version: int
    exportedAt: UtcDatetime
    goals: List[Goal] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_goals(self) -> "BackupPayload":
        seen = set()
        for goal in self.goals:
            if goal.id in seen:
                raise ValueError(f"duplicate goal id {goal.id}")
            seen.add(goal.id)
        return self

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from util import SerializableDateTime


class CamelModel(BaseModel):
    """Documents travel camelCase on the wire and snake_case in here"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


def _normalize_document(document, rename_type: bool = False):
    # The document store hands out "_id", and stages/questions are tagged with "type"
    if not isinstance(document, dict):
        return document
    normalized = dict(document)
    if "id" not in normalized and "_id" in normalized:
        normalized["id"] = str(normalized.pop("_id"))
    if rename_type and "kind" not in normalized and "type" in normalized:
        normalized["kind"] = normalized.pop("type")
    return normalized


# ==================================================================================
# Stages


class StageKind(StrEnum):
    INSTRUCTIONS = "instructions"
    SCENARIO = "scenario"
    SURVEY = "survey"
    BREAK = "break"


class StageBase(CamelModel):
    id: str
    title: str
    description: str = ""
    duration_seconds: int = Field(default=0, ge=0)
    required: bool = True
    order: int = Field(ge=0)

    @property
    def is_timed(self) -> bool:
        return self.duration_seconds > 0


class InstructionsStage(StageBase):
    kind: Literal["instructions"] = "instructions"
    content: str = ""
    format: Literal["text", "markdown", "html"] = "markdown"


class ScenarioStage(StageBase):
    kind: Literal["scenario"] = "scenario"
    scenario_id: str
    rounds: int = Field(default=1, ge=1)
    wallet_id: Optional[str] = None


class QuestionKind(StrEnum):
    TEXT = "text"
    MULTIPLE_CHOICE = "multipleChoice"
    RATING = "rating"
    CHECKBOXES = "checkboxes"


class Question(CamelModel):
    id: str
    text: str
    kind: QuestionKind
    options: list[str] = Field(default_factory=list)
    required: bool = False

    @model_validator(mode="before")
    @classmethod
    def normalize_wire_question(cls, data):
        return _normalize_document(data, rename_type=True)


class SurveyStage(StageBase):
    kind: Literal["survey"] = "survey"
    survey_id: Optional[str] = None
    questions: list[Question] = Field(default_factory=list)

    @property
    def required_question_ids(self) -> set[str]:
        return {q.id for q in self.questions if q.required}


class BreakStage(StageBase):
    kind: Literal["break"] = "break"
    message: str = ""


Stage = Annotated[
    Union[InstructionsStage, ScenarioStage, SurveyStage, BreakStage],
    Field(discriminator="kind"),
]

_stage_adapter = TypeAdapter(Stage)


def parse_stage(data: dict) -> Stage:
    return _stage_adapter.validate_python(_normalize_document(data, rename_type=True))


# Stages whose consumer produces no response payload. Leaving them counts as done.
IMPLICIT_COMPLETION_KINDS = (StageKind.INSTRUCTIONS, StageKind.BREAK)


class Session(CamelModel):
    id: str
    name: str
    description: str = ""
    stages: list[Stage]
    start_stage_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_wire_session(cls, data):
        return _normalize_document(data)

    @field_validator("stages", mode="before")
    @classmethod
    def normalize_wire_stages(cls, stages):
        if not isinstance(stages, list):
            return stages
        return [_normalize_document(s, rename_type=True) for s in stages]

    @field_validator("stages")
    @classmethod
    def sort_stages(cls, stages: list) -> list:
        if len(stages) == 0:
            raise ValueError("A session needs at least one stage")
        orders = [s.order for s in stages]
        if len(set(orders)) != len(orders):
            raise ValueError("Stage order values must be unique within a session")
        ids = [s.id for s in stages]
        if len(set(ids)) != len(ids):
            raise ValueError("Stage ids must be unique within a session")
        return sorted(stages, key=lambda s: s.order)

    def index_of(self, stage_id: str | None) -> int | None:
        if stage_id is None:
            return None
        for i, stage in enumerate(self.stages):
            if stage.id == stage_id:
                return i
        return None

    @property
    def last_index(self) -> int:
        return len(self.stages) - 1

    def scenario_stages(self) -> list[ScenarioStage]:
        return [s for s in self.stages if isinstance(s, ScenarioStage)]


# ==================================================================================
# Progress


class ProgressStatus(StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ProgressRecord(CamelModel):
    session_id: str = Field(
        validation_alias=AliasChoices("sessionId", "experimentId", "session_id"),
        serialization_alias="sessionId",
    )
    status: ProgressStatus = ProgressStatus.NOT_STARTED
    current_stage_id: Optional[str] = None
    completed_stage_ids: set[str] = Field(
        default_factory=set,
        validation_alias=AliasChoices(
            "completedStageIds", "completedStages", "completed_stage_ids"
        ),
        serialization_alias="completedStageIds",
    )
    started_at: Optional[SerializableDateTime] = None
    completed_at: Optional[SerializableDateTime] = None
    last_activity_at: Optional[SerializableDateTime] = None

    @field_validator("completed_stage_ids", mode="before")
    @classmethod
    def stringify_stage_ids(cls, value):
        if isinstance(value, (list, tuple, set)):
            return {str(v) for v in value}
        return value

    @property
    def is_completed(self) -> bool:
        return self.status == ProgressStatus.COMPLETED


class ProgressUpdate(CamelModel):
    status: Optional[ProgressStatus] = None
    current_stage_id: Optional[str] = None
    completed_stage_id: Optional[str] = None

    def is_empty(self) -> bool:
        return (
            self.status is None
            and self.current_stage_id is None
            and self.completed_stage_id is None
        )

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def apply_update(
    record: ProgressRecord, update: ProgressUpdate, now: datetime
) -> ProgressRecord:
    """Applies an update the same way the backend does, so that a local echo of a
    write that never reached it looks like the answer it would have given.

    A completed record is absorbing: no status other than completed is accepted
    once it has been reached."""
    status = record.status
    started_at = record.started_at
    completed_at = record.completed_at

    if update.status is not None and not (
        record.is_completed and update.status != ProgressStatus.COMPLETED
    ):
        status = update.status
        if status == ProgressStatus.IN_PROGRESS and started_at is None:
            started_at = now
        elif status == ProgressStatus.COMPLETED and completed_at is None:
            completed_at = now

    current_stage_id = record.current_stage_id
    if update.current_stage_id is not None:
        current_stage_id = update.current_stage_id

    completed_stage_ids = set(record.completed_stage_ids)
    if update.completed_stage_id is not None:
        completed_stage_ids.add(update.completed_stage_id)

    if status == ProgressStatus.NOT_STARTED and (
        update.current_stage_id is not None or update.completed_stage_id is not None
    ):
        status = ProgressStatus.IN_PROGRESS
    if status != ProgressStatus.NOT_STARTED and started_at is None:
        started_at = now

    return record.model_copy(
        update={
            "status": status,
            "started_at": started_at,
            "completed_at": completed_at,
            "current_stage_id": current_stage_id,
            "completed_stage_ids": completed_stage_ids,
            "last_activity_at": now,
        }
    )


def fallback_progress(session_id: str) -> ProgressRecord:
    """Progress used when the backend cannot be reached and nothing better is known.
    Depends on the session id only, so repeated failures always agree."""
    return ProgressRecord(session_id=session_id, status=ProgressStatus.NOT_STARTED)

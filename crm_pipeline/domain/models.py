import uuid
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from crm_pipeline.domain import stage_policy
from crm_pipeline.domain.exceptions import InvalidState, InvalidTransition, ValidationError
from crm_pipeline.domain.stage_policy import Stage

TWO_PLACES = Decimal("0.01")
# Largest amount the opportunities.value column (NUMERIC(15, 2)) can hold.
MAX_VALUE = Decimal("9999999999999.99")

# Fields that become read-only once an opportunity leaves the active status.
CLOSED_FIELDS = frozenset({"stage", "status", "value", "probability", "actual_close_date"})


class Status(str, Enum):
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"


def _new_id() -> str:
    return str(uuid.uuid4())


def _quantize(value: Decimal) -> Decimal:
    try:
        return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"value {value} cannot be represented with two decimal places") from None


class StageChange(BaseModel):
    """
    One entry of an opportunity's stage history.
    Entries are append-only, so the model is frozen.
    """
    model_config = ConfigDict(frozen=True)

    opportunity_id: str
    old_stage: Stage
    new_stage: Stage
    old_probability: int = Field(..., ge=0, le=100)
    new_probability: int = Field(..., ge=0, le=100)
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    changed_at: datetime


class Opportunity(BaseModel):
    """
    Sales opportunity moving through the pipeline.

    Assignments are validated, so range rules (title length, non-negative
    value, probability in [0, 100]) and the status/close-date consistency
    rules hold after every mutation. Multi-field changes go through the
    methods below, which validate the combined result before applying it.
    """
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_new_id, description="Opaque unique identifier")
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    value: Decimal = Field(..., ge=0, le=MAX_VALUE, description="Deal amount in the system currency")
    stage: Stage = Stage.PROSPECTING
    status: Status = Status.ACTIVE
    probability: int = Field(..., ge=0, le=100)
    expected_close_date: Optional[date] = None
    actual_close_date: Optional[datetime] = None
    company_id: Optional[str] = None
    contact_id: Optional[str] = None
    owner_id: str
    source: Optional[str] = None
    competitors: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    version: int = Field(0, ge=0, description="Optimistic concurrency token")

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be blank")
        return value

    @field_validator("value")
    @classmethod
    def _round_value(cls, value: Decimal) -> Decimal:
        return _quantize(value)

    @model_validator(mode="after")
    def _check_status_consistency(self) -> "Opportunity":
        if self.status is Status.ACTIVE:
            if self.actual_close_date is not None:
                raise ValueError("an active opportunity cannot have an actual close date")
        else:
            if self.actual_close_date is None:
                raise ValueError(f"a {self.status.value} opportunity must have an actual close date")
            expected = 100 if self.status is Status.WON else 0
            if self.probability != expected:
                raise ValueError(f"a {self.status.value} opportunity must have probability {expected}")
        if self.stage is stage_policy.LOST_STAGE and self.status is not Status.LOST:
            raise ValueError("only a lost opportunity can sit in the lost stage")
        return self

    @property
    def is_closed(self) -> bool:
        return self.status is not Status.ACTIVE

    @property
    def weighted_value(self) -> Decimal:
        return self.value * self.probability / 100

    def _touches_closed_fields(self, values: Dict[str, Any]) -> bool:
        return self.is_closed and any(
            values[name] != getattr(self, name) for name in CLOSED_FIELDS.intersection(values)
        )

    def _apply(self, operation: str, at: datetime, **changes: Any) -> None:
        """
        Validates the opportunity with `changes` applied, then commits them all at once.

        On a closed opportunity a closed field may be resent with its current
        value; only an actual change is refused.
        """
        changes["updated_at"] = at
        try:
            candidate = self.model_validate({**self.__dict__, **changes})
        except PydanticValidationError as e:
            if self._touches_closed_fields(changes):
                raise InvalidState(self.id, self.status.value, operation) from e
            raise ValidationError.from_pydantic(e, default_field=operation) from e
        if self._touches_closed_fields({name: getattr(candidate, name) for name in changes}):
            raise InvalidState(self.id, self.status.value, operation)
        for name in changes:
            object.__setattr__(self, name, getattr(candidate, name))

    def _transition_status(self, status: Status, at: datetime, operation: str, **changes: Any) -> None:
        """Single authority for leaving the active status; closing is terminal."""
        if self.status is not Status.ACTIVE:
            raise InvalidState(self.id, self.status.value, operation)
        if status is Status.ACTIVE:
            raise ValueError("an opportunity can only transition out of the active status")
        changes.update(
            status=status,
            actual_close_date=at,
            probability=100 if status is Status.WON else 0,
        )
        self._apply(operation, at, **changes)

    def move_to(
        self,
        stage: Stage,
        at: datetime,
        probability: Optional[int] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StageChange:
        """
        Moves the opportunity to `stage` following the stage policy.

        The probability becomes `probability` when given, otherwise the stage
        default. Moving to the lost stage closes the opportunity as lost.
        """
        target = stage_policy.parse_stage(stage)
        if self.is_closed:
            raise InvalidState(self.id, self.status.value, "move stage of")
        if not stage_policy.can_transition(self.stage, target):
            raise InvalidTransition(self.stage.value, target.value)

        old_stage, old_probability = self.stage, self.probability
        if target is stage_policy.LOST_STAGE:
            if probability not in (None, 0):
                raise ValidationError("probability", "a lost opportunity must have probability 0")
            self._transition_status(Status.LOST, at, "move stage of", stage=target)
        else:
            if probability is None:
                probability = stage_policy.default_probability(target)
            self._apply("move stage of", at, stage=target, probability=probability)

        return StageChange(
            opportunity_id=self.id,
            old_stage=old_stage,
            new_stage=self.stage,
            old_probability=old_probability,
            new_probability=self.probability,
            actor_id=actor_id,
            reason=reason,
            changed_at=at,
        )

    def close(
        self,
        won: bool,
        at: datetime,
        final_value: Optional[Decimal] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[StageChange]:
        """
        Closes the opportunity as won or lost.

        A won deal advances to the closing stage; the returned StageChange
        records that move. A lost deal keeps the stage it was lost in.
        """
        old_stage, old_probability = self.stage, self.probability
        changes: Dict[str, Any] = {}
        if final_value is not None:
            changes["value"] = final_value
        if won:
            changes["stage"] = stage_policy.CLOSING_STAGE
        self._transition_status(Status.WON if won else Status.LOST, at, "close", **changes)

        if self.stage is old_stage:
            return None
        return StageChange(
            opportunity_id=self.id,
            old_stage=old_stage,
            new_stage=self.stage,
            old_probability=old_probability,
            new_probability=self.probability,
            actor_id=actor_id,
            reason=reason,
            changed_at=at,
        )

    def revise(self, at: datetime, **changes: Any) -> None:
        """Applies plain field changes; stage and status are not accepted here."""
        forbidden = {"stage", "status", "actual_close_date", "id", "version", "created_at"}.intersection(changes)
        if forbidden:
            raise ValidationError(sorted(forbidden)[0], "cannot be changed directly")
        if changes:
            self._apply("update", at, **changes)

    def append_note(self, text: str, at: datetime) -> None:
        entry = f"[{at:%Y-%m-%d %H:%M}] {text}"
        self._apply("annotate", at, notes=f"{self.notes}\n{entry}" if self.notes else entry)


class OpportunityCreate(BaseModel):
    """Input accepted when creating an opportunity."""
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    value: Decimal = Field(..., ge=0, le=MAX_VALUE)
    stage: Optional[Stage] = None
    probability: Optional[int] = Field(None, ge=0, le=100)
    expected_close_date: Optional[date] = None
    company_id: Optional[str] = None
    contact_id: Optional[str] = None
    owner_id: str = Field(..., min_length=1)
    source: Optional[str] = None
    competitors: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be blank")
        return value


class OpportunityUpdate(BaseModel):
    """Partial update; only fields explicitly provided are applied."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    value: Optional[Decimal] = Field(None, ge=0, le=MAX_VALUE)
    stage: Optional[Stage] = None
    probability: Optional[int] = Field(None, ge=0, le=100)
    expected_close_date: Optional[date] = None
    company_id: Optional[str] = None
    contact_id: Optional[str] = None
    owner_id: Optional[str] = Field(None, min_length=1)
    source: Optional[str] = None
    competitors: Optional[str] = None
    notes: Optional[str] = None
    reason: Optional[str] = Field(None, description="Recorded with a stage change")

    @model_validator(mode="after")
    def _required_fields_not_null(self) -> "OpportunityUpdate":
        for name in ("title", "value", "stage", "owner_id"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        if self.title is not None and not self.title.strip():
            raise ValueError("title must not be blank")
        return self


class OpportunityView(BaseModel):
    """Read model returned to callers."""
    id: str
    title: str
    description: Optional[str]
    value: Decimal
    stage: Stage
    stage_label: str
    status: Status
    probability: int
    weighted_value: Decimal
    expected_close_date: Optional[date]
    actual_close_date: Optional[datetime]
    company_id: Optional[str]
    contact_id: Optional[str]
    owner_id: str
    source: Optional[str]
    competitors: Optional[str]
    notes: Optional[str]
    can_move_stage: bool
    version: int
    created_at: datetime
    updated_at: datetime


class OpportunityFilter(BaseModel):
    search: Optional[str] = None
    status: Optional[Status] = None
    stage: Optional[Stage] = None
    company_id: Optional[str] = None
    owner_id: Optional[str] = None
    min_value: Optional[Decimal] = Field(None, ge=0)
    max_value: Optional[Decimal] = Field(None, ge=0)
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    expected_close_from: Optional[date] = None
    expected_close_to: Optional[date] = None


SortField = Literal["created_at", "updated_at", "title", "value", "probability", "expected_close_date", "stage"]


class SortSpec(BaseModel):
    field: SortField = "created_at"
    descending: bool = True


class PageRequest(BaseModel):
    page: int = Field(1, ge=1)
    per_page: int = Field(20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


class OpportunityPage(BaseModel):
    items: List[OpportunityView]
    total: int
    page: int
    per_page: int
    total_pages: int


class StageSummary(BaseModel):
    stage: Stage
    label: str
    count: int = 0
    total_value: Decimal = Decimal("0")
    average_probability: Decimal = Decimal("0")


class PipelineReport(BaseModel):
    stages: List[StageSummary]
    total_count: int
    total_value: Decimal
    weighted_value: Decimal


class PipelineStats(BaseModel):
    total_count: int
    active_count: int
    won_count: int
    lost_count: int
    total_value: Decimal
    active_value: Decimal
    won_value: Decimal
    lost_value: Decimal
    weighted_value: Decimal
    win_rate: Decimal
    average_deal_size: Decimal
    distribution: List[StageSummary]

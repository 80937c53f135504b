"""
Pydantic models for Ballistic request validation.

Provides the enumerations shared across the service, request models for items,
projects, tags, tokens and connections, and ``validate_payload`` which runs a
model against raw data and returns a structured result (ok flag plus a
field -> messages mapping) instead of raising framework-specific errors.
"""

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator, model_validator

from .abilities import TokenAbility
from .errors import InvalidRecurrenceRule, ValidationFailed
from .recurrence import RecurrencePreset, RecurrenceStrategy, parse_rule, preset_to_rule

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"
HEX_COLOR_MESSAGE = "The colour must be a valid hex colour code (e.g., #FF5733)."
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
MAX_POSITION = 9999


class ItemStatus(str, Enum):
    TODO = "todo"
    DOING = "doing"
    DONE = "done"
    WONTDO = "wontdo"


OPEN_STATUSES = frozenset({ItemStatus.TODO.value, ItemStatus.DOING.value})
CLOSED_STATUSES = frozenset({ItemStatus.DONE.value, ItemStatus.WONTDO.value})


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class ListScope(str, Enum):
    """Scheduling scope for item listings."""

    ACTIVE = "active"  # no scheduled_date, or scheduled today or earlier
    PLANNED = "planned"  # scheduled in the future
    ALL = "all"


def _check_rule(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        return parse_rule(value).to_string()
    except InvalidRecurrenceRule as e:
        raise ValueError(e.reason) from None


def _check_color(value: Optional[str]) -> Optional[str]:
    if value is not None and not re.match(HEX_COLOR_PATTERN, value):
        raise ValueError(HEX_COLOR_MESSAGE)
    return value


class ItemCreate(BaseModel):
    """Request model for creating an item (optionally a recurring template)."""

    title: str = Field(min_length=1, max_length=255, description="Item title")
    description: Optional[str] = Field(None, max_length=65535)
    status: ItemStatus = Field(ItemStatus.TODO, description="Initial status")
    project_id: Optional[str] = Field(None, description="Project UUID, null for inbox")
    assignee_id: Optional[str] = Field(None, description="User UUID to assign the item to")
    position: int = Field(0, ge=0, le=MAX_POSITION, description="Ordering rank, 0 = top")
    scheduled_date: Optional[date] = None
    due_date: Optional[date] = None
    recurrence_rule: Optional[str] = Field(None, description="RRULE subset, e.g. FREQ=DAILY")
    recurrence_preset: Optional[RecurrencePreset] = Field(None, description="Shortcut for common rules")
    recurrence_strategy: Optional[RecurrenceStrategy] = None
    tag_ids: List[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        if not v.strip():
            raise ValueError("Title cannot be blank")
        return v.strip()

    @field_validator("recurrence_rule")
    @classmethod
    def validate_recurrence_rule(cls, v):
        return _check_rule(v)

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v, info: ValidationInfo):
        scheduled = info.data.get("scheduled_date")
        if v is not None and scheduled is not None and v < scheduled:
            raise ValueError("due_date must be on or after scheduled_date")
        return v

    @field_validator("recurrence_preset")
    @classmethod
    def validate_preset(cls, v, info: ValidationInfo):
        if v is not None and info.data.get("recurrence_rule"):
            raise ValueError("Provide either recurrence_rule or recurrence_preset, not both")
        return v

    @model_validator(mode="after")
    def apply_preset(self):
        if self.recurrence_preset is not None and not self.recurrence_rule:
            self.recurrence_rule = preset_to_rule(self.recurrence_preset)
        return self


class ItemUpdate(BaseModel):
    """
    Request model for partial item updates.

    Unknown keys are kept (not rejected here) so the authorization engine can
    fail the request closed. ``changed_fields`` reports every key the client
    sent, including ones explicitly set to null.
    """

    model_config = ConfigDict(extra="allow")

    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=65535)
    status: Optional[ItemStatus] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    assignee_notes: Optional[str] = Field(None, max_length=10000)
    position: Optional[int] = Field(None, ge=0, le=MAX_POSITION)
    scheduled_date: Optional[date] = None
    due_date: Optional[date] = None
    recurrence_rule: Optional[str] = None
    recurrence_strategy: Optional[RecurrenceStrategy] = None
    tag_ids: Optional[List[str]] = None

    @field_validator("title", "status", "position", mode="before")
    @classmethod
    def reject_null(cls, v, info: ValidationInfo):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v

    @field_validator("recurrence_rule")
    @classmethod
    def validate_recurrence_rule(cls, v):
        return _check_rule(v)

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v, info: ValidationInfo):
        scheduled = info.data.get("scheduled_date")
        if v is not None and scheduled is not None and v < scheduled:
            raise ValueError("due_date must be on or after scheduled_date")
        return v

    def changed_fields(self) -> Set[str]:
        return set(self.model_fields_set) | set(self.model_extra or {})

    def changes(self) -> Dict[str, Any]:
        """Sent fields and their values; dates rendered as ISO strings, enums as values."""
        values: Dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, date):
                value = value.isoformat()
            values[name] = value
        values.update(self.model_extra or {})
        return values


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    color: Optional[str] = Field(None, max_length=7)

    @field_validator("color")
    @classmethod
    def validate_color(cls, v):
        return _check_color(v)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    color: Optional[str] = Field(None, max_length=7)
    archived: Optional[bool] = Field(None, description="Archive (true) or unarchive (false)")

    @field_validator("name", mode="before")
    @classmethod
    def reject_null_name(cls, v):
        if v is None:
            raise ValueError("name cannot be null")
        return v

    @field_validator("color")
    @classmethod
    def validate_color(cls, v):
        return _check_color(v)


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    color: Optional[str] = Field(None, max_length=7)

    @field_validator("color")
    @classmethod
    def validate_color(cls, v):
        return _check_color(v)


class TagUpdate(TagCreate):
    name: Optional[str] = Field(None, min_length=1, max_length=255)


class ReorderEntry(BaseModel):
    id: str = Field(min_length=1)
    position: int = Field(ge=0, le=MAX_POSITION)


class ReorderRequest(BaseModel):
    items: List[ReorderEntry] = Field(min_length=1, max_length=100)


class GenerateRecurrencesRequest(BaseModel):
    start_date: date
    end_date: date

    @field_validator("end_date")
    @classmethod
    def validate_range(cls, v, info: ValidationInfo):
        start = info.data.get("start_date")
        if start is not None and v < start:
            raise ValueError("end_date must be on or after start_date")
        return v


class TokenCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    abilities: List[TokenAbility] = Field(default_factory=lambda: [TokenAbility.MCP])

    @field_validator("abilities")
    @classmethod
    def validate_abilities(cls, v):
        if not v:
            raise ValueError("At least one ability is required")
        if TokenAbility.WILDCARD in v:
            raise ValueError("Wildcard tokens can no longer be issued; use api:* or mcp:*")
        return v


class ConnectionRequest(BaseModel):
    addressee_id: str = Field(min_length=1)


class StatsPeriod(str, Enum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @property
    def days(self) -> int:
        return {"week": 7, "month": 30, "year": 365}[self.value]


class StatsQuery(BaseModel):
    """Activity statistics range; ``from`` overrides the period, ``to`` defaults to today."""

    model_config = ConfigDict(populate_by_name=True)

    period: StatsPeriod = StatsPeriod.YEAR
    from_date: Optional[date] = Field(None, alias="from")
    to_date: Optional[date] = Field(None, alias="to")

    @field_validator("to_date")
    @classmethod
    def validate_range(cls, v, info: ValidationInfo):
        start = info.data.get("from_date")
        if v is not None and start is not None and v < start:
            raise ValueError("to must be on or after from")
        return v


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip().lower()
    if not re.match(EMAIL_PATTERN, value):
        raise ValueError("The email must be a valid email address.")
    return value


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    is_admin: bool = False

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _check_email(v)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[str] = Field(None, min_length=3, max_length=255)
    is_admin: Optional[bool] = None

    @field_validator("name", "email", "is_admin", mode="before")
    @classmethod
    def reject_null(cls, v, info: ValidationInfo):
        if v is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        return _check_email(v)


@dataclass
class ValidationResult:
    """Outcome of validating a payload: ok flag, parsed model, field errors."""

    ok: bool
    data: Optional[BaseModel] = None
    errors: Dict[str, List[str]] = field(default_factory=dict)

    def raise_for_errors(self) -> BaseModel:
        if not self.ok:
            raise ValidationFailed(self.errors)
        return self.data


def _clean_message(message: str) -> str:
    prefix = "Value error, "
    return message[len(prefix):] if message.startswith(prefix) else message


def validate_payload(model: Type[BaseModel], data: Any) -> ValidationResult:
    """
    Validate raw data against a request model.

    Returns:
        ValidationResult with the parsed model, or the field -> messages mapping
    """
    try:
        parsed = model.model_validate(data if data is not None else {})
    except ValidationError as exc:
        errors: Dict[str, List[str]] = {}
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
            errors.setdefault(location, []).append(_clean_message(err.get("msg", "Invalid value")))
        return ValidationResult(False, None, errors)
    return ValidationResult(True, parsed)

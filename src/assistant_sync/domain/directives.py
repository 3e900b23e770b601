from __future__ import annotations

import hashlib
import math
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .chat_models import EntityKind


ActionKind = Literal["create_project", "create_task"]
ACTION_KINDS: tuple[str, ...] = ("create_project", "create_task")


def _normalize(value: Optional[str]) -> str:
    return " ".join(str(value or "").split()).casefold()


class _DirectiveBase(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    description: Optional[str] = None

    @property
    def entity_kind(self) -> EntityKind:
        raise NotImplementedError

    def identity_fields(self) -> List[Optional[str]]:
        raise NotImplementedError


class CreateProjectDirective(_DirectiveBase):
    action: Literal["create_project"] = "create_project"
    project_name: str = Field(min_length=1)
    workspace_name: Optional[str] = None
    deadline: Optional[str] = None

    @property
    def entity_kind(self) -> EntityKind:
        return "project"

    def identity_fields(self) -> List[Optional[str]]:
        return [self.project_name, self.workspace_name]


class CreateTaskDirective(_DirectiveBase):
    action: Literal["create_task"] = "create_task"
    title: str = Field(min_length=1)
    project_name: Optional[str] = None
    sprint_name: Optional[str] = None
    assignee_email: Optional[str] = None
    assignee_name: Optional[str] = None
    due_date: Optional[str] = None
    estimated_hours: Optional[float] = None

    @field_validator("estimated_hours", mode="before")
    @classmethod
    def _coerce_hours(cls, value: Any) -> Optional[float]:
        # Anything that is not a non-negative number is dropped rather than rejected
        if value is None or isinstance(value, bool):
            return None
        try:
            hours = float(value)
        except (TypeError, ValueError):
            return None
        if math.isnan(hours) or math.isinf(hours) or hours < 0:
            return None
        return hours

    @property
    def entity_kind(self) -> EntityKind:
        return "task"

    def identity_fields(self) -> List[Optional[str]]:
        return [self.title, self.project_name]


Directive = Annotated[Union[CreateProjectDirective, CreateTaskDirective], Field(discriminator="action")]

directive_adapter: TypeAdapter[Any] = TypeAdapter(Directive)


def fingerprint(directive: Union[CreateProjectDirective, CreateTaskDirective]) -> str:
    """Stable hash of the fields that identify the entity a directive would create.

    Case and whitespace differences do not change the fingerprint; optional
    detail fields (deadline, description, assignee) never participate.
    """
    parts = [directive.action] + [_normalize(v) for v in directive.identity_fields()]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()[:32]

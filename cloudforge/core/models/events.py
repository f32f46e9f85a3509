"""
Progress events — the typed stream a deployment emits.

Three shapes share the ``type`` discriminator:

    {"type": "log",     "message": "...", "stream": "stdout", "phase": "apply", ...}
    {"type": "error",   "message": "...", "kind": "ApplyFailure", ...}
    {"type": "success", "message": "...", ...}

``log`` events are advisory.  Exactly one ``error`` or ``success``
ends every stream.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from cloudforge.core.errors import FailureKind


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    timestamp: str = Field(default_factory=_now_iso)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @property
    def is_terminal(self) -> bool:
        return False


class LogEvent(_EventBase):
    type: Literal["log"] = "log"
    stream: Literal["stdout", "stderr", "system"] = "system"
    phase: str | None = None


class ErrorEvent(_EventBase):
    type: Literal["error"] = "error"
    kind: FailureKind = FailureKind.INTERNAL_ERROR
    exit_code: int | None = None

    @property
    def is_terminal(self) -> bool:
        return True


class SuccessEvent(_EventBase):
    type: Literal["success"] = "success"
    resources: list[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return True


ProgressEvent = Annotated[
    Union[LogEvent, ErrorEvent, SuccessEvent],
    Field(discriminator="type"),
]

_adapter: TypeAdapter[Any] = TypeAdapter(ProgressEvent)


def event_from_wire(data: dict[str, Any]) -> LogEvent | ErrorEvent | SuccessEvent:
    """Rebuild a typed event from its decoded JSON object."""
    return _adapter.validate_python(data)

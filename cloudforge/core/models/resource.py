"""
ResourceRecord — what the ledger believes exists in the cloud.

Persisted shape::

    {"id": "vpc-0abc", "type": "vpc", "name": "vpc-main",
     "status": "available", "region": "us-east-1",
     "createdAt": "2026-01-01T00:00:00+00:00", "details": {...}}
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class ResourceRecord(BaseModel):
    """A cloud resource created by a successful deployment."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str
    name: str = ""
    status: str = "available"
    region: str = ""
    created_at: str = Field(default_factory=_now_iso, alias="createdAt")
    details: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

"""
Team export wire format.

The only cross-machine contract in Memory Mesh: a JSON object with a
semver ``version`` and a ``patterns`` array whose entries carry at least
``type`` and ``pattern``. Everything else is optional, and unknown keys
are kept so newer exports still load.
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import ExportValidationError, clamp

SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?$")


class ExportedPattern(BaseModel):
    """One pattern entry of a team export."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = Field(..., min_length=1)
    pattern: str = Field(..., min_length=1)
    confidence: float = 0.5
    occurrences: int = 1
    sources: List[str] = Field(default_factory=list)
    first_seen: Optional[str] = Field(None, alias="firstSeen")
    last_seen: Optional[str] = Field(None, alias="lastSeen")
    team_count: Optional[int] = Field(None, alias="teamCount")

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        return clamp(v) if v is not None else 0.5

    @field_validator("occurrences", mode="before")
    @classmethod
    def at_least_one(cls, v):
        try:
            return max(1, int(v))
        except (TypeError, ValueError):
            return 1

    @field_validator("sources", mode="before")
    @classmethod
    def drop_empty_sources(cls, v):
        if not isinstance(v, list):
            return []
        return [str(s) for s in v if s]


class TeamExportDocument(BaseModel):
    """A versioned snapshot of filtered memory state."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: str
    patterns: List[ExportedPattern]
    team_name: Optional[str] = Field(None, alias="teamName")
    exported_at: Optional[str] = Field(None, alias="exportedAt")
    expertise: Optional[Dict[str, Any]] = None
    preferences: Optional[Dict[str, Any]] = None
    projects: Optional[List[Dict[str, Any]]] = None
    stats: Optional[Dict[str, Any]] = None

    @field_validator("version")
    @classmethod
    def semver(cls, v: str) -> str:
        if not SEMVER_RE.match(v):
            raise ValueError(f"version must be a semver string, got {v!r}")
        return v


def _describe(error: Dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


def parse_export(data: Any) -> TeamExportDocument:
    """
    Validate a raw export document.

    Raises:
        ExportValidationError: with one readable message per problem
    """
    if not isinstance(data, dict):
        raise ExportValidationError(
            "Invalid team data",
            errors=["Export document must be a JSON object"],
        )
    try:
        return TeamExportDocument.model_validate(data)
    except ValidationError as e:
        raise ExportValidationError(
            "Invalid team data",
            errors=[_describe(err) for err in e.errors()],
        )

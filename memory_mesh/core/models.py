"""
Data models for Memory Mesh.

Plain dataclasses with explicit to_dict/from_dict. ``from_dict`` is the
validating constructor used at the persistence boundary: missing fields
are defaulted, numbers are clamped and malformed entries raise
ValueError so the loader can skip them.
"""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..errors import clamp

# Reinforcement step applied when a known pattern is observed again
REINFORCEMENT_STEP = 0.1
DEFAULT_CONFIDENCE = 0.5

# Expertise is a recency-damped moving average
EXPERTISE_RETAIN = 0.7
EXPERTISE_OBSERVE = 0.3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time_or_none(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp, or None if it is missing or unreadable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_time(value: Any, default: Optional[datetime] = None) -> datetime:
    """Parse an ISO timestamp; anything unreadable becomes ``default`` (or now)."""
    return parse_time_or_none(value) or default or utcnow()


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def coerce_count(value: Any, minimum: int = 1) -> int:
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return minimum


def _unique(items: Any) -> List[str]:
    """Order-preserving de-duplication of string sources."""
    seen: List[str] = []
    if not isinstance(items, (list, tuple, set)):
        return seen
    for item in items:
        if item is None:
            continue
        item = str(item)
        if item and item not in seen:
            seen.append(item)
    return seen


@dataclass
class Pattern:
    """
    An observed (type, value) pair with confidence and provenance.

    Keyed by ``(pattern_type, value)``. Confidence stays in [0, 1] and
    only grows under plain reinforcement; occurrences is at least 1.
    """
    pattern_type: str
    value: str
    confidence: float = DEFAULT_CONFIDENCE
    occurrences: int = 1
    sources: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: f"gp-{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.pattern_type, self.value)

    def add_source(self, source: Optional[str]) -> bool:
        """Add a contributing source; returns True if it was new."""
        if source and source not in self.sources:
            self.sources.append(source)
            return True
        return False

    def reinforce(self, source: Optional[str] = None, confidence: Optional[float] = None) -> None:
        """
        Record another observation of this pattern.

        Bumps occurrences and confidence (+0.1, capped at 1.0). When
        ``confidence`` is given it is set instead of the bump.
        """
        self.occurrences += 1
        if confidence is None:
            self.confidence = min(1.0, self.confidence + REINFORCEMENT_STEP)
        else:
            self.confidence = clamp(confidence)
        self.add_source(source)
        self.last_seen = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.pattern_type,
            "pattern": self.value,
            "confidence": self.confidence,
            "occurrences": self.occurrences,
            "sources": list(self.sources),
            "createdAt": format_time(self.created_at),
            "lastSeen": format_time(self.last_seen),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        if not isinstance(data, dict):
            raise ValueError(f"pattern entry must be an object, got {type(data).__name__}")
        pattern_type = data.get("type")
        value = data.get("pattern")
        if not pattern_type or value is None or value == "":
            raise ValueError("pattern entry requires 'type' and 'pattern'")

        created = parse_time(data.get("createdAt") or data.get("firstSeen"))
        pattern = cls(
            pattern_type=str(pattern_type),
            value=str(value),
            confidence=clamp(data.get("confidence", DEFAULT_CONFIDENCE)),
            occurrences=coerce_count(data.get("occurrences", 1)),
            sources=_unique(data.get("sources", [])),
            created_at=created,
            last_seen=parse_time(data.get("lastSeen"), default=created),
        )
        if data.get("id"):
            pattern.id = str(data["id"])
        return pattern


@dataclass
class Expertise:
    """Damped-average confidence level held in a named domain."""
    domain: str
    level: float = 0.0
    observations: int = 1
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)

    def observe(self, level: float) -> None:
        """Fold a new observation in: level' = level*0.7 + new*0.3."""
        self.level = clamp(self.level * EXPERTISE_RETAIN + clamp(level) * EXPERTISE_OBSERVE)
        self.observations += 1
        self.last_updated = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "observations": self.observations,
            "createdAt": format_time(self.created_at),
            "lastUpdated": format_time(self.last_updated),
        }

    @classmethod
    def from_dict(cls, domain: str, data: Any) -> "Expertise":
        # Older exports store a bare number per domain
        if isinstance(data, (int, float)) and not isinstance(data, bool):
            return cls(domain=domain, level=clamp(data))
        if not isinstance(data, dict):
            raise ValueError(f"expertise '{domain}' must be a number or an object")
        created = parse_time(data.get("createdAt"))
        return cls(
            domain=domain,
            level=clamp(data.get("level", 0.0), default=0.0),
            observations=coerce_count(data.get("observations", 1)),
            created_at=created,
            last_updated=parse_time(data.get("lastUpdated"), default=created),
        )


@dataclass
class Preference:
    """Last-write-wins scalar preference."""
    key: str
    value: Any = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "updatedAt": format_time(self.updated_at)}

    @classmethod
    def from_dict(cls, key: str, data: Any) -> "Preference":
        if isinstance(data, dict) and "value" in data:
            return cls(key=key, value=data["value"], updated_at=parse_time(data.get("updatedAt")))
        return cls(key=key, value=data)


@dataclass
class Project:
    """A project (source) known to this scope, keyed by filesystem path."""
    path: str
    name: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    access_count: int = 1
    registered_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.name:
            self.name = os.path.basename(self.path.rstrip("/\\")) or self.path

    def touch(self, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Mark as accessed again and merge new metadata."""
        self.access_count += 1
        self.last_accessed = utcnow()
        if metadata:
            self.metadata.update(metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "metadata": dict(self.metadata),
            "registeredAt": format_time(self.registered_at),
            "lastAccessed": format_time(self.last_accessed),
            "accessCount": self.access_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        if not isinstance(data, dict) or not data.get("path"):
            raise ValueError("project entry requires 'path'")
        metadata = data.get("metadata")
        registered = parse_time(data.get("registeredAt"))
        return cls(
            path=str(data["path"]),
            name=str(data.get("name") or ""),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            access_count=coerce_count(data.get("accessCount", 1)),
            registered_at=registered,
            last_accessed=parse_time(data.get("lastAccessed"), default=registered),
        )

"""
Feedback Collector - learns from which suggestions users accept.

Suggestions offered to a user are held as pending until the user's
response (accepted, rejected, modified, ignored) resolves them. Resolved
records go to a bounded history and are folded into running counters
per category and per ``category:type``. The counters drive acceptance
rates, confidence adjustment and suppression of unhelpful suggestion
types.

Persisted layout: ``history.json`` (array of records) and ``stats.json``
(counters) in the collector's data directory.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .. import config
from ..core.models import coerce_count, format_time, parse_time, utcnow
from ..core.persistence import load_json, write_json
from ..errors import UnknownReferenceError, clamp

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "history.json"
STATS_FILENAME = "stats.json"

MAX_HISTORY = 1000
EXPORT_VERSION = "1.0.0"

# Rates fall back to an uninformative 0.5 without data
DEFAULT_RATE = 0.5

# Blend weights for adjust_confidence
RAW_WEIGHT = 0.6
CATEGORY_WEIGHT = 0.25
TYPE_WEIGHT = 0.15
ADJUSTED_MIN = 0.1
ADJUSTED_MAX = 0.99

# Rate-based judgements need at least this many observations
MIN_SAMPLE_SIZE = 5
SUPPRESS_THRESHOLD = 0.3
LOW_PERFORMING_THRESHOLD = 0.3
HIGH_PERFORMING_THRESHOLD = 0.7


class FeedbackKind(Enum):
    """How the user responded to a suggestion."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    MODIFIED = "modified"
    IGNORED = "ignored"

    @classmethod
    def parse(cls, value: Any) -> "FeedbackKind":
        """Parse a kind; unknown values count as ignored."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            logger.warning(f"Unknown feedback kind {value!r}, recording as ignored")
            return cls.IGNORED


class SuggestionCategory(Enum):
    PATTERN = "pattern"
    CODE = "code"
    QUESTION = "question"
    PREDICTION = "prediction"
    RECOMMENDATION = "recommendation"


def _empty_counts() -> Dict[str, int]:
    counts = {"total": 0}
    counts.update({kind.value: 0 for kind in FeedbackKind})
    return counts


def _empty_stats() -> Dict[str, Any]:
    return {"total": 0, "byCategory": {}, "byType": {}, "acceptanceRate": 0.0}


def _category_name(category: Any) -> str:
    if isinstance(category, SuggestionCategory):
        return category.value
    return str(category or "unknown")


def _type_key(category: str, suggestion_type: str) -> str:
    return f"{category}:{suggestion_type}"


@dataclass
class FeedbackRecord:
    """A suggestion and, once resolved, the user's response to it."""
    category: str
    suggestion_type: str
    text: str = ""
    confidence: float = 0.5
    context: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"sug-{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=utcnow)
    kind: Optional[FeedbackKind] = None
    feedback_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def type_key(self) -> str:
        return _type_key(self.category, self.suggestion_type)

    def resolve(self, kind: FeedbackKind, details: Optional[Dict[str, Any]] = None) -> None:
        self.kind = kind
        self.feedback_at = utcnow()
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "type": self.suggestion_type,
            "text": self.text,
            "confidence": self.confidence,
            "context": dict(self.context),
            "createdAt": format_time(self.created_at),
            "feedback": self.kind.value if self.kind else None,
            "feedbackAt": format_time(self.feedback_at) if self.feedback_at else None,
            "feedbackDetails": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackRecord":
        if not isinstance(data, dict):
            raise ValueError(f"feedback record must be an object, got {type(data).__name__}")
        created = parse_time(data.get("createdAt"))
        record = cls(
            category=str(data.get("category") or "unknown"),
            suggestion_type=str(data.get("type") or "unknown"),
            text=str(data.get("text") or data.get("suggestion") or ""),
            confidence=clamp(data.get("confidence", 0.5)),
            context=data.get("context") if isinstance(data.get("context"), dict) else {},
            created_at=created,
            details=data.get("feedbackDetails") if isinstance(data.get("feedbackDetails"), dict) else {},
        )
        if data.get("id"):
            record.id = str(data["id"])
        if data.get("feedback"):
            record.kind = FeedbackKind.parse(data["feedback"])
            record.feedback_at = parse_time(data.get("feedbackAt"), default=created)
        return record


class FeedbackCollector:
    """
    Tracks suggestion acceptance and rejection.

    Example:
        collector = FeedbackCollector(data_dir="/tmp/mesh/feedback")

        # Record a suggestion when it is shown
        suggestion_id = collector.record_suggestion("pattern", "naming", text="camelCase")

        # Later, record what the user did with it
        collector.record_feedback(suggestion_id, FeedbackKind.ACCEPTED)

        # Blend a raw confidence with the track record
        confidence = collector.adjust_confidence("pattern", "naming", 0.5)
    """

    def __init__(self, data_dir: Optional[str] = None, scope: Optional[str] = None):
        if data_dir is None:
            data_dir = str(config.get_scope_dir(config.get_scope(scope)) / config.FEEDBACK_SUBDIR)
        self.data_dir = Path(data_dir).expanduser()
        self.history: List[FeedbackRecord] = []
        self.stats: Dict[str, Any] = _empty_stats()
        self.pending: Dict[str, FeedbackRecord] = {}
        self._lock = threading.RLock()
        self.initialized = False

    def init(self) -> "FeedbackCollector":
        with self._lock:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.history = []
            for entry in load_json(self.data_dir / HISTORY_FILENAME, []):
                try:
                    self.history.append(FeedbackRecord.from_dict(entry))
                except ValueError as e:
                    logger.warning(f"Skipping malformed feedback record: {e}")
            self.stats = self._normalize_stats(load_json(self.data_dir / STATS_FILENAME, _empty_stats()))
            self.initialized = True
        logger.info(f"FeedbackCollector initialized: {len(self.history)} records in {self.data_dir}")
        return self

    def _ensure_init(self) -> None:
        if not self.initialized:
            self.init()

    @staticmethod
    def _normalize_stats(stats: Dict[str, Any]) -> Dict[str, Any]:
        """Coerce a loaded stats document; wrong-typed sections start empty."""
        if not isinstance(stats, dict):
            stats = {}
        normalized = _empty_stats()
        normalized["total"] = coerce_count(stats.get("total"), minimum=0)
        for section in ("byCategory", "byType"):
            raw = stats.get(section)
            if not isinstance(raw, dict):
                if raw is not None:
                    logger.warning(f"Ignoring malformed {section} counters")
                continue
            for key, counts in raw.items():
                if not isinstance(counts, dict):
                    continue
                merged = _empty_counts()
                for name in merged:
                    merged[name] = coerce_count(counts.get(name), minimum=0)
                normalized[section][key] = merged
        normalized["acceptanceRate"] = clamp(stats.get("acceptanceRate"), default=0.0)
        return normalized

    def save(self) -> None:
        with self._lock:
            history = [r.to_dict() for r in self.history]
            stats = {
                "total": self.stats["total"],
                "byCategory": {k: dict(v) for k, v in self.stats["byCategory"].items()},
                "byType": {k: dict(v) for k, v in self.stats["byType"].items()},
                "acceptanceRate": self.stats["acceptanceRate"],
            }
        write_json(self.data_dir / HISTORY_FILENAME, history)
        write_json(self.data_dir / STATS_FILENAME, stats)

    # =========================================================================
    # Recording
    # =========================================================================

    def record_suggestion(
        self,
        category: str,
        suggestion_type: str,
        text: str = "",
        confidence: float = 0.5,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Hold a suggestion as pending; returns its id."""
        self._ensure_init()
        record = FeedbackRecord(
            category=_category_name(category),
            suggestion_type=str(suggestion_type or "unknown"),
            text=text or "",
            confidence=clamp(confidence),
            context=dict(context or {}),
        )
        with self._lock:
            self.pending[record.id] = record
        logger.debug(f"Recorded suggestion {record.id} ({record.type_key})")
        return record.id

    def record_feedback(
        self,
        suggestion_id: str,
        kind: Any,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Resolve a suggestion with the user's response.

        Returns False if nobody recorded ``suggestion_id`` (or it has
        already been resolved).
        """
        self._ensure_init()
        kind = FeedbackKind.parse(kind)
        with self._lock:
            try:
                record = self._take_unresolved(suggestion_id)
            except UnknownReferenceError as e:
                logger.warning(e.message)
                return False
            record.resolve(kind, details)
            self._count(record)
        self.save()
        logger.debug(f"Feedback {kind.value} for {suggestion_id}")
        return True

    def record_quick_feedback(
        self,
        category: str,
        suggestion_type: str,
        kind: Any = FeedbackKind.ACCEPTED,
        text: str = "",
        confidence: float = 0.5,
        context: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Record a suggestion and its outcome in one step; returns the record id."""
        self._ensure_init()
        record = FeedbackRecord(
            category=_category_name(category),
            suggestion_type=str(suggestion_type or "unknown"),
            text=text or "",
            confidence=clamp(confidence),
            context=dict(context or {}),
            id=f"fb-{uuid.uuid4().hex[:12]}",
        )
        record.resolve(FeedbackKind.parse(kind), details)
        with self._lock:
            self._append(record)
            self._count(record)
        self.save()
        return record.id

    def _take_unresolved(self, suggestion_id: str) -> FeedbackRecord:
        """Move a pending suggestion into history, or find an unresolved one there."""
        record = self.pending.pop(suggestion_id, None)
        if record is not None:
            self._append(record)
            return record
        for record in self.history:
            if record.id == suggestion_id and record.kind is None:
                return record
        raise UnknownReferenceError(f"Feedback for unknown suggestion id {suggestion_id}")

    def _append(self, record: FeedbackRecord) -> None:
        self.history.append(record)
        if len(self.history) > MAX_HISTORY:
            self.history = self.history[-MAX_HISTORY:]

    def _count(self, record: FeedbackRecord) -> None:
        """Fold a resolved record into the running counters."""
        kind = record.kind.value
        self.stats["total"] += 1
        for section, key in (("byCategory", record.category), ("byType", record.type_key)):
            counts = self.stats[section].setdefault(key, _empty_counts())
            counts["total"] += 1
            counts[kind] += 1

        accepted = sum(c["accepted"] for c in self.stats["byCategory"].values())
        self.stats["acceptanceRate"] = accepted / self.stats["total"]

    # =========================================================================
    # Rates
    # =========================================================================

    def get_acceptance_rate(self, category: str) -> float:
        self._ensure_init()
        return self._rate(self.stats["byCategory"].get(category))

    def get_type_acceptance_rate(self, category: str, suggestion_type: str) -> float:
        self._ensure_init()
        return self._rate(self.stats["byType"].get(_type_key(category, suggestion_type)))

    @staticmethod
    def _rate(counts: Optional[Dict[str, int]]) -> float:
        if not counts or counts["total"] == 0:
            return DEFAULT_RATE
        return counts["accepted"] / counts["total"]

    def adjust_confidence(self, category: str, suggestion_type: str, raw_confidence: float) -> float:
        """
        Blend a raw confidence with the historical acceptance rates:
        raw*0.6 + category_rate*0.25 + type_rate*0.15, within [0.1, 0.99].
        """
        adjusted = (
            clamp(raw_confidence) * RAW_WEIGHT
            + self.get_acceptance_rate(category) * CATEGORY_WEIGHT
            + self.get_type_acceptance_rate(category, suggestion_type) * TYPE_WEIGHT
        )
        return max(ADJUSTED_MIN, min(ADJUSTED_MAX, adjusted))

    def should_suppress(
        self,
        category: str,
        suggestion_type: str,
        threshold: float = SUPPRESS_THRESHOLD,
    ) -> bool:
        """True only for a type with enough observations and a rate below threshold."""
        self._ensure_init()
        counts = self.stats["byType"].get(_type_key(category, suggestion_type))
        if not counts or counts["total"] < MIN_SAMPLE_SIZE:
            return False
        return self._rate(counts) < threshold

    def get_low_performing_types(self, threshold: float = LOW_PERFORMING_THRESHOLD) -> List[Dict[str, Any]]:
        return sorted(
            (t for t in self._type_rates() if t["acceptance_rate"] < threshold),
            key=lambda t: t["acceptance_rate"],
        )

    def get_high_performing_types(self, threshold: float = HIGH_PERFORMING_THRESHOLD) -> List[Dict[str, Any]]:
        return sorted(
            (t for t in self._type_rates() if t["acceptance_rate"] >= threshold),
            key=lambda t: t["acceptance_rate"],
            reverse=True,
        )

    def _type_rates(self) -> List[Dict[str, Any]]:
        self._ensure_init()
        rates = []
        for key, counts in self.stats["byType"].items():
            if counts["total"] < MIN_SAMPLE_SIZE:
                continue
            category, _, suggestion_type = key.partition(":")
            rates.append({
                "category": category,
                "type": suggestion_type,
                "acceptance_rate": self._rate(counts),
                "total": counts["total"],
                "accepted": counts["accepted"],
                "rejected": counts["rejected"],
            })
        return rates

    # =========================================================================
    # Queries
    # =========================================================================

    def get_history(self, category: Optional[str] = None, limit: int = 50) -> List[FeedbackRecord]:
        """Most recent records first."""
        self._ensure_init()
        with self._lock:
            records = [r for r in self.history if not category or r.category == category]
        return list(reversed(records[-limit:])) if limit > 0 else []

    def get_recent_feedback(self, days: int = 7) -> List[FeedbackRecord]:
        self._ensure_init()
        cutoff = utcnow() - timedelta(days=days)
        with self._lock:
            return [r for r in self.history if r.feedback_at and r.feedback_at >= cutoff]

    def get_pending_suggestions(self) -> List[FeedbackRecord]:
        self._ensure_init()
        with self._lock:
            return list(self.pending.values())

    def get_stats(self) -> Dict[str, Any]:
        self._ensure_init()
        with self._lock:
            return {
                "total": self.stats["total"],
                "acceptance_rate": self.stats["acceptanceRate"],
                "by_category": {k: dict(v) for k, v in self.stats["byCategory"].items()},
                "by_type": {k: dict(v) for k, v in self.stats["byType"].items()},
                "history_size": len(self.history),
                "pending_count": len(self.pending),
                "categories_tracked": len(self.stats["byCategory"]),
                "types_tracked": len(self.stats["byType"]),
            }

    # =========================================================================
    # Utilities
    # =========================================================================

    def clear(self) -> None:
        self._ensure_init()
        with self._lock:
            self.history = []
            self.stats = _empty_stats()
            self.pending = {}
        self.save()
        logger.info(f"Cleared feedback in {self.data_dir}")

    def export(self) -> Dict[str, Any]:
        self._ensure_init()
        with self._lock:
            return {
                "version": EXPORT_VERSION,
                "exportedAt": format_time(utcnow()),
                "history": [r.to_dict() for r in self.history],
                "stats": {
                    "total": self.stats["total"],
                    "byCategory": {k: dict(v) for k, v in self.stats["byCategory"].items()},
                    "byType": {k: dict(v) for k, v in self.stats["byType"].items()},
                    "acceptanceRate": self.stats["acceptanceRate"],
                },
            }

    def import_data(self, data: Dict[str, Any], merge: bool = True) -> int:
        """
        Import exported feedback.

        With ``merge`` new records (by id) are appended and counted;
        otherwise history and counters are replaced. Returns the number
        of records taken in.
        """
        self._ensure_init()
        records = []
        for entry in data.get("history") or []:
            try:
                records.append(FeedbackRecord.from_dict(entry))
            except ValueError as e:
                logger.warning(f"Skipping malformed feedback record: {e}")

        with self._lock:
            if merge:
                known = {r.id for r in self.history}
                imported = 0
                for record in records:
                    if record.id in known:
                        continue
                    known.add(record.id)
                    self._append(record)
                    if record.kind is not None:
                        self._count(record)
                    imported += 1
            else:
                self.history = records[-MAX_HISTORY:]
                self.stats = self._normalize_stats(data.get("stats") or {})
                imported = len(self.history)
        self.save()
        logger.info(f"Imported {imported} feedback records (merge={merge})")
        return imported

"""
Memory Store - persistent cross-project memory for one scope.

Owns the canonical patterns, expertise levels, preferences and known
projects of a scope (a user or machine). Everything else in Memory Mesh
either reads through this store or works on snapshots taken from it.

Persisted layout (one directory per scope):
- patterns.json     array of Pattern
- expertise.json    object keyed by domain
- preferences.json  object keyed by name
- projects.json     array of Project

Each file is read wholesale on ``init()`` and rewritten wholesale on
flush. Mutations are visible immediately; disk writes are debounced.
"""

import copy
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .. import config
from ..errors import clamp
from .batching import WriteBatcher
from .models import Expertise, Pattern, Preference, Project, coerce_count, utcnow
from .persistence import load_json, write_json

logger = logging.getLogger(__name__)

PATTERNS_FILENAME = "patterns.json"
EXPERTISE_FILENAME = "expertise.json"
PREFERENCES_FILENAME = "preferences.json"
PROJECTS_FILENAME = "projects.json"

# Confidence given to patterns pushed from a project profile
PROFILE_PATTERN_CONFIDENCE = 0.6
PROFILE_LANGUAGE_LEVEL = 0.7
PROFILE_EXPERTISE_LEVEL = 0.6

# Patterns at or above this confidence are offered back as hints
HINT_MIN_CONFIDENCE = 0.7
HINT_EXPERTISE_LIMIT = 10


class MemoryStore:
    """
    Cross-project memory for a single scope.

    Example:
        store = MemoryStore(data_dir="/tmp/mesh/global")

        # Observe patterns from two projects
        store.record_pattern("naming", "camelCase", source="api")
        store.record_pattern("naming", "camelCase", source="web")

        # Track expertise (damped moving average)
        store.add_expertise("backend", 0.8)

        # Register projects (the consensus denominator)
        store.register_project("/src/api")

        # Make sure everything hit the disk
        store.flush()
    """

    def __init__(
        self,
        data_dir: Optional[str] = None,
        scope: Optional[str] = None,
        batch_window_ms: Optional[int] = None,
    ):
        """
        Args:
            data_dir: Directory for the four JSON documents.
                      Defaults to <MEMORY_MESH_HOME>/<scope>/global
            scope: Scope name; also the source attributed to observations
                   recorded without one
            batch_window_ms: Debounce window for writes (0 = synchronous)
        """
        self.scope = config.get_scope(scope)
        if data_dir is None:
            data_dir = str(config.get_scope_dir(self.scope) / config.GLOBAL_SUBDIR)
        self.data_dir = Path(data_dir).expanduser()

        self._patterns: Dict[Tuple[str, str], Pattern] = {}
        self._expertise: Dict[str, Expertise] = {}
        self._preferences: Dict[str, Preference] = {}
        self._projects: Dict[str, Project] = {}
        self._lock = threading.RLock()
        self.initialized = False

        if batch_window_ms is None:
            batch_window_ms = config.get_batch_window_ms()
        self._batcher = WriteBatcher(self._write_all, window_ms=batch_window_ms)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init(self) -> "MemoryStore":
        """Create the data directory and load persisted state."""
        with self._lock:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._load_all()
            self.initialized = True
        logger.info(
            f"MemoryStore initialized: scope={self.scope}, dir={self.data_dir}, "
            f"patterns={len(self._patterns)}, projects={len(self._projects)}"
        )
        return self

    def _ensure_init(self) -> None:
        if not self.initialized:
            self.init()

    def _path(self, filename: str) -> Path:
        return self.data_dir / filename

    def _load_all(self) -> None:
        self._patterns = {}
        for entry in load_json(self._path(PATTERNS_FILENAME), []):
            try:
                pattern = Pattern.from_dict(entry)
            except ValueError as e:
                logger.warning(f"Skipping malformed pattern entry: {e}")
                continue
            existing = self._patterns.get(pattern.key)
            if existing:
                # Duplicate keys in a hand-edited file fold into one record
                existing.occurrences += pattern.occurrences
                existing.confidence = max(existing.confidence, pattern.confidence)
                for source in pattern.sources:
                    existing.add_source(source)
            else:
                self._patterns[pattern.key] = pattern

        self._expertise = {}
        for domain, data in load_json(self._path(EXPERTISE_FILENAME), {}).items():
            try:
                self._expertise[domain] = Expertise.from_dict(domain, data)
            except ValueError as e:
                logger.warning(f"Skipping malformed expertise entry: {e}")

        self._preferences = {
            key: Preference.from_dict(key, data)
            for key, data in load_json(self._path(PREFERENCES_FILENAME), {}).items()
        }

        self._projects = {}
        for entry in load_json(self._path(PROJECTS_FILENAME), []):
            try:
                project = Project.from_dict(entry)
            except ValueError as e:
                logger.warning(f"Skipping malformed project entry: {e}")
                continue
            self._projects[project.path] = project

    def _write_all(self) -> None:
        """Snapshot under the lock, then write every document."""
        with self._lock:
            patterns = [p.to_dict() for p in self._patterns.values()]
            expertise = {d: e.to_dict() for d, e in self._expertise.items()}
            preferences = {k: p.to_dict() for k, p in self._preferences.items()}
            projects = [p.to_dict() for p in self._projects.values()]

        write_json(self._path(PATTERNS_FILENAME), patterns)
        write_json(self._path(EXPERTISE_FILENAME), expertise)
        write_json(self._path(PREFERENCES_FILENAME), preferences)
        write_json(self._path(PROJECTS_FILENAME), projects)
        logger.debug(f"Wrote memory store to {self.data_dir}")

    def save(self) -> None:
        """Schedule a (debounced) write."""
        self._batcher.schedule()

    def flush(self) -> None:
        """Write any buffered mutation now."""
        self._batcher.flush()

    def close(self) -> None:
        """Flush and release the shutdown hook."""
        self._batcher.close()

    @property
    def has_pending_write(self) -> bool:
        return self._batcher.pending

    @property
    def batch_window_ms(self) -> int:
        return self._batcher.window_ms

    @batch_window_ms.setter
    def batch_window_ms(self, value: int) -> None:
        self._batcher.window_ms = value

    # =========================================================================
    # Patterns
    # =========================================================================

    def record_pattern(
        self,
        pattern_type: str,
        value: str,
        confidence: Optional[float] = None,
        source: Optional[str] = None,
        override_confidence: bool = False,
    ) -> Pattern:
        """
        Record an observation of a (type, value) pattern.

        A new pattern starts at ``confidence`` (default 0.5). A known
        pattern gains an occurrence, the source, and +0.1 confidence
        capped at 1.0; with ``override_confidence`` the given confidence
        is set instead.

        Args:
            pattern_type: Category (naming, structure, async, ...)
            value: The observed value
            confidence: Starting (or, with override, replacement) confidence
            source: Project that made the observation (defaults to the scope)
            override_confidence: Set ``confidence`` on an existing pattern

        Returns:
            A snapshot of the stored pattern
        """
        self._ensure_init()
        pattern_type = str(pattern_type or "unknown")
        value = str(value)
        source = source or self.scope

        with self._lock:
            existing = self._patterns.get((pattern_type, value))
            if existing:
                existing.reinforce(
                    source=source,
                    confidence=confidence if override_confidence else None,
                )
                pattern = existing
                logger.debug(
                    f"Reinforced pattern {pattern_type}::{value} "
                    f"(occurrences={pattern.occurrences}, confidence={pattern.confidence:.2f})"
                )
            else:
                pattern = Pattern(
                    pattern_type=pattern_type,
                    value=value,
                    confidence=clamp(confidence) if confidence is not None else 0.5,
                    sources=[source],
                )
                self._patterns[pattern.key] = pattern
                logger.debug(f"Recorded new pattern {pattern_type}::{value}")
            snapshot = self._snapshot(pattern)

        self.save()
        return snapshot

    def upsert_pattern(self, pattern: Pattern) -> Pattern:
        """Store a complete pattern record, replacing any with the same key."""
        self._ensure_init()
        stored = self._snapshot(pattern)
        if not stored.sources:
            stored.sources = [self.scope]
        stored.confidence = clamp(stored.confidence)
        stored.occurrences = max(1, int(stored.occurrences))
        with self._lock:
            self._patterns[stored.key] = stored
        self.save()
        return self._snapshot(stored)

    def get_pattern(self, pattern_type: str, value: str) -> Optional[Pattern]:
        self._ensure_init()
        with self._lock:
            pattern = self._patterns.get((pattern_type, value))
            return self._snapshot(pattern) if pattern else None

    def get_patterns(self) -> List[Pattern]:
        """All patterns, as snapshots, in insertion order."""
        self._ensure_init()
        with self._lock:
            return [self._snapshot(p) for p in self._patterns.values()]

    def get_patterns_by_type(self, pattern_type: str) -> List[Pattern]:
        """Patterns of one type, highest confidence first."""
        patterns = [p for p in self.get_patterns() if p.pattern_type == pattern_type]
        return sorted(patterns, key=lambda p: p.confidence, reverse=True)

    def get_dominant_pattern(self, pattern_type: str) -> Optional[Pattern]:
        patterns = self.get_patterns_by_type(pattern_type)
        return patterns[0] if patterns else None

    def get_confident_patterns(self, min_confidence: float = 0.7) -> List[Pattern]:
        patterns = [p for p in self.get_patterns() if p.confidence >= min_confidence]
        return sorted(patterns, key=lambda p: p.confidence, reverse=True)

    @staticmethod
    def _snapshot(pattern: Pattern) -> Pattern:
        snapshot = copy.copy(pattern)
        snapshot.sources = list(pattern.sources)
        return snapshot

    # =========================================================================
    # Expertise
    # =========================================================================

    def add_expertise(self, domain: str, level: float) -> Expertise:
        """
        Add an expertise observation.

        The first call sets the level; later calls apply
        ``level' = level * 0.7 + new * 0.3``.
        """
        self._ensure_init()
        with self._lock:
            current = self._expertise.get(domain)
            if current:
                current.observe(level)
            else:
                current = Expertise(domain=domain, level=clamp(level, default=0.0))
                self._expertise[domain] = current
            snapshot = copy.copy(current)
        self.save()
        return snapshot

    def put_expertise(self, domain: str, level: float, observations: Optional[int] = None) -> Expertise:
        """Overwrite a domain's expertise (last write wins)."""
        self._ensure_init()
        with self._lock:
            current = self._expertise.get(domain)
            if current is None:
                current = Expertise(domain=domain)
                self._expertise[domain] = current
            current.level = clamp(level, default=0.0)
            if observations is not None:
                current.observations = coerce_count(observations)
            current.last_updated = utcnow()
            snapshot = copy.copy(current)
        self.save()
        return snapshot

    def get_expertise(self, domain: str) -> float:
        """Expertise level for a domain, 0 if unknown."""
        self._ensure_init()
        with self._lock:
            current = self._expertise.get(domain)
            return current.level if current else 0.0

    def get_all_expertise(self) -> Dict[str, Expertise]:
        self._ensure_init()
        with self._lock:
            return {d: copy.copy(e) for d, e in self._expertise.items()}

    def get_top_expertise(self, limit: int = 5) -> List[Expertise]:
        ranked = sorted(self.get_all_expertise().values(), key=lambda e: e.level, reverse=True)
        return ranked[:limit]

    # =========================================================================
    # Preferences
    # =========================================================================

    def set_preference(self, key: str, value: Any) -> None:
        self._ensure_init()
        with self._lock:
            self._preferences[key] = Preference(key=key, value=value)
        self.save()

    def get_preference(self, key: str, default: Any = None) -> Any:
        self._ensure_init()
        with self._lock:
            preference = self._preferences.get(key)
        if preference is None or preference.value is None:
            return default
        return preference.value

    def get_all_preferences(self) -> Dict[str, Any]:
        """Flat ``{name: value}`` view."""
        self._ensure_init()
        with self._lock:
            return {key: p.value for key, p in self._preferences.items()}

    # =========================================================================
    # Projects
    # =========================================================================

    def register_project(self, project_path: str, metadata: Optional[Dict[str, Any]] = None) -> Project:
        """Register a project on first contact, touch it on every later one."""
        self._ensure_init()
        metadata = dict(metadata or {})
        with self._lock:
            project = self._projects.get(project_path)
            if project:
                project.touch(metadata)
            else:
                project = Project(
                    path=project_path,
                    name=str(metadata.get("name") or ""),
                    metadata=metadata,
                )
                self._projects[project_path] = project
                logger.debug(f"Registered project {project.name} ({project_path})")
            snapshot = copy.deepcopy(project)
        self.save()
        return snapshot

    def get_projects(self) -> List[Project]:
        self._ensure_init()
        with self._lock:
            return [copy.deepcopy(p) for p in self._projects.values()]

    def get_recent_projects(self, limit: int = 10) -> List[Project]:
        ranked = sorted(self.get_projects(), key=lambda p: p.last_accessed, reverse=True)
        return ranked[:limit]

    @property
    def project_count(self) -> int:
        """Number of registered projects (the consensus denominator)."""
        self._ensure_init()
        return len(self._projects)

    # =========================================================================
    # Profile Sync
    # =========================================================================

    def import_from_profile(self, profile: Dict[str, Any], project_path: str) -> Dict[str, int]:
        """
        Push a project profile's observations into global memory.

        Patterns are recorded at moderate confidence tagged with the
        project name; primary languages and listed expertise become
        expertise observations; the project is registered.
        """
        self._ensure_init()
        project_name = os.path.basename(project_path.rstrip("/\\")) or project_path
        tooling = profile.get("tooling") or {}
        languages = tooling.get("primaryLanguages") or tooling.get("primary_languages") or []
        counts = {"patterns": 0, "expertise": 0}

        for entry in profile.get("patterns") or []:
            if not isinstance(entry, dict) or not entry.get("type"):
                continue
            value = entry.get("description") or entry.get("pattern")
            if not value:
                continue
            self.record_pattern(
                entry["type"],
                value,
                confidence=PROFILE_PATTERN_CONFIDENCE,
                source=project_name,
            )
            counts["patterns"] += 1

        for language in languages:
            self.add_expertise(language, PROFILE_LANGUAGE_LEVEL)
            counts["expertise"] += 1

        for area in profile.get("expertise") or []:
            if isinstance(area, str):
                self.add_expertise(area, PROFILE_EXPERTISE_LEVEL)
                counts["expertise"] += 1
            elif isinstance(area, dict) and area.get("domain"):
                self.add_expertise(area["domain"], area.get("level") or PROFILE_EXPERTISE_LEVEL)
                counts["expertise"] += 1

        self.register_project(project_path, {
            "name": profile.get("name") or project_name,
            "languages": list(languages),
        })
        logger.info(
            f"Imported profile for {project_name}: "
            f"{counts['patterns']} patterns, {counts['expertise']} expertise observations"
        )
        return counts

    def export_to_profile(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        """
        Return a copy of ``profile`` annotated with global hints.

        Hints are advisory: high-confidence global patterns, the top
        expertise domains and aggregated preferences.
        """
        enhanced = dict(profile)
        enhanced["global_hints"] = {
            "authoritative": False,
            "patterns": [
                {
                    "type": p.pattern_type,
                    "pattern": p.value,
                    "confidence": p.confidence,
                    "from_projects": len(p.sources),
                }
                for p in self.get_confident_patterns(HINT_MIN_CONFIDENCE)
            ],
            "expertise": [
                {"domain": e.domain, "level": e.level, "observations": e.observations}
                for e in self.get_top_expertise(HINT_EXPERTISE_LIMIT)
            ],
            "preferences": self.get_all_preferences(),
        }
        return enhanced

    # =========================================================================
    # Utilities
    # =========================================================================

    def clear(self) -> None:
        """Reset all four maps (and the files on the next write)."""
        self._ensure_init()
        with self._lock:
            self._patterns = {}
            self._expertise = {}
            self._preferences = {}
            self._projects = {}
        self.save()
        logger.info(f"Cleared memory store for scope {self.scope}")

    def get_stats(self) -> Dict[str, Any]:
        self._ensure_init()
        with self._lock:
            patterns = list(self._patterns.values())
            return {
                "total_patterns": len(patterns),
                "pattern_types": sorted({p.pattern_type for p in patterns}),
                "expertise_areas": len(self._expertise),
                "preferences_count": len(self._preferences),
                "projects_count": len(self._projects),
                "high_confidence_patterns": sum(
                    1 for p in patterns if p.confidence >= HINT_MIN_CONFIDENCE
                ),
            }

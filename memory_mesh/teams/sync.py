"""
Team Sync - export/import for sharing memory between installations.

Exports a filtered snapshot of a memory store as a versioned document,
imports a peer's document back with a chosen conflict strategy, and
merges any number of exports into one without touching a store.

Conflict strategies for a pattern present on both sides:
- majority:            the side with more occurrences wins (ties keep local)
- highest_confidence:  the side with higher confidence wins
- newest:              the side seen more recently wins
- merge_all:           union sources, sum occurrences, occurrence-weighted
                       confidence; a no-op when the incoming sources are
                       already all known locally
"""

import copy
import logging
import os
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..core.models import Pattern, coerce_count, format_time, parse_time, parse_time_or_none, utcnow
from ..core.persistence import read_json, write_json
from ..core.store import MemoryStore
from ..errors import ExportValidationError, MemoryMeshError, error_result
from ..patterns.aggregator import PatternAggregator
from ..patterns.types import ConsensusLevel
from .schema import ExportedPattern, TeamExportDocument, parse_export

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"
DEFAULT_MIN_CONFIDENCE = 0.6
DEFAULT_TEAM_SOURCE = "team"


class ConflictStrategy(Enum):
    MAJORITY = "majority"
    HIGHEST_CONFIDENCE = "highest_confidence"
    NEWEST = "newest"
    MERGE_ALL = "merge_all"


def _wire_pattern(pattern: Pattern) -> Dict[str, Any]:
    return {
        "type": pattern.pattern_type,
        "pattern": pattern.value,
        "confidence": pattern.confidence,
        "occurrences": pattern.occurrences,
        "sources": list(pattern.sources),
        "firstSeen": format_time(pattern.created_at),
        "lastSeen": format_time(pattern.last_seen),
    }


def _weighted_confidence(a: float, a_weight: int, b: float, b_weight: int) -> float:
    total = a_weight + b_weight
    return (a * a_weight + b * b_weight) / total if total else max(a, b)


class TeamSync:
    """
    Team pattern sharing over a memory store.

    Example:
        sync = TeamSync(store)

        # Share what this scope has learned
        sync.export_to_file("team-patterns.json", "engineering")

        # Take in a teammate's export
        result = sync.import_from_file("their-patterns.json", ConflictStrategy.MERGE_ALL)
        if not result["success"]:
            print(result["error"])
    """

    def __init__(self, store: Optional[MemoryStore] = None, aggregator: Optional[PatternAggregator] = None):
        self.store = store if store is not None else MemoryStore()
        self._aggregator = aggregator

    @property
    def aggregator(self) -> PatternAggregator:
        if self._aggregator is None:
            self._aggregator = PatternAggregator(self.store)
        return self._aggregator

    # =========================================================================
    # Export
    # =========================================================================

    def export_for_team(
        self,
        team_name: str,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        include_projects: bool = False,
        include_expertise: bool = True,
        include_preferences: bool = True,
    ) -> Dict[str, Any]:
        """Snapshot patterns at or above ``min_confidence`` as an export document."""
        self.store.flush()

        patterns = [
            _wire_pattern(p) for p in self.store.get_patterns()
            if p.confidence >= min_confidence
        ]
        doc: Dict[str, Any] = {
            "version": EXPORT_VERSION,
            "teamName": team_name,
            "exportedAt": format_time(utcnow()),
            "exportedBy": os.environ.get("USER") or os.environ.get("USERNAME") or "unknown",
            "patterns": patterns,
            "patternCount": len(patterns),
        }

        if include_expertise:
            doc["expertise"] = {
                domain: {"level": e.level, "observations": e.observations}
                for domain, e in self.store.get_all_expertise().items()
            }
        if include_preferences:
            doc["preferences"] = self.store.get_all_preferences()
        if include_projects:
            doc["projects"] = [
                {
                    "name": p.name,
                    "path": p.path,
                    "languages": list(p.metadata.get("languages") or []),
                }
                for p in self.store.get_projects()
            ]

        doc["stats"] = {
            "uniquePatternTypes": len({p["type"] for p in patterns}),
            "totalSources": len({s for p in patterns for s in p["sources"]}),
            "expertiseAreas": len(doc.get("expertise") or {}),
        }
        logger.info(f"Exported {len(patterns)} patterns for team {team_name}")
        return doc

    def export_consensus_patterns(self, team_name: str, level: Any = ConsensusLevel.MODERATE) -> Dict[str, Any]:
        """Export the aggregator's consensus view instead of a raw confidence filter."""
        self.store.flush()
        consensus = self.aggregator.refresh().get_consensus_patterns(level)
        patterns = [
            {
                "type": p.pattern_type,
                "pattern": p.value,
                "confidence": p.confidence,
                "occurrences": p.total_occurrences,
                "sources": list(p.sources),
                "consensusLevel": p.consensus_level.value,
                "projectCount": p.project_count,
            }
            for p in consensus
        ]
        return {
            "version": EXPORT_VERSION,
            "teamName": team_name,
            "exportedAt": format_time(utcnow()),
            "type": "consensus",
            "patterns": patterns,
            "patternCount": len(patterns),
        }

    # =========================================================================
    # Import
    # =========================================================================

    def import_from_team(self, data: Any, strategy: Any = ConflictStrategy.MAJORITY) -> Dict[str, Any]:
        """
        Import a team export into the store.

        Returns:
            ``{"success": True, "summary": {...}}`` or an error result
        """
        try:
            strategy = self._parse_strategy(strategy)
            doc = parse_export(data)
        except MemoryMeshError as e:
            logger.warning(f"Rejected team import: {e.message} {e.errors}")
            return error_result(e)

        team_source = doc.team_name or DEFAULT_TEAM_SOURCE
        exported_at = parse_time_or_none(doc.exported_at)
        summary = {
            "patterns_imported": 0,
            "patterns_skipped": 0,
            "conflicts_resolved": 0,
            "expertise_imported": 0,
            "preferences_imported": 0,
        }

        for wire in doc.patterns:
            incoming, incoming_time = self._incoming_pattern(wire, team_source, exported_at)
            local = self.store.get_pattern(incoming.pattern_type, incoming.value)
            if local is None:
                self.store.upsert_pattern(incoming)
                summary["patterns_imported"] += 1
                continue

            resolved = self._resolve_conflict(local, incoming, incoming_time, strategy)
            if resolved is None:
                summary["patterns_skipped"] += 1
            else:
                self.store.upsert_pattern(resolved)
                summary["conflicts_resolved"] += 1

        for domain, data in (doc.expertise or {}).items():
            level, observations = self._expertise_value(data)
            if level is None:
                continue
            self.store.put_expertise(domain, level, observations)
            summary["expertise_imported"] += 1

        for key, value in (doc.preferences or {}).items():
            self.store.set_preference(key, value)
            summary["preferences_imported"] += 1

        logger.info(
            f"Imported team {team_source} ({strategy.value}): "
            f"{summary['patterns_imported']} new, {summary['conflicts_resolved']} resolved, "
            f"{summary['patterns_skipped']} skipped"
        )
        return {
            "success": True,
            "team_name": team_source,
            "strategy": strategy.value,
            "summary": summary,
        }

    @staticmethod
    def _parse_strategy(strategy: Any) -> ConflictStrategy:
        if isinstance(strategy, ConflictStrategy):
            return strategy
        try:
            return ConflictStrategy(str(strategy).lower())
        except ValueError:
            raise ExportValidationError(f"Unknown conflict strategy: {strategy}")

    @staticmethod
    def _incoming_pattern(wire: ExportedPattern, team_source: str, exported_at) -> Tuple[Pattern, Any]:
        """Build a Pattern from a wire entry, plus the timestamp ``newest`` compares."""
        incoming_time = parse_time_or_none(wire.last_seen) or exported_at
        seen = incoming_time or utcnow()
        pattern = Pattern(
            pattern_type=wire.type,
            value=wire.pattern,
            confidence=wire.confidence,
            occurrences=wire.occurrences,
            sources=list(wire.sources) or [team_source],
            created_at=parse_time(wire.first_seen, default=seen),
            last_seen=seen,
        )
        return pattern, incoming_time

    @staticmethod
    def _expertise_value(data: Any):
        if isinstance(data, (int, float)) and not isinstance(data, bool):
            return float(data), None
        if isinstance(data, dict) and isinstance(data.get("level"), (int, float)):
            observations = data.get("observations")
            return float(data["level"]), coerce_count(observations) if observations is not None else None
        return None, None

    def _resolve_conflict(
        self,
        local: Pattern,
        incoming: Pattern,
        incoming_time,
        strategy: ConflictStrategy,
    ) -> Optional[Pattern]:
        """The pattern to store, or None to keep local untouched."""
        if strategy == ConflictStrategy.MERGE_ALL:
            return self._merge(local, incoming)

        if strategy == ConflictStrategy.HIGHEST_CONFIDENCE:
            take_incoming = incoming.confidence > local.confidence
        elif strategy == ConflictStrategy.NEWEST:
            take_incoming = incoming_time is not None and incoming_time > local.last_seen
        else:
            take_incoming = incoming.occurrences > local.occurrences

        if not take_incoming:
            return None

        resolved = copy.copy(local)
        resolved.confidence = incoming.confidence
        resolved.occurrences = incoming.occurrences
        resolved.sources = list(incoming.sources)
        resolved.last_seen = incoming.last_seen
        resolved.created_at = min(local.created_at, incoming.created_at)
        return resolved

    @staticmethod
    def _merge(local: Pattern, incoming: Pattern) -> Optional[Pattern]:
        new_sources = [s for s in incoming.sources if s not in local.sources]
        if not new_sources:
            return None

        merged = copy.copy(local)
        merged.sources = list(local.sources) + new_sources
        merged.occurrences = local.occurrences + incoming.occurrences
        merged.confidence = _weighted_confidence(
            local.confidence, local.occurrences, incoming.confidence, incoming.occurrences
        )
        merged.last_seen = max(local.last_seen, incoming.last_seen)
        merged.created_at = min(local.created_at, incoming.created_at)
        return merged

    # =========================================================================
    # Team Aggregation
    # =========================================================================

    def merge_team_exports(self, exports: List[Any]) -> Dict[str, Any]:
        """
        Merge several team exports into one export document.

        Patterns merge with merge_all semantics and track which teams
        carried them; expertise levels are averaged; the first team to
        set a preference wins. Invalid exports are skipped.
        """
        if not exports:
            return error_result(ExportValidationError("No team data provided"))

        merged_patterns: Dict[Tuple[str, str], Dict[str, Any]] = {}
        expertise: Dict[str, Dict[str, float]] = {}
        preferences: Dict[str, Any] = {}
        source_teams: List[str] = []

        for index, data in enumerate(exports):
            try:
                doc = parse_export(data)
            except ExportValidationError as e:
                logger.warning(f"Skipping invalid team export #{index}: {e.errors}")
                continue

            team = doc.team_name or "unknown"
            source_teams.append(team)

            for wire in doc.patterns:
                self._merge_wire(merged_patterns, wire, team, doc)

            for domain, value in (doc.expertise or {}).items():
                level, _ = self._expertise_value(value)
                if level is None:
                    continue
                entry = expertise.setdefault(domain, {"total": 0.0, "count": 0})
                entry["total"] += level
                entry["count"] += 1

            for key, value in (doc.preferences or {}).items():
                preferences.setdefault(key, value)

        if not source_teams:
            return error_result(ExportValidationError("No valid team data provided"))

        patterns = [
            {
                "type": p["type"],
                "pattern": p["pattern"],
                "confidence": p["confidence"],
                "occurrences": p["occurrences"],
                "sources": p["sources"],
                "teamCount": len(p["teams"]),
                "firstSeen": p["firstSeen"],
                "lastSeen": p["lastSeen"],
            }
            for p in merged_patterns.values()
        ]
        logger.info(f"Merged {len(source_teams)} team exports into {len(patterns)} patterns")
        return {
            "version": EXPORT_VERSION,
            "teamName": "merged",
            "exportedAt": format_time(utcnow()),
            "patterns": patterns,
            "patternCount": len(patterns),
            "expertise": {
                domain: {"level": e["total"] / e["count"], "teamCount": e["count"]}
                for domain, e in expertise.items()
            },
            "preferences": preferences,
            "sourceTeams": source_teams,
            "stats": {
                "teamsIncluded": len(source_teams),
                "totalPatterns": len(patterns),
                "crossTeamPatterns": sum(1 for p in patterns if p["teamCount"] > 1),
            },
        }

    @staticmethod
    def _merge_wire(merged: Dict, wire: ExportedPattern, team: str, doc: TeamExportDocument) -> None:
        sources = list(wire.sources) or [team]
        first_seen = wire.first_seen or doc.exported_at
        last_seen = wire.last_seen or doc.exported_at
        key = (wire.type, wire.pattern)

        existing = merged.get(key)
        if existing is None:
            merged[key] = {
                "type": wire.type,
                "pattern": wire.pattern,
                "confidence": wire.confidence,
                "occurrences": wire.occurrences,
                "sources": sources,
                "teams": [team],
                "firstSeen": first_seen,
                "lastSeen": last_seen,
            }
            return

        if team not in existing["teams"]:
            existing["teams"].append(team)
        new_sources = [s for s in sources if s not in existing["sources"]]
        if not new_sources:
            return

        existing["confidence"] = _weighted_confidence(
            existing["confidence"], existing["occurrences"], wire.confidence, wire.occurrences
        )
        existing["occurrences"] += wire.occurrences
        existing["sources"].extend(new_sources)
        if first_seen and (not existing["firstSeen"] or parse_time(first_seen) < parse_time(existing["firstSeen"])):
            existing["firstSeen"] = first_seen
        if last_seen and (not existing["lastSeen"] or parse_time(last_seen) > parse_time(existing["lastSeen"])):
            existing["lastSeen"] = last_seen

    def get_team_recommendations(self, data: Any) -> Dict[str, Any]:
        """Top value per type from a team export, with up to two alternatives."""
        try:
            doc = parse_export(data)
        except ExportValidationError as e:
            return error_result(e)

        by_type: Dict[str, List[ExportedPattern]] = {}
        for wire in doc.patterns:
            by_type.setdefault(wire.type, []).append(wire)

        recommendations = {}
        for pattern_type, candidates in by_type.items():
            ranked = sorted(candidates, key=lambda p: p.confidence, reverse=True)
            top = ranked[0]
            recommendations[pattern_type] = {
                "recommended": top.pattern,
                "confidence": top.confidence,
                "alternatives": [p.pattern for p in ranked[1:3]],
                "team_support": top.team_count or top.occurrences,
            }

        return {
            "success": True,
            "team_name": doc.team_name,
            "generated_at": format_time(utcnow()),
            "recommendations": recommendations,
            "recommendation_count": len(recommendations),
        }

    # =========================================================================
    # Files & Validation
    # =========================================================================

    def validate_export(self, data: Any) -> Dict[str, Any]:
        try:
            doc = parse_export(data)
        except ExportValidationError as e:
            raw = data if isinstance(data, dict) else {}
            patterns = raw.get("patterns")
            return {
                "valid": False,
                "errors": list(e.errors),
                "version": raw.get("version"),
                "pattern_count": len(patterns) if isinstance(patterns, list) else 0,
            }
        return {
            "valid": True,
            "errors": [],
            "version": doc.version,
            "pattern_count": len(doc.patterns),
        }

    def export_to_file(self, path: str, team_name: str, **options) -> Dict[str, Any]:
        data = self.export_for_team(team_name, **options)
        try:
            write_json(path, data)
        except OSError as e:
            return error_result(MemoryMeshError(f"Failed to write file: {e}"))
        return {"success": True, "path": str(path), "pattern_count": data["patternCount"]}

    def import_from_file(self, path: str, strategy: Any = ConflictStrategy.MAJORITY) -> Dict[str, Any]:
        try:
            data = read_json(path)
        except MemoryMeshError as e:
            logger.warning(f"Team import from {path} failed: {e.message}")
            return error_result(e)
        result = self.import_from_team(data, strategy)
        result["path"] = str(path)
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "local_patterns": len(self.store.get_patterns()),
            "local_expertise": len(self.store.get_all_expertise()),
            "local_projects": self.store.project_count,
        }

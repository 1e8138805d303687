"""Tests for TeamSync export, import strategies and multi-team merges."""

import json
from datetime import timedelta

import pytest

from memory_mesh.core.models import format_time, utcnow
from memory_mesh.teams.sync import EXPORT_VERSION, ConflictStrategy, TeamSync


def _doc(patterns, team="platform", **extra):
    doc = {"version": EXPORT_VERSION, "teamName": team, "patterns": patterns}
    doc.update(extra)
    return doc


def _total_occurrences(store):
    return sum(p.occurrences for p in store.get_patterns())


class TestExport:

    def test_min_confidence_filter(self, store, sync):
        """Defaults exclude 0.4 and include 0.9."""
        store.record_pattern("naming", "snake_case", confidence=0.4)
        store.record_pattern("naming", "camelCase", confidence=0.9)
        doc = sync.export_for_team("engineering")
        assert [p["pattern"] for p in doc["patterns"]] == ["camelCase"]
        assert doc["patternCount"] == 1

    def test_document_shape(self, store, sync):
        store.record_pattern("naming", "camelCase", confidence=0.9, source="api")
        store.add_expertise("backend", 0.8)
        store.set_preference("indent", 2)
        store.register_project("/src/api", {"languages": ["python"]})

        doc = sync.export_for_team("engineering", include_projects=True)

        assert doc["version"] == EXPORT_VERSION
        assert doc["teamName"] == "engineering"
        assert doc["expertise"]["backend"]["level"] == 0.8
        assert doc["preferences"] == {"indent": 2}
        assert doc["projects"] == [{"name": "api", "path": "/src/api", "languages": ["python"]}]
        assert doc["stats"] == {"uniquePatternTypes": 1, "totalSources": 1, "expertiseAreas": 1}
        assert sync.validate_export(doc)["valid"] is True

    def test_optional_sections_omitted(self, sync):
        doc = sync.export_for_team("engineering", include_expertise=False, include_preferences=False)
        assert "expertise" not in doc
        assert "preferences" not in doc
        assert "projects" not in doc

    def test_export_flushes_batched_writes(self, tmp_path, make_store):
        store = make_store("batched", batch_window_ms=10_000)
        store.record_pattern("naming", "camelCase", confidence=0.9)
        TeamSync(store).export_for_team("engineering")
        assert not store.has_pending_write
        assert (tmp_path / "batched" / "patterns.json").exists()

    def test_consensus_export(self, multi_project_store):
        doc = TeamSync(multi_project_store).export_consensus_patterns("engineering")
        assert doc["type"] == "consensus"
        assert {p["pattern"] for p in doc["patterns"]} == {"camelCase", "async-await"}
        assert doc["patterns"][0]["consensusLevel"] == "strong"


class TestValidation:

    def test_valid_document(self, sync):
        result = sync.validate_export(_doc([{"type": "naming", "pattern": "camelCase"}]))
        assert result == {"valid": True, "errors": [], "version": EXPORT_VERSION, "pattern_count": 1}

    def test_missing_version_and_patterns(self, sync):
        result = sync.validate_export({"teamName": "x"})
        assert result["valid"] is False
        assert any(e.startswith("version") for e in result["errors"])
        assert any(e.startswith("patterns") for e in result["errors"])

    def test_pattern_missing_type(self, sync):
        result = sync.validate_export(_doc([{"pattern": "camelCase"}]))
        assert result["valid"] is False
        assert result["errors"] == ["patterns.0.type: Field required"]
        assert result["pattern_count"] == 1

    def test_version_must_be_semver(self, sync):
        assert sync.validate_export(_doc([], version="latest"))["valid"] is False

    def test_not_an_object(self, sync):
        assert sync.validate_export(["nope"])["valid"] is False


class TestImport:

    def test_invalid_document_is_error_result(self, sync):
        result = sync.import_from_team({"patterns": "nope"})
        assert result["success"] is False
        assert result["error_type"] == "validation_error"
        assert result["errors"]

    def test_unknown_strategy(self, sync):
        result = sync.import_from_team(_doc([]), strategy="coin_flip")
        assert result["success"] is False

    def test_new_patterns_inserted(self, store, sync):
        result = sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.8, "occurrences": 3},
        ]))
        assert result["success"] is True
        assert result["summary"]["patterns_imported"] == 1
        pattern = store.get_pattern("naming", "camelCase")
        assert pattern.occurrences == 3
        assert pattern.confidence == 0.8
        assert pattern.sources == ["platform"]

    def test_majority_prefers_more_occurrences(self, store, sync):
        store.record_pattern("naming", "camelCase", source="local")
        result = sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.9, "occurrences": 5, "sources": ["a"]},
        ]), ConflictStrategy.MAJORITY)
        assert result["summary"]["conflicts_resolved"] == 1
        pattern = store.get_pattern("naming", "camelCase")
        assert pattern.occurrences == 5
        assert pattern.confidence == 0.9

    def test_majority_tie_keeps_local(self, store, sync):
        store.record_pattern("naming", "camelCase", source="local")
        result = sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.9, "occurrences": 1},
        ]))
        assert result["summary"]["patterns_skipped"] == 1
        assert store.get_pattern("naming", "camelCase").confidence == 0.5

    def test_highest_confidence(self, store, sync):
        store.record_pattern("naming", "camelCase", confidence=0.7)
        sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.6},
        ]), "highest_confidence")
        assert store.get_pattern("naming", "camelCase").confidence == 0.7

        sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.95},
        ]), "highest_confidence")
        assert store.get_pattern("naming", "camelCase").confidence == 0.95

    def test_newest(self, store, sync):
        store.record_pattern("naming", "camelCase", confidence=0.5)
        old = format_time(utcnow() - timedelta(days=3))
        new = format_time(utcnow() + timedelta(minutes=5))

        stale = sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.9, "lastSeen": old},
        ]), ConflictStrategy.NEWEST)
        assert stale["summary"]["patterns_skipped"] == 1

        fresh = sync.import_from_team(_doc(
            [{"type": "naming", "pattern": "camelCase", "confidence": 0.9}],
            exportedAt=new,
        ), ConflictStrategy.NEWEST)
        assert fresh["summary"]["conflicts_resolved"] == 1
        assert store.get_pattern("naming", "camelCase").confidence == 0.9

    def test_newest_without_timestamps_keeps_local(self, store, sync):
        store.record_pattern("naming", "camelCase", confidence=0.5)
        result = sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.9},
        ]), ConflictStrategy.NEWEST)
        assert result["summary"]["patterns_skipped"] == 1

    def test_newest_unparseable_timestamp_keeps_local(self, store, sync):
        store.record_pattern("naming", "camelCase", confidence=0.5)
        result = sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.9, "lastSeen": "yesterday-ish"},
        ]), ConflictStrategy.NEWEST)
        assert result["summary"]["patterns_skipped"] == 1
        assert store.get_pattern("naming", "camelCase").confidence == 0.5

    def test_newest_unparseable_timestamp_falls_back_to_export_time(self, store, sync):
        store.record_pattern("naming", "camelCase", confidence=0.5)
        later = format_time(utcnow() + timedelta(minutes=5))
        result = sync.import_from_team(_doc(
            [{"type": "naming", "pattern": "camelCase", "confidence": 0.9, "lastSeen": "garbage"}],
            exportedAt=later,
        ), ConflictStrategy.NEWEST)
        assert result["summary"]["conflicts_resolved"] == 1

    def test_merge_all_combines(self, store, sync):
        """Sources union, occurrences sum, confidence weighted by occurrences."""
        store.record_pattern("naming", "camelCase", confidence=0.5, source="local")
        sync.import_from_team(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.9, "occurrences": 3, "sources": ["remote"]},
        ]), ConflictStrategy.MERGE_ALL)
        pattern = store.get_pattern("naming", "camelCase")
        assert pattern.sources == ["local", "remote"]
        assert pattern.occurrences == 4
        assert pattern.confidence == pytest.approx((0.5 * 1 + 0.9 * 3) / 4)

    def test_expertise_and_preferences_last_write_wins(self, store, sync):
        store.add_expertise("backend", 0.9)
        store.set_preference("indent", 4)
        result = sync.import_from_team(_doc(
            [],
            expertise={"backend": {"level": 0.3}, "frontend": 0.6, "bogus": "high"},
            preferences={"indent": 2},
        ))
        assert result["summary"]["expertise_imported"] == 2
        assert result["summary"]["preferences_imported"] == 1
        assert store.get_expertise("backend") == 0.3
        assert store.get_expertise("frontend") == 0.6
        assert store.get_preference("indent") == 2

    def test_malformed_expertise_observations_coerced(self, store, sync):
        """Non-numeric observation counts never abort an import."""
        result = sync.import_from_team(_doc(
            [{"type": "naming", "pattern": "camelCase"}],
            expertise={
                "backend": {"level": 0.8, "observations": "many"},
                "frontend": {"level": 0.4, "observations": [3]},
                "infra": {"level": 0.6, "observations": 7},
            },
        ), ConflictStrategy.MERGE_ALL)
        assert result["success"] is True
        assert result["summary"]["patterns_imported"] == 1
        assert result["summary"]["expertise_imported"] == 3
        expertise = store.get_all_expertise()
        assert expertise["backend"].level == 0.8
        assert expertise["backend"].observations == 1
        assert expertise["frontend"].observations == 1
        assert expertise["infra"].observations == 7


class TestRoundTrip:

    def _seed(self, store):
        for source in ("api", "web"):
            store.record_pattern("naming", "camelCase", source=source)
        for source in ("api", "web", "cli"):
            store.record_pattern("async", "async-await", source=source)
        store.record_pattern("testing", "pytest", confidence=0.8, source="api")

    def test_merge_all_round_trip(self, store, sync, make_store):
        """A fresh store reproduces the pattern count and occurrence totals."""
        self._seed(store)
        doc = sync.export_for_team("engineering", min_confidence=0.0)

        fresh = make_store("fresh")
        result = TeamSync(fresh).import_from_team(doc, ConflictStrategy.MERGE_ALL)

        assert result["summary"]["patterns_imported"] == len(store.get_patterns())
        assert len(fresh.get_patterns()) == len(store.get_patterns())
        assert _total_occurrences(fresh) == _total_occurrences(store)

    def test_merge_all_import_is_idempotent(self, store, sync, make_store):
        """Importing the same export twice does not double count."""
        self._seed(store)
        doc = sync.export_for_team("engineering", min_confidence=0.0)

        fresh = make_store("fresh")
        fresh_sync = TeamSync(fresh)
        fresh_sync.import_from_team(doc, ConflictStrategy.MERGE_ALL)
        before = [(p.key, p.occurrences, p.confidence, sorted(p.sources)) for p in fresh.get_patterns()]

        second = fresh_sync.import_from_team(doc, ConflictStrategy.MERGE_ALL)
        after = [(p.key, p.occurrences, p.confidence, sorted(p.sources)) for p in fresh.get_patterns()]

        assert second["summary"]["patterns_skipped"] == len(before)
        assert after == before


class TestMergeTeamExports:

    def test_empty_list(self, sync):
        result = sync.merge_team_exports([])
        assert result["success"] is False

    def test_cross_team_patterns(self, sync):
        merged = sync.merge_team_exports([
            _doc([
                {"type": "naming", "pattern": "camelCase", "confidence": 0.8, "occurrences": 2},
                {"type": "async", "pattern": "callbacks", "confidence": 0.6},
            ], team="alpha", expertise={"backend": 0.8}, preferences={"indent": 2}),
            _doc([
                {"type": "naming", "pattern": "camelCase", "confidence": 0.6, "occurrences": 2},
            ], team="beta", expertise={"backend": {"level": 0.4}}, preferences={"indent": 4}),
        ])

        assert merged["sourceTeams"] == ["alpha", "beta"]
        assert merged["stats"] == {"teamsIncluded": 2, "totalPatterns": 2, "crossTeamPatterns": 1}
        camel = next(p for p in merged["patterns"] if p["pattern"] == "camelCase")
        assert camel["teamCount"] == 2
        assert camel["occurrences"] == 4
        assert camel["confidence"] == pytest.approx(0.7)
        assert merged["expertise"]["backend"]["level"] == pytest.approx(0.6)
        assert merged["preferences"] == {"indent": 2}

    def test_merged_document_is_importable(self, sync):
        merged = sync.merge_team_exports([_doc([{"type": "naming", "pattern": "camelCase"}])])
        assert sync.validate_export(merged)["valid"] is True
        assert sync.import_from_team(merged)["success"] is True

    def test_invalid_exports_skipped(self, sync):
        merged = sync.merge_team_exports([{"bad": True}, _doc([{"type": "a", "pattern": "b"}], team="ok")])
        assert merged["sourceTeams"] == ["ok"]

    def test_all_invalid(self, sync):
        assert sync.merge_team_exports([{"bad": True}])["success"] is False

    def test_team_recommendations(self, sync):
        result = sync.get_team_recommendations(_doc([
            {"type": "naming", "pattern": "camelCase", "confidence": 0.9, "occurrences": 4},
            {"type": "naming", "pattern": "snake_case", "confidence": 0.5},
            {"type": "naming", "pattern": "PascalCase", "confidence": 0.4},
            {"type": "naming", "pattern": "kebab", "confidence": 0.1},
        ]))
        naming = result["recommendations"]["naming"]
        assert naming["recommended"] == "camelCase"
        assert naming["alternatives"] == ["snake_case", "PascalCase"]
        assert naming["team_support"] == 4


class TestFiles:

    def test_export_then_import_file(self, tmp_path, store, sync, make_store):
        store.record_pattern("naming", "camelCase", confidence=0.9, source="api")
        path = tmp_path / "team.json"

        exported = sync.export_to_file(str(path), "engineering")
        assert exported == {"success": True, "path": str(path), "pattern_count": 1}
        assert json.loads(path.read_text())["teamName"] == "engineering"

        fresh = make_store("fresh")
        result = TeamSync(fresh).import_from_file(str(path))
        assert result["success"] is True
        assert fresh.get_pattern("naming", "camelCase") is not None

    def test_missing_file(self, tmp_path, sync):
        result = sync.import_from_file(str(tmp_path / "missing.json"))
        assert result["success"] is False
        assert result["error_type"] == "not_found"

    def test_malformed_file(self, tmp_path, sync):
        path = tmp_path / "bad.json"
        path.write_text("{oops")
        result = sync.import_from_file(str(path))
        assert result["success"] is False
        assert result["error_type"] == "parse_error"
        assert result["error"].startswith("Failed to parse file")

    def test_stats(self, multi_project_store):
        stats = TeamSync(multi_project_store).get_stats()
        assert stats == {"local_patterns": 3, "local_expertise": 0, "local_projects": 3}

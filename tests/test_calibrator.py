"""Tests for ConfidenceCalibrator's Beta posterior and calibration analysis."""

import json

import pytest

from memory_mesh.feedback.calibrator import ConfidenceCalibrator


def _record(calibrator, key, successes, failures, predicted=None):
    for _ in range(successes):
        calibrator.record_outcome(key, True, predicted)
    for _ in range(failures):
        calibrator.record_outcome(key, False, predicted)


class TestPosterior:

    def test_prior_mean(self, calibrator):
        """Beta(2, 2) has mean 0.5."""
        assert calibrator.get_posterior_mean("new") == 0.5

    def test_posterior_mean_after_outcomes(self, calibrator):
        """8 successes and 2 failures give 10/14."""
        _record(calibrator, "k", 8, 2)
        assert calibrator.get_posterior_mean("k") == pytest.approx(10 / 14)

    def test_variance_decreases(self, calibrator):
        variances = []
        for _ in range(5):
            calibrator.record_outcome("k", True)
            variances.append(calibrator.get_posterior_variance("k"))
        assert all(a > b for a, b in zip(variances, variances[1:]))

    def test_queries_do_not_create_keys(self, calibrator):
        calibrator.get_posterior_mean("ghost")
        calibrator.get_credible_interval("ghost")
        assert calibrator.get_keys() == []


class TestCalibratedConfidence:

    def test_no_data_returns_raw(self, calibrator):
        assert calibrator.get_calibrated_confidence("k", 0.83) == pytest.approx(0.83)

    def test_shrinks_toward_observed(self, calibrator):
        """(raw*4 + mean*n) / (4 + n)."""
        _record(calibrator, "k", 8, 2)
        expected = (0.9 * 4 + (10 / 14) * 10) / 14
        assert calibrator.get_calibrated_confidence("k", 0.9) == pytest.approx(expected)

    def test_converges_with_abundant_data(self, calibrator):
        _record(calibrator, "k", 200, 0)
        assert calibrator.get_calibrated_confidence("k", 0.1) > 0.9

    def test_raw_is_clamped(self, calibrator):
        assert calibrator.get_calibrated_confidence("k", 3.0) == 1.0


class TestCredibleInterval:

    def test_narrows_with_observations(self, calibrator):
        """Width after 20 observations is smaller than after 2."""
        _record(calibrator, "few", 1, 1)
        _record(calibrator, "many", 10, 10)
        few_low, few_high = calibrator.get_credible_interval("few")
        many_low, many_high = calibrator.get_credible_interval("many")
        assert (many_high - many_low) < (few_high - few_low)

    def test_clipped_to_unit_interval(self, calibrator):
        low, high = calibrator.get_credible_interval("new", 0.99)
        assert 0.0 <= low < 0.5 < high <= 1.0

    def test_wider_mass_wider_interval(self, calibrator):
        _record(calibrator, "k", 5, 5)
        low90, high90 = calibrator.get_credible_interval("k", 0.90)
        low99, high99 = calibrator.get_credible_interval("k", 0.99)
        assert (high99 - low99) > (high90 - low90)


class TestAdjustmentFactor:

    def test_neutral_without_data(self, calibrator):
        _record(calibrator, "k", 2, 0)
        assert calibrator.get_adjustment_factor("k") == 1.0

    def test_observed_over_naive(self, calibrator):
        _record(calibrator, "k", 3, 1)
        assert calibrator.get_adjustment_factor("k") == pytest.approx(1.5)

    def test_bounded(self, calibrator):
        _record(calibrator, "good", 10, 0)
        _record(calibrator, "bad", 0, 10)
        assert calibrator.get_adjustment_factor("good") == 2.0
        assert calibrator.get_adjustment_factor("bad") == 0.5


class TestCalibrationAnalysis:

    def test_insufficient_data(self, calibrator):
        _record(calibrator, "k", 5, 0, predicted=0.9)
        analysis = calibrator.analyze_calibration()
        assert analysis["sufficient_data"] is False
        assert calibrator.is_well_calibrated() is True

    def test_outcomes_without_prediction_not_logged(self, calibrator):
        _record(calibrator, "k", 20, 0)
        assert calibrator.get_stats()["prediction_history_size"] == 0

    def test_well_calibrated_predictions(self, calibrator):
        """Predictions of 0.8 that succeed 80% of the time."""
        _record(calibrator, "k", 8, 2, predicted=0.8)
        analysis = calibrator.analyze_calibration()
        assert analysis["sufficient_data"] is True
        assert analysis["calibration_error"] == pytest.approx(0.0)
        assert analysis["brier_score"] == pytest.approx((8 * 0.04 + 2 * 0.64) / 10)
        assert calibrator.is_well_calibrated() is True

    def test_overconfident_predictions(self, calibrator):
        _record(calibrator, "k", 2, 8, predicted=0.95)
        analysis = calibrator.analyze_calibration()
        assert analysis["calibration_error"] == pytest.approx(0.75)
        assert calibrator.is_well_calibrated() is False

    def test_decile_bins(self, calibrator):
        """Predictions land in decile bins; 1.0 falls in the last one."""
        _record(calibrator, "k", 5, 0, predicted=1.0)
        _record(calibrator, "k", 0, 5, predicted=0.05)
        bins = calibrator.analyze_calibration()["bins"]
        assert len(bins) == 10
        assert bins[0]["count"] == 5
        assert bins[9]["count"] == 5
        assert bins[9]["range"] == "0.9-1.0"


class TestPersistence:

    def test_reload(self, tmp_path, calibrator):
        _record(calibrator, "k", 3, 1, predicted=0.7)
        reloaded = ConfidenceCalibrator(data_dir=str(tmp_path / "calibration")).init()
        assert reloaded.get_posterior_mean("k") == pytest.approx(5 / 8)
        assert reloaded.get_stats()["prediction_history_size"] == 4

    def test_history_bounded(self, calibrator, monkeypatch):
        monkeypatch.setattr("memory_mesh.feedback.calibrator.MAX_PREDICTION_HISTORY", 3)
        _record(calibrator, "k", 5, 0, predicted=0.5)
        assert calibrator.get_stats()["prediction_history_size"] == 3
        assert calibrator.get_key_stats("k")["total_outcomes"] == 5

    def test_wrong_shaped_file_starts_empty(self, tmp_path):
        """Valid JSON with wrong-typed sections loads as an empty calibrator."""
        data_dir = tmp_path / "cal"
        data_dir.mkdir()
        (data_dir / "calibration.json").write_text(json.dumps({
            "calibrationData": ["not", "a", "map"],
            "predictionHistory": {"not": "a list"},
        }))
        calibrator = ConfidenceCalibrator(data_dir=str(data_dir)).init()
        assert calibrator.get_keys() == []
        assert calibrator.get_stats()["prediction_history_size"] == 0

    def test_malformed_entries_skipped(self, tmp_path):
        data_dir = tmp_path / "cal"
        data_dir.mkdir()
        (data_dir / "calibration.json").write_text(json.dumps({
            "calibrationData": {
                "good": {"alpha": 5, "beta": 3, "successes": 3, "failures": 1},
                "bad": {"successes": "many"},
                "worse": [1, 2],
            },
        }))
        calibrator = ConfidenceCalibrator(data_dir=str(data_dir)).init()
        assert calibrator.get_keys() == ["good"]
        assert calibrator.get_posterior_mean("good") == pytest.approx(5 / 8)

    def test_import_ignores_wrong_shapes(self, calibrator):
        assert calibrator.import_data({"calibrationData": [], "predictionHistory": "x"}) == 0

    def test_export_import(self, tmp_path, calibrator):
        _record(calibrator, "k", 4, 0, predicted=0.6)
        other = ConfidenceCalibrator(data_dir=str(tmp_path / "other")).init()
        assert other.import_data(calibrator.export()) == 1
        assert other.get_posterior_mean("k") == pytest.approx(6 / 8)

    def test_clear_key(self, calibrator):
        _record(calibrator, "a", 1, 0)
        _record(calibrator, "b", 1, 0)
        assert calibrator.clear_key("a") is True
        assert calibrator.clear_key("a") is False
        assert calibrator.get_keys() == ["b"]

    def test_key_stats(self, calibrator):
        _record(calibrator, "k", 3, 1)
        stats = calibrator.get_key_stats("k")
        assert stats["success_rate"] == 0.75
        assert stats["credible_interval"]["lower"] < stats["posterior_mean"] < stats["credible_interval"]["upper"]

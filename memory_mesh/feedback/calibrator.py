"""
Confidence Calibrator - Bayesian confidence scoring.

Each tracked key (e.g. ``"pattern:naming"``) carries a Beta(alpha, beta)
posterior over its success probability, starting from a Beta(2, 2)
prior and updated by binary outcomes. Raw confidences are shrunk toward
the posterior mean in proportion to how much evidence the key has.

Predictions recorded together with an outcome go into a bounded history
used to grade overall calibration (decile reliability bins, calibration
error and Brier score).

Persisted layout: ``calibration.json`` holding ``calibrationData`` and
``predictionHistory``.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from statistics import NormalDist
from typing import Any, Dict, List, Optional

import numpy as np

from .. import config
from ..core.models import format_time, parse_time, utcnow
from ..core.persistence import load_json, write_json
from ..errors import clamp

logger = logging.getLogger(__name__)

CALIBRATION_FILENAME = "calibration.json"
EXPORT_VERSION = "1.0.0"

PRIOR_ALPHA = 2.0
PRIOR_BETA = 2.0
PRIOR_STRENGTH = PRIOR_ALPHA + PRIOR_BETA

MAX_PREDICTION_HISTORY = 1000
MIN_PREDICTIONS = 10
MIN_BIN_COUNT = 3
CALIBRATION_BINS = 10
WELL_CALIBRATED_ERROR = 0.1

# Multiplicative correction relative to a naive 50% predictor
NAIVE_RATE = 0.5
MIN_ADJUSTMENT_OUTCOMES = 3
ADJUSTMENT_MIN = 0.5
ADJUSTMENT_MAX = 2.0


@dataclass
class CalibrationEntry:
    """Beta posterior and raw outcome counters for one key."""
    alpha: float = PRIOR_ALPHA
    beta: float = PRIOR_BETA
    successes: int = 0
    failures: int = 0
    last_updated: Optional[datetime] = None

    @property
    def total_outcomes(self) -> int:
        return self.successes + self.failures

    @property
    def mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    @property
    def variance(self) -> float:
        a, b = self.alpha, self.beta
        return (a * b) / ((a + b) ** 2 * (a + b + 1))

    def record(self, success: bool) -> None:
        if success:
            self.alpha += 1
            self.successes += 1
        else:
            self.beta += 1
            self.failures += 1
        self.last_updated = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alpha": self.alpha,
            "beta": self.beta,
            "successes": self.successes,
            "failures": self.failures,
            "totalOutcomes": self.total_outcomes,
            "lastUpdated": format_time(self.last_updated) if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationEntry":
        if not isinstance(data, dict):
            raise ValueError(f"calibration entry must be an object, got {type(data).__name__}")
        successes = max(0, int(data.get("successes") or 0))
        failures = max(0, int(data.get("failures") or 0))
        return cls(
            alpha=max(PRIOR_ALPHA, float(data.get("alpha") or PRIOR_ALPHA + successes)),
            beta=max(PRIOR_BETA, float(data.get("beta") or PRIOR_BETA + failures)),
            successes=successes,
            failures=failures,
            last_updated=parse_time(data["lastUpdated"]) if data.get("lastUpdated") else None,
        )


class ConfidenceCalibrator:
    """
    Bayesian (Beta-Binomial) confidence calibration.

    Example:
        calibrator = ConfidenceCalibrator(data_dir="/tmp/mesh/calibration")

        # Record outcomes
        calibrator.record_outcome("pattern:naming", True, predicted_confidence=0.8)
        calibrator.record_outcome("pattern:naming", False, predicted_confidence=0.7)

        # Shrink a raw confidence toward what has been observed
        confidence = calibrator.get_calibrated_confidence("pattern:naming", 0.9)

        # How sure are we?
        lower, upper = calibrator.get_credible_interval("pattern:naming")
    """

    def __init__(self, data_dir: Optional[str] = None, scope: Optional[str] = None):
        if data_dir is None:
            data_dir = str(config.get_scope_dir(config.get_scope(scope)) / config.CALIBRATION_SUBDIR)
        self.data_dir = Path(data_dir).expanduser()
        self.entries: Dict[str, CalibrationEntry] = {}
        self.prediction_history: List[Dict[str, Any]] = []
        self._lock = threading.RLock()
        self.initialized = False

    def init(self) -> "ConfidenceCalibrator":
        with self._lock:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            data = load_json(self.data_dir / CALIBRATION_FILENAME, {})
            self.entries = self._parse_entries(data.get("calibrationData", {}))
            self.prediction_history = self._parse_history(data.get("predictionHistory", []))
            self.initialized = True
        logger.info(f"ConfidenceCalibrator initialized: {len(self.entries)} keys in {self.data_dir}")
        return self

    def _ensure_init(self) -> None:
        if not self.initialized:
            self.init()

    @staticmethod
    def _parse_entries(raw: Any) -> Dict[str, CalibrationEntry]:
        entries = {}
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring malformed calibration data of type {type(raw).__name__}")
            return entries
        for key, value in raw.items():
            try:
                entries[key] = CalibrationEntry.from_dict(value)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed calibration entry {key}: {e}")
        return entries

    @staticmethod
    def _parse_history(raw: Any) -> List[Dict[str, Any]]:
        history = []
        if not isinstance(raw, list):
            logger.warning(f"Ignoring malformed prediction history of type {type(raw).__name__}")
            return history
        for entry in raw:
            if not isinstance(entry, dict) or entry.get("predictedConfidence") is None:
                continue
            history.append({
                "key": str(entry.get("key") or ""),
                "predictedConfidence": clamp(entry["predictedConfidence"]),
                "actualOutcome": bool(entry.get("actualOutcome")),
                "timestamp": entry.get("timestamp") or format_time(utcnow()),
            })
        return history[-MAX_PREDICTION_HISTORY:]

    def save(self) -> None:
        with self._lock:
            data = {
                "calibrationData": {k: e.to_dict() for k, e in self.entries.items()},
                "predictionHistory": list(self.prediction_history),
            }
        write_json(self.data_dir / CALIBRATION_FILENAME, data)

    def _entry(self, key: str) -> CalibrationEntry:
        """The key's entry, or a fresh prior for keys never seen (not stored)."""
        self._ensure_init()
        return self.entries.get(key) or CalibrationEntry()

    # =========================================================================
    # Bayesian Updating
    # =========================================================================

    def record_outcome(self, key: str, success: bool, predicted_confidence: Optional[float] = None) -> None:
        """
        Fold a binary outcome into the key's posterior.

        When ``predicted_confidence`` is given the (prediction, outcome)
        pair is also logged for calibration analysis.
        """
        self._ensure_init()
        with self._lock:
            entry = self.entries.setdefault(key, CalibrationEntry())
            entry.record(bool(success))
            if predicted_confidence is not None:
                self.prediction_history.append({
                    "key": key,
                    "predictedConfidence": clamp(predicted_confidence),
                    "actualOutcome": bool(success),
                    "timestamp": format_time(utcnow()),
                })
                if len(self.prediction_history) > MAX_PREDICTION_HISTORY:
                    self.prediction_history = self.prediction_history[-MAX_PREDICTION_HISTORY:]
        self.save()
        logger.debug(f"Outcome for {key}: success={bool(success)}")

    def get_posterior_mean(self, key: str) -> float:
        return self._entry(key).mean

    def get_posterior_variance(self, key: str) -> float:
        return self._entry(key).variance

    def get_calibrated_confidence(self, key: str, raw_confidence: float) -> float:
        """
        Shrink ``raw_confidence`` toward the posterior mean:
        (raw * 4 + mean * n) / (4 + n), n being the key's outcome count.
        """
        entry = self._entry(key)
        n = entry.total_outcomes
        raw = clamp(raw_confidence)
        return (raw * PRIOR_STRENGTH + entry.mean * n) / (PRIOR_STRENGTH + n)

    def get_credible_interval(self, key: str, mass: float = 0.95):
        """Normal approximation to the posterior's central interval, clipped to [0, 1]."""
        entry = self._entry(key)
        mass = clamp(mass, 0.5, 0.999, default=0.95)
        z = NormalDist().inv_cdf(0.5 + mass / 2)
        half_width = z * math.sqrt(entry.variance)
        return (max(0.0, entry.mean - half_width), min(1.0, entry.mean + half_width))

    def get_adjustment_factor(self, key: str) -> float:
        """Observed rate relative to a naive 50% predictor, within [0.5, 2.0]."""
        entry = self._entry(key)
        if entry.total_outcomes < MIN_ADJUSTMENT_OUTCOMES:
            return 1.0
        observed = entry.successes / entry.total_outcomes
        return max(ADJUSTMENT_MIN, min(ADJUSTMENT_MAX, observed / NAIVE_RATE))

    # =========================================================================
    # Calibration Analysis
    # =========================================================================

    def analyze_calibration(self) -> Dict[str, Any]:
        """
        Compare predicted confidence to observed success per decile.

        Returns ``sufficient_data: False`` below 10 recorded predictions.
        Calibration error is the mean absolute gap over bins holding at
        least 3 predictions.
        """
        self._ensure_init()
        with self._lock:
            history = list(self.prediction_history)

        if len(history) < MIN_PREDICTIONS:
            return {
                "sufficient_data": False,
                "error": "Insufficient data for calibration analysis",
                "total_predictions": len(history),
            }

        predicted = np.array([h["predictedConfidence"] for h in history], dtype=float)
        outcomes = np.array([1.0 if h["actualOutcome"] else 0.0 for h in history])

        edges = np.linspace(0.0, 1.0, CALIBRATION_BINS + 1)
        indices = np.digitize(predicted, edges[1:-1])

        bins = []
        gaps = []
        for i in range(CALIBRATION_BINS):
            mask = indices == i
            count = int(mask.sum())
            mean_predicted = float(predicted[mask].mean()) if count else 0.0
            actual_rate = float(outcomes[mask].mean()) if count else 0.0
            bins.append({
                "range": f"{edges[i]:.1f}-{edges[i + 1]:.1f}",
                "count": count,
                "mean_predicted": mean_predicted,
                "actual_rate": actual_rate,
            })
            if count >= MIN_BIN_COUNT:
                gaps.append(abs(mean_predicted - actual_rate))

        return {
            "sufficient_data": True,
            "bins": bins,
            "total_predictions": len(history),
            "calibration_error": float(np.mean(gaps)) if gaps else 0.0,
            "brier_score": float(np.mean((predicted - outcomes) ** 2)),
        }

    def is_well_calibrated(self) -> bool:
        """Calibration error below 0.1; assumed true without enough data."""
        analysis = self.analyze_calibration()
        if not analysis["sufficient_data"]:
            return True
        return analysis["calibration_error"] < WELL_CALIBRATED_ERROR

    # =========================================================================
    # Utilities
    # =========================================================================

    def get_key_stats(self, key: str) -> Dict[str, Any]:
        entry = self._entry(key)
        lower, upper = self.get_credible_interval(key)
        return {
            "key": key,
            "posterior_mean": entry.mean,
            "posterior_variance": entry.variance,
            "credible_interval": {"lower": lower, "upper": upper},
            "total_outcomes": entry.total_outcomes,
            "success_rate": entry.successes / entry.total_outcomes if entry.total_outcomes else 0.5,
            "last_updated": format_time(entry.last_updated) if entry.last_updated else None,
        }

    def get_keys(self) -> List[str]:
        self._ensure_init()
        with self._lock:
            return list(self.entries)

    def get_stats(self) -> Dict[str, Any]:
        self._ensure_init()
        with self._lock:
            total = sum(e.total_outcomes for e in self.entries.values())
            successes = sum(e.successes for e in self.entries.values())
            keys = len(self.entries)
            history_size = len(self.prediction_history)
        return {
            "keys_tracked": keys,
            "total_outcomes": total,
            "overall_success_rate": successes / total if total else 0.5,
            "prediction_history_size": history_size,
            "is_well_calibrated": self.is_well_calibrated(),
        }

    def clear_key(self, key: str) -> bool:
        self._ensure_init()
        with self._lock:
            removed = self.entries.pop(key, None) is not None
        if removed:
            self.save()
        return removed

    def clear(self) -> None:
        self._ensure_init()
        with self._lock:
            self.entries = {}
            self.prediction_history = []
        self.save()
        logger.info(f"Cleared calibration data in {self.data_dir}")

    def export(self) -> Dict[str, Any]:
        self._ensure_init()
        with self._lock:
            return {
                "version": EXPORT_VERSION,
                "exportedAt": format_time(utcnow()),
                "calibrationData": {k: e.to_dict() for k, e in self.entries.items()},
                "predictionHistory": list(self.prediction_history),
            }

    def import_data(self, data: Dict[str, Any]) -> int:
        """Merge exported entries by key and append their prediction history."""
        self._ensure_init()
        entries = self._parse_entries(data.get("calibrationData", {}))
        history = self._parse_history(data.get("predictionHistory", []))
        with self._lock:
            self.entries.update(entries)
            self.prediction_history = (self.prediction_history + history)[-MAX_PREDICTION_HISTORY:]
        self.save()
        logger.info(f"Imported calibration for {len(entries)} keys")
        return len(entries)

"""
Learning from outcomes: suggestion feedback and confidence calibration.
"""

from .calibrator import CalibrationEntry, ConfidenceCalibrator
from .collector import FeedbackCollector, FeedbackKind, FeedbackRecord, SuggestionCategory

__all__ = [
    "FeedbackCollector",
    "FeedbackKind",
    "FeedbackRecord",
    "SuggestionCategory",
    "ConfidenceCalibrator",
    "CalibrationEntry",
]

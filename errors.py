"""
errors.py – Error taxonomy for calibration and measurement.

MeasurementError is the base; every subclass carries an actionable
fallback message that a caller can show next to the failure.
An empty detection result (no objects) is NOT an error.
"""


class MeasurementError(Exception):
    def __init__(self, message: str, fallback: str = ""):
        super().__init__(message)
        self.fallback = fallback

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "fallback": self.fallback,
        }


class DetectionFailure(MeasurementError):
    """Not enough line, tick or contour evidence."""


class DegenerateGeometry(MeasurementError):
    """Near-singular homography or regression input."""


class CalibrationMissing(MeasurementError):
    """Operation invoked before a required ruler or base line exists."""

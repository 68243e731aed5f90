class CalibrationError(RuntimeError):
    """Base class for failures that stop a calibration session."""


class MapLoadError(CalibrationError):
    """The reference map could not be read."""


class NoCompleteFrameSetError(CalibrationError):
    """No frame set contains a localized frame for every camera."""

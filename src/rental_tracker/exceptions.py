"""Exception types raised by the rental tracker."""


class RentalTrackerError(Exception):
    """Base class for all rental tracker errors."""


class ConfigError(RentalTrackerError, ValueError):
    """Settings or profile configuration is unusable."""


class TrackerIntegrityError(RentalTrackerError):
    """The tracker document violates an invariant (e.g. duplicate ids).

    This signals a bug in the pipeline, not a runtime condition to recover from.
    """

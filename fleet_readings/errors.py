class FleetReadingsError(Exception):
    """Base error for the reading reconciliation engine."""


class SourceUnavailableError(FleetReadingsError, RuntimeError):
    """Raised when a candidate source (sheet or table) cannot be read or written."""


class ReadingValidationError(FleetReadingsError, ValueError):
    """Raised when a submitted reading breaks a registration rule."""

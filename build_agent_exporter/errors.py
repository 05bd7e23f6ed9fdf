class ExporterError(Exception):
    """Base class for errors raised by the exporter."""


class SourceError(ExporterError):
    """Raised when the fleet-management service cannot be read."""


class ConfigError(ExporterError):
    """Raised when the exporter configuration is unusable."""

"""Exceptions raised inside the monitoring pipeline."""


class MonitorError(Exception):
    """Base class for gateway-monitor errors."""


class ConfigError(MonitorError):
    """Raised when config is invalid or missing."""


class FetchFailure(MonitorError):
    """Raised when the gateway call fails (network, timeout, auth, bad status)."""


class PayloadShapeError(FetchFailure):
    """Raised when the gateway answered with a payload we do not understand."""


class UpstreamDataMissing(MonitorError):
    """Raised when the gateway succeeded but the service's sub-resource is absent."""


class PersistenceFailure(MonitorError):
    """Raised when the service store cannot be read or written."""


class DeliveryFailure(MonitorError):
    """Raised when the notification transport rejects a report."""

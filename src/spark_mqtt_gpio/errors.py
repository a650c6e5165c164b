"""
Error taxonomy for the adaptor and its device clients.
"""


class AdaptorError(Exception):
    """Base class for every error raised or reported by this package."""


class ConfigurationError(AdaptorError, ValueError):
    """Required credentials or settings are missing or malformed."""


class DeviceConnectionError(AdaptorError, ConnectionError):
    """The device client could not reach, or lost, the remote device."""


class OperationError(AdaptorError):
    """A read, write or function call was rejected by the device."""


class NotConnectedError(AdaptorError):
    """An operation was issued before `connect` completed."""

"""Exceptions raised by the SDS011 driver and the device controller."""


class SensorError(Exception):
    """Base exception for all sensor and controller errors."""

    pass


class PortOpenError(SensorError):
    """Raised when the serial device cannot be opened."""

    pass


class ResponseTimeout(SensorError):
    """Raised when the sensor does not answer a command in time."""

    pass


class ChecksumError(SensorError):
    """Raised when a frame fails checksum validation."""

    pass


class InvalidResponse(SensorError):
    """Raised when the sensor sends a malformed or unexpected reply."""

    pass


class InvalidCycle(SensorError):
    """Raised when a cycle value does not fit in an unsigned byte."""

    pass


class CommandTimeout(SensorError):
    """Raised when a device call did not return within its attempt window."""

    def __init__(self, retries: int, timeout: float):
        super().__init__(f"Device API response timeout ({retries} retries)")
        self.retries = retries
        self.timeout = timeout


class StartupError(SensorError):
    """Raised when a startup step of the device controller fails."""

    def __init__(self, state: str, message: str, cause: BaseException | None = None):
        super().__init__(f"{message}: {cause}" if cause else message)
        self.state = state
        self.cause = cause

"""
Custom exceptions for printer operations.
"""


class PrinterError(Exception):
    """Base exception for all printer-related errors."""

    def __init__(self, message: str, context: dict = None):
        """
        Initialize printer error.

        Args:
            message: Error message
            context: Optional dictionary with additional error context
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self):
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class PrinterConnectionError(PrinterError):
    """Raised when the Bluetooth serial link cannot be established."""
    pass


class BluetoothCommandError(PrinterConnectionError):
    """Raised when a Bluetooth control utility fails or times out."""
    pass


class DeviceUnavailableError(PrinterConnectionError):
    """Raised when the serial device node is missing."""
    pass


class WorkerStartError(PrinterError):
    """Raised when the print worker cannot be spawned or never becomes ready."""
    pass


class PrintJobError(PrinterError):
    """Raised when the print worker reports a failure or dies mid-job."""
    pass


class PrintTimeoutError(PrintJobError):
    """Raised when the print worker does not acknowledge a job in time."""
    pass


class UnknownTemplateError(PrinterError):
    """Raised when a receipt template name is not known."""
    pass


class InvalidConfigurationError(PrinterError):
    """Raised when printer configuration is invalid."""
    pass


class WorkerStateError(RuntimeError):
    """Raised when a job is submitted to a worker that is not ready."""
    pass

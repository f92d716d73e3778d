"""Exception hierarchy for netquota.

Every failure raised by the quota core is scoped to a single device in a
single polling cycle; nothing here is meant to terminate the process.
"""


class QuotaError(Exception):
    """Base exception for netquota errors."""
    pass


class TransientIOError(QuotaError):
    """The store or the controller was unreachable or timed out.

    The device is skipped for this cycle and retried on the next one.
    """
    pass


class StorageError(TransientIOError):
    """Raised when a database operation fails."""
    pass


class ControllerError(TransientIOError):
    """Raised when the network controller rejects or fails a request."""
    pass


class InvariantViolation(QuotaError):
    """Raised when stored data breaks a structural rule (e.g. a malformed schedule)."""
    pass


class DeviceNotFoundError(QuotaError):
    """Raised when an operation targets a device that is not managed."""
    pass


class NoActiveWindowError(QuotaError):
    """Raised when an operation needs an active quota window and there is none."""
    pass

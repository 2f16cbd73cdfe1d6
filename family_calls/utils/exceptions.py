"""
Custom exception classes for the family call coordinator.
"""


class CallServiceException(Exception):
    """Base exception for all call coordinator errors."""
    pass


class MediaAcquisitionError(CallServiceException):
    """Exception raised when the camera or microphone is denied or unavailable."""
    pass


class SignalingWriteError(CallServiceException):
    """Exception raised when an offer/answer/candidate/status write fails after retries."""

    def __init__(self, message: str, call_id: str = None):
        """
        Initialize signaling write exception.

        Args:
            message: Error message
            call_id: Call record the write was targeting (None before creation)
        """
        super().__init__(message)
        self.call_id = call_id


class RemoteDescriptionError(CallServiceException):
    """Exception raised for a malformed or out-of-order session description."""
    pass


class ConnectionFailure(CallServiceException):
    """Exception raised when the peer connection stays failed beyond the grace period."""
    pass


class StaleEventIgnored(CallServiceException):
    """
    Raised by a handler whose preconditions no longer hold.

    Not a failure: the event is discarded and logged as stale.
    """

    def __init__(self, reason: str, **context):
        super().__init__(reason)
        self.reason = reason
        self.context = context


class StoreException(CallServiceException):
    """Exception raised for Call Record Store transport errors."""
    pass


class CallStateError(CallServiceException):
    """Exception raised when a local action is invoked from an invalid state."""
    pass


class CalleeBusyError(CallServiceException):
    """Exception raised when the callee is already engaged in an active call."""

    def __init__(self, message: str, active_call_id: str = None):
        super().__init__(message)
        self.active_call_id = active_call_id


class NotificationException(CallServiceException):
    """Exception raised when the notification webhook rejects or drops an event."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationException(CallServiceException):
    """Exception raised for configuration errors."""
    pass

"""
Error taxonomy for the live transcription service.

Only ConfigError subclasses propagate synchronously (from start_session).
Everything else is surfaced asynchronously as session events.
"""


class TranscriptionError(Exception):
    """Base class for live transcription failures"""
    pass


class ConfigError(TranscriptionError):
    """Missing credentials or unsupported provider - no session is created"""
    pass


class ServiceDisabledError(ConfigError):
    """Raised when transcription is disabled or credentials are missing/invalid"""
    pass


class ProviderUnavailableError(ConfigError):
    """Raised when the configured provider is not supported"""
    pass


class InvalidOverrideError(ConfigError, ValueError):
    """A per-session streaming override has a value of the wrong type"""
    pass


class ConnectError(TranscriptionError):
    """Handshake failure, rejection or timeout while opening the provider socket"""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class TransientSendFailure(TranscriptionError):
    """A chunk could not be sent because the socket was not ready"""
    pass


class ProtocolInconsistency(TranscriptionError):
    """Provider event for an already-closed turn, or a malformed payload"""
    pass


class FlushTimeout(TranscriptionError):
    """Graceful stop did not complete within the flush bound"""
    pass

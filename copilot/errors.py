"""Error taxonomy shared by the client runtime and the API service."""


class CopilotError(Exception):
    """Base class for all co-pilot errors."""

    # HTTP status the API service answers with
    status_code = 500


class PermissionDenied(CopilotError):
    """Media access was refused; the capture attempt is abandoned."""

    status_code = 403


class NoAudioTrack(CopilotError):
    """Neither the display capture nor the microphone produced an audio track."""

    status_code = 400

    def __init__(self, message: str = 'No audio tracks available from tab or microphone. Ensure "Share tab audio" is checked.'):
        super().__init__(message)


class AllProvidersFailed(CopilotError):
    """Every transcription provider in the priority list failed."""

    def __init__(self, message: str = "All transcription services failed", errors=None):
        super().__init__(message)
        self.errors = list(errors or [])


class InsufficientCredits(CopilotError):
    """The ledger balance does not cover the billable action."""

    status_code = 402

    def __init__(self, message: str = "Insufficient credits", remaining=None):
        super().__init__(message)
        self.remaining = remaining


class Unauthorized(CopilotError):
    """Missing or invalid bearer token."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ProviderError(CopilotError):
    """Chat generation failed after the fallback provider was tried."""


class AbortError(CopilotError):
    """A request was superseded by a newer one. Never shown to the user."""

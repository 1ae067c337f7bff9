"""
Exception hierarchy for Consult Scribe.

Every failure is scoped to the single user action that triggered it; the API
layer maps each class to an HTTP status in ``consult_scribe.main``.
"""


class ConsultScribeError(Exception):
    """Base class for all service errors."""

    error_code = "consult_scribe_error"


class DeviceAccessDenied(ConsultScribeError):
    """Microphone permission was refused. No recording state is changed."""

    error_code = "device_access_denied"


class RecordingStateError(ConsultScribeError):
    """Recording operation is not valid in the session's current state."""

    error_code = "recording_state_error"


class TranscriptionFailed(ConsultScribeError):
    """Speech-to-text vendor reported an error or polling ran out of attempts."""

    error_code = "transcription_failed"


class NoteGenerationParseFailed(ConsultScribeError):
    """LLM response was not a usable JSON object. Never leaves the note client."""

    error_code = "note_generation_parse_failed"


class PersistenceError(ConsultScribeError):
    """A database call failed; the surrounding operation is aborted."""

    error_code = "persistence_error"


class NotFoundError(ConsultScribeError):
    """Row does not exist or is not owned by the acting practitioner."""

    error_code = "not_found"


class ConsultationStateError(ConsultScribeError):
    """Status transition or action not allowed for the consultation's status."""

    error_code = "consultation_state_error"


class ConfigurationError(ConsultScribeError):
    """A vendor key or URL required by this call path is not configured."""

    error_code = "configuration_error"

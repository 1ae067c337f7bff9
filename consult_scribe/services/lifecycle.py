"""
Consultation lifecycle: create, record, transcribe, review, complete.

Status moves one way: in_progress -> completed or in_progress -> cancelled.
Completing requires a reviewed note; recording requires in_progress.
"""

import asyncio
import math
import re
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from consult_scribe.core.errors import ConsultationStateError, TranscriptionFailed, ConfigurationError
from consult_scribe.core.logging import AuditLogger, audit_logger, get_logger
from consult_scribe.db.tables import (
    AudioRecording,
    Consultation,
    ConsultationStatus,
    MedicalNote,
    TranscriptionStatus,
)
from consult_scribe.models.responses import SoapNote
from consult_scribe.services.audio_processor import AudioProcessor
from consult_scribe.services.recording import AudioBlob
from consult_scribe.services.repository import ConsultationRepository
from consult_scribe.services.stt_service import Transcriber

logger = get_logger(__name__)

TRANSCRIPTION_FAILED_PLACEHOLDER = "Audio recorded but transcription failed. Please review the audio manually."
TRANSCRIPTION_FAILED_RAW = "Transcription failed"

ProgressCallback = Callable[[str, int], Awaitable[None]]


def transcript_filename(patient_name: Optional[str]) -> str:
    name = re.sub(r'[\\/"\r\n]+', "_", (patient_name or "").strip()) or "patient"
    return f"transcript-{name}.txt"


@dataclass
class TranscriptOutcome:
    note: MedicalNote
    transcription_failed: bool
    download_filename: Optional[str] = None


class ConsultationLifecycle:
    def __init__(
        self,
        repository: ConsultationRepository,
        transcriber: Optional[Transcriber] = None,
        audio_processor: Optional[AudioProcessor] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.repository = repository
        self.transcriber = transcriber
        self.audio_processor = audio_processor
        self.audit = audit or audit_logger

    @property
    def _user_id(self) -> str:
        return str(self.repository.practitioner.user_id)

    def _event(self, event: str, consultation_id: uuid.UUID, **kwargs) -> None:
        self.audit.log_consultation_event(event, str(consultation_id), self._user_id, **kwargs)

    def create_consultation(self, patient_name: str, patient_id: Optional[str] = None) -> Consultation:
        if not patient_name or not patient_name.strip():
            raise ValueError("Patient name is required")
        consultation = self.repository.create_consultation(patient_name.strip(), patient_id or None)
        self._event("created", consultation.id)
        return consultation

    def ensure_recordable(self, consultation: Consultation) -> None:
        if consultation.status != ConsultationStatus.IN_PROGRESS.value:
            raise ConsultationStateError(
                f"Consultation is {consultation.status}; recording is no longer possible"
            )

    def can_complete(self, consultation: Consultation) -> bool:
        note = self.repository.get_note(consultation.id)
        return consultation.status == ConsultationStatus.IN_PROGRESS.value and bool(note and note.is_reviewed)

    def handle_transcription_complete(
        self,
        consultation_id: uuid.UUID,
        text: Optional[str],
        audio: Optional[AudioBlob] = None,
    ) -> TranscriptOutcome:
        """Turns a transcript into the consultation's (unreviewed) note.

        An empty transcript still produces a note carrying a placeholder, so
        the recording is never lost to a failed speech recognition.
        """
        consultation = self.repository.get_consultation(consultation_id)
        self.ensure_recordable(consultation)

        if not text or not text.strip():
            logger.info("No transcript received, creating note with placeholder text")
            note = self.repository.upsert_transcript_note(
                consultation_id,
                subjective=TRANSCRIPTION_FAILED_PLACEHOLDER,
                raw_transcript=TRANSCRIPTION_FAILED_RAW,
            )
            self._event("note_placeholder_saved", consultation_id)
            return TranscriptOutcome(note=note, transcription_failed=True)

        # the transcript is kept verbatim, nothing is summarized or dropped
        note = self.repository.upsert_transcript_note(
            consultation_id,
            subjective=text,
            raw_transcript=text,
        )
        self._event(
            "note_transcript_saved",
            consultation_id,
            transcript_chars=len(text),
            audio_bytes=audio.size if audio else None,
        )
        return TranscriptOutcome(
            note=note,
            transcription_failed=False,
            download_filename=transcript_filename(consultation.patient_name),
        )

    def store_generated_note(self, consultation_id: uuid.UUID, generated: SoapNote, raw_transcript: str) -> MedicalNote:
        """Stores an LLM draft through the same automatic transition."""
        consultation = self.repository.get_consultation(consultation_id)
        self.ensure_recordable(consultation)
        note = self.repository.upsert_transcript_note(
            consultation_id,
            subjective=generated.subjective,
            objective=generated.objective,
            assessment=generated.assessment,
            plan=generated.plan,
            raw_transcript=raw_transcript,
            extracted_entities=generated.extracted_entities.model_dump(),
        )
        self._event("note_generated", consultation_id)
        return note

    def save_note(
        self,
        consultation_id: uuid.UUID,
        subjective: str,
        objective: str,
        assessment: str,
        plan: str,
    ) -> MedicalNote:
        note = self.repository.review_note(
            consultation_id,
            subjective=subjective,
            objective=objective,
            assessment=assessment,
            plan=plan,
        )
        self._event("note_reviewed", consultation_id)
        return note

    def complete_consultation(self, consultation_id: uuid.UUID) -> Consultation:
        consultation = self.repository.get_consultation(consultation_id)
        if consultation.status == ConsultationStatus.COMPLETED.value:
            return consultation
        if consultation.status == ConsultationStatus.CANCELLED.value:
            raise ConsultationStateError("A cancelled consultation cannot be completed")
        if not self.can_complete(consultation):
            raise ConsultationStateError("Review and save the medical note before completing")

        consultation = self.repository.set_status(consultation, ConsultationStatus.COMPLETED)
        self._event("completed", consultation_id)
        return consultation

    def cancel_consultation(self, consultation_id: uuid.UUID) -> Consultation:
        consultation = self.repository.get_consultation(consultation_id)
        if consultation.status == ConsultationStatus.CANCELLED.value:
            return consultation
        if consultation.status == ConsultationStatus.COMPLETED.value:
            raise ConsultationStateError("A completed consultation cannot be cancelled")

        consultation = self.repository.set_status(consultation, ConsultationStatus.CANCELLED)
        self._event("cancelled", consultation_id)
        return consultation

    def _store_recording(self, consultation: Consultation, audio: AudioBlob) -> AudioRecording:
        """Writes the encrypted file and its metadata row; blocking."""
        recording_id = uuid.uuid4()
        file_path = self.audio_processor.save(consultation.id, recording_id, audio)
        duration = self.audio_processor.estimate_duration(audio)
        recording = self.repository.add_recording(
            consultation.id,
            recording_id,
            file_path=file_path,
            mime_type=audio.mime_type,
            duration_seconds=int(round(duration)) if duration else None,
            status=TranscriptionStatus.PROCESSING,
        )
        self.audit.log_audio_processing(
            consultation_id=str(consultation.id),
            recording_id=str(recording_id),
            audio_duration=duration,
            audio_size_bytes=audio.size,
            mime_type=audio.mime_type,
        )
        if duration:
            self.repository.set_duration(consultation, max(1, math.ceil(duration / 60)))
        return recording

    async def transcribe_recording(
        self,
        consultation_id: uuid.UUID,
        audio: AudioBlob,
        on_progress: Optional[ProgressCallback] = None,
    ) -> TranscriptOutcome:
        """Stores the recording, transcribes it and hands the text to the note.

        Database and file work runs in worker threads so the event loop only
        waits on the vendor.
        """
        if self.transcriber is None or self.audio_processor is None:
            raise ConfigurationError("Lifecycle was created without a transcriber or audio processor")

        async def progress(message: str, percent: int) -> None:
            if on_progress is not None:
                await on_progress(message, percent)

        consultation = await asyncio.to_thread(self.repository.get_consultation, consultation_id)
        self.ensure_recordable(consultation)
        self.audio_processor.validate(audio)

        await progress("Storing recording...", 10)
        recording = await asyncio.to_thread(self._store_recording, consultation, audio)

        await progress("Transcribing audio... (this may take a moment)", 30)
        try:
            text = await self.transcriber.transcribe(audio)
        except TranscriptionFailed as e:
            logger.warning(f"Transcription failed for recording {recording.id}: {e}")
            text = ""
        except Exception:
            # a recording never stays in processing
            await asyncio.to_thread(self.repository.set_recording_status, recording, TranscriptionStatus.FAILED)
            raise

        status = TranscriptionStatus.COMPLETED if text.strip() else TranscriptionStatus.FAILED
        await asyncio.to_thread(self.repository.set_recording_status, recording, status)

        await progress("Saving medical note...", 90)
        return await asyncio.to_thread(self.handle_transcription_complete, consultation_id, text, audio)

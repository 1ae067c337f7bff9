"""
Persistence gateway.

Every query is scoped to the acting practitioner: consultations by
``doctor_id``, notes and recordings through their consultation. Rows owned
by someone else are reported as not found. Each write commits on its own;
there are no transactions spanning consultation and note writes.
"""

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from consult_scribe.core.errors import NotFoundError, PersistenceError
from consult_scribe.core.logging import get_logger
from consult_scribe.core.security import PractitionerContext
from consult_scribe.db.tables import (
    AudioRecording,
    Consultation,
    ConsultationStatus,
    MedicalNote,
    Profile,
    TranscriptionStatus,
)

logger = get_logger(__name__)

PROFILE_FIELDS = ("full_name", "medical_license", "specialty")


class ConsultationRepository:
    def __init__(self, session: Session, practitioner: PractitionerContext):
        self.session = session
        self.practitioner = practitioner

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        """Rolls back and re-raises database failures as PersistenceError."""
        try:
            yield
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Database error while trying to {action}: {e}")
            raise PersistenceError(f"Failed to {action}") from e

    # --- profiles ---

    def ensure_profile(self) -> Profile:
        """Returns the practitioner's profile, creating it on first use."""
        with self._guard("load profile"):
            profile = self.session.scalar(
                select(Profile).where(Profile.user_id == self.practitioner.user_id)
            )
            if profile is not None:
                return profile

            profile = Profile(user_id=self.practitioner.user_id, full_name=self.practitioner.display_name)
            self.session.add(profile)
            try:
                self.session.commit()
            except IntegrityError:
                # created concurrently by another request
                self.session.rollback()
                profile = self.session.scalar(
                    select(Profile).where(Profile.user_id == self.practitioner.user_id)
                )
            logger.info(f"Profile ready for user {self.practitioner.user_id}")
            return profile

    def update_profile(self, **fields: Optional[str]) -> Profile:
        profile = self.ensure_profile()
        with self._guard("update profile"):
            for name, value in fields.items():
                if name in PROFILE_FIELDS and value is not None:
                    setattr(profile, name, value)
            self.session.commit()
            return profile

    # --- consultations ---

    def _owned_consultations(self):
        return select(Consultation).where(Consultation.doctor_id == self.practitioner.user_id)

    def list_consultations(self) -> List[Consultation]:
        with self._guard("load consultations"):
            query = self._owned_consultations().order_by(Consultation.consultation_date.desc())
            return list(self.session.scalars(query))

    def count_by_status(self) -> Dict[str, int]:
        with self._guard("count consultations"):
            rows = self.session.execute(
                select(Consultation.status, func.count())
                .where(Consultation.doctor_id == self.practitioner.user_id)
                .group_by(Consultation.status)
            ).all()
        counts = {status.value: 0 for status in ConsultationStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def create_consultation(self, patient_name: str, patient_id: Optional[str] = None) -> Consultation:
        self.ensure_profile()
        with self._guard("create consultation"):
            consultation = Consultation(
                doctor_id=self.practitioner.user_id,
                patient_name=patient_name,
                patient_id=patient_id,
                status=ConsultationStatus.IN_PROGRESS.value,
            )
            self.session.add(consultation)
            self.session.commit()
            return consultation

    def get_consultation(self, consultation_id: uuid.UUID) -> Consultation:
        with self._guard("load consultation"):
            consultation = self.session.scalar(
                self._owned_consultations().where(Consultation.id == consultation_id)
            )
        if consultation is None:
            raise NotFoundError(f"Consultation {consultation_id} not found")
        return consultation

    def set_status(self, consultation: Consultation, status: ConsultationStatus) -> Consultation:
        with self._guard("update consultation"):
            consultation.status = status.value
            self.session.commit()
            return consultation

    def set_duration(self, consultation: Consultation, duration_minutes: int) -> Consultation:
        with self._guard("update consultation"):
            consultation.duration_minutes = duration_minutes
            self.session.commit()
            return consultation

    # --- medical notes ---

    def get_note(self, consultation_id: uuid.UUID) -> Optional[MedicalNote]:
        self.get_consultation(consultation_id)
        with self._guard("load medical note"):
            return self.session.scalar(
                select(MedicalNote).where(MedicalNote.consultation_id == consultation_id)
            )

    def upsert_transcript_note(self, consultation_id: uuid.UUID, **fields: Any) -> MedicalNote:
        """Automatic write keyed on the consultation: re-transcription overwrites."""
        note = self.get_note(consultation_id)
        with self._guard("save medical note"):
            if note is None:
                note = MedicalNote(consultation_id=consultation_id)
                self.session.add(note)
            note.apply_transcript(**fields)
            try:
                self.session.commit()
            except IntegrityError:
                # another writer inserted the note first; last writer wins
                self.session.rollback()
                note = self.session.scalar(
                    select(MedicalNote).where(MedicalNote.consultation_id == consultation_id)
                )
                note.apply_transcript(**fields)
                self.session.commit()
            return note

    def review_note(
        self,
        consultation_id: uuid.UUID,
        subjective: str,
        objective: str,
        assessment: str,
        plan: str,
    ) -> MedicalNote:
        note = self.get_note(consultation_id)
        if note is None:
            raise NotFoundError(f"No medical note for consultation {consultation_id}")
        with self._guard("save medical note"):
            note.apply_review(subjective=subjective, objective=objective, assessment=assessment, plan=plan)
            self.session.commit()
            return note

    # --- recordings ---

    def add_recording(
        self,
        consultation_id: uuid.UUID,
        recording_id: uuid.UUID,
        file_path: Optional[str],
        mime_type: Optional[str],
        duration_seconds: Optional[int],
        status: TranscriptionStatus = TranscriptionStatus.PENDING,
        expires_at: Optional[datetime] = None,
    ) -> AudioRecording:
        self.get_consultation(consultation_id)
        with self._guard("save recording"):
            recording = AudioRecording(
                id=recording_id,
                consultation_id=consultation_id,
                file_path=file_path,
                mime_type=mime_type,
                duration_seconds=duration_seconds,
                transcription_status=status.value,
            )
            if expires_at is not None:
                recording.expires_at = expires_at
            self.session.add(recording)
            self.session.commit()
            return recording

    def set_recording_status(self, recording: AudioRecording, status: TranscriptionStatus) -> AudioRecording:
        with self._guard("update recording"):
            recording.transcription_status = status.value
            self.session.commit()
            return recording

    def list_recordings(self, consultation_id: uuid.UUID) -> List[AudioRecording]:
        self.get_consultation(consultation_id)
        with self._guard("load recordings"):
            return list(
                self.session.scalars(
                    select(AudioRecording)
                    .where(AudioRecording.consultation_id == consultation_id)
                    .order_by(AudioRecording.created_at.desc())
                )
            )

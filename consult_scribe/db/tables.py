"""
SQLAlchemy models for profiles, consultations, medical notes and recordings
"""

import enum
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from consult_scribe.config import settings
from consult_scribe.db.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_expiry() -> datetime:
    return utcnow() + timedelta(hours=settings.recording_retention_hours)


class ConsultationStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TranscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Profile(Base):
    """One row per authenticated practitioner."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(Text)
    medical_license: Mapped[Optional[str]] = mapped_column(Text)
    specialty: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class Consultation(Base):
    __tablename__ = "consultations"
    __table_args__ = (
        CheckConstraint(
            "status IN ('in_progress', 'completed', 'cancelled')",
            name="consultations_status_check",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.user_id", ondelete="CASCADE"), nullable=False, index=True
    )
    patient_name: Mapped[str] = mapped_column(Text, nullable=False)
    patient_id: Mapped[Optional[str]] = mapped_column(Text)
    consultation_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default=ConsultationStatus.IN_PROGRESS.value, nullable=False
    )
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    note: Mapped[Optional["MedicalNote"]] = relationship(
        back_populates="consultation", uselist=False, cascade="all, delete-orphan"
    )
    recordings: Mapped[List["AudioRecording"]] = relationship(
        back_populates="consultation", cascade="all, delete-orphan"
    )


class MedicalNote(Base):
    """SOAP note, at most one per consultation.

    Writes go through two transitions only: ``apply_transcript`` for the
    automatic write when a transcript arrives, ``apply_review`` for the
    practitioner's save. Only the latter marks the note reviewed.
    """

    __tablename__ = "medical_notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    consultation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("consultations.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    subjective: Mapped[Optional[str]] = mapped_column(Text)
    objective: Mapped[Optional[str]] = mapped_column(Text)
    assessment: Mapped[Optional[str]] = mapped_column(Text)
    plan: Mapped[Optional[str]] = mapped_column(Text)
    raw_transcript: Mapped[Optional[str]] = mapped_column(Text)
    extracted_entities: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, default=dict)
    is_reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    consultation: Mapped[Consultation] = relationship(back_populates="note")

    def apply_transcript(
        self,
        subjective: str,
        raw_transcript: str,
        objective: str = "",
        assessment: str = "",
        plan: str = "",
        extracted_entities: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Automatic write on transcript arrival. Always leaves the note unreviewed."""
        self.subjective = subjective
        self.objective = objective
        self.assessment = assessment
        self.plan = plan
        self.raw_transcript = raw_transcript
        self.extracted_entities = dict(extracted_entities or {})
        self.is_reviewed = False

    def apply_review(self, subjective: str, objective: str, assessment: str, plan: str) -> None:
        """Manual save by the practitioner. raw_transcript is never touched here."""
        self.subjective = subjective
        self.objective = objective
        self.assessment = assessment
        self.plan = plan
        self.is_reviewed = True


class AudioRecording(Base):
    """Time-boxed recording metadata, reclaimed by the cleanup job after expiry."""

    __tablename__ = "audio_recordings"
    __table_args__ = (
        CheckConstraint(
            "transcription_status IN ('pending', 'processing', 'completed', 'failed')",
            name="audio_recordings_transcription_status_check",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    consultation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("consultations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_path: Mapped[Optional[str]] = mapped_column(Text)
    mime_type: Mapped[Optional[str]] = mapped_column(String(64))
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer)
    transcription_status: Mapped[str] = mapped_column(
        String(32), default=TranscriptionStatus.PENDING.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=default_expiry, nullable=False, index=True
    )

    consultation: Mapped[Consultation] = relationship(back_populates="recordings")

"""
Pydantic Models für API Responses
"""

import uuid
from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class ExtractedEntities(BaseModel):
    """Medizinische Entitäten aus dem Transkript"""
    symptoms: List[str] = Field(default_factory=list)
    medications: List[str] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)
    duration: List[str] = Field(default_factory=list)
    severity: List[str] = Field(default_factory=list)


class SoapNote(BaseModel):
    """SOAP-Notiz, wie sie der Note Generator liefert"""
    subjective: str = Field(default="", description="Patient complaints and history")
    objective: str = Field(default="", description="Observed details, vitals, tests")
    assessment: str = Field(default="", description="Provisional diagnosis")
    plan: str = Field(default="", description="Prescription, advice, follow-up")
    extracted_entities: ExtractedEntities = Field(default_factory=ExtractedEntities)


class ProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    full_name: Optional[str] = None
    medical_license: Optional[str] = None
    specialty: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ConsultationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    doctor_id: uuid.UUID
    patient_name: str
    patient_id: Optional[str] = None
    consultation_date: datetime
    status: str
    duration_minutes: Optional[int] = None


class MedicalNoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    consultation_id: uuid.UUID
    subjective: Optional[str] = None
    objective: Optional[str] = None
    assessment: Optional[str] = None
    plan: Optional[str] = None
    raw_transcript: Optional[str] = None
    extracted_entities: Optional[Dict[str, Any]] = None
    is_reviewed: bool
    updated_at: datetime


class ConsultationDetailResponse(BaseModel):
    consultation: ConsultationResponse
    note: Optional[MedicalNoteResponse] = None
    can_record: bool = Field(description="False once the consultation left in_progress")
    can_complete: bool = Field(description="True when a reviewed note exists")


class AudioRecordingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    consultation_id: uuid.UUID
    mime_type: Optional[str] = None
    duration_seconds: Optional[int] = None
    transcription_status: str
    created_at: datetime
    expires_at: datetime


class DashboardStats(BaseModel):
    total: int
    in_progress: int
    completed: int
    cancelled: int


class TranscriptDownload(BaseModel):
    """Where the client fetches the transcript as a text file"""
    filename: str
    url: str


class TranscriptHandledResponse(BaseModel):
    note: MedicalNoteResponse
    transcription_failed: bool
    transcript_download: Optional[TranscriptDownload] = None


class RecordingStateResponse(BaseModel):
    consultation_id: uuid.UUID
    state: str = Field(description="idle, recording, paused or stopped")
    mime_type: Optional[str] = None
    elapsed_seconds: float
    chunk_count: int


class JobCreationResponse(BaseModel):
    """Response model for endpoints that start a background job."""
    job_id: str = Field(description="Unique identifier for the created job.")
    recording: Optional[RecordingStateResponse] = None


class TranscriptionResponse(BaseModel):
    text: str


class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str = Field(description="Service Status (healthy/unhealthy)")
    timestamp: datetime = Field(description="Check-Zeitpunkt")
    version: str = Field(description="Service-Version")
    uptime_seconds: int = Field(description="Uptime in Sekunden")


class ErrorResponse(BaseModel):
    """Standardisierte Fehlerantwort"""
    error: str = Field(description="Fehlertyp")
    message: str = Field(description="Fehlerbeschreibung")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Zusätzliche Fehlerdetails")
    request_id: Optional[str] = Field(default=None, description="Request-ID für Debugging")
    timestamp: datetime = Field(description="Fehlerzeitpunkt")


class RateLimitResponse(BaseModel):
    """Rate Limit Exceeded Response"""
    error: str = Field(default="rate_limit_exceeded")
    message: str = Field(description="Rate Limit Fehlermeldung")
    limit: int = Field(description="Request-Limit")
    window: int = Field(description="Zeitfenster in Sekunden")
    timestamp: datetime = Field(description="Fehlerzeitpunkt")

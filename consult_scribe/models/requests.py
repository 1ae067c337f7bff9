"""
Pydantic Models for API Requests
"""

from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


class ConsultationCreate(BaseModel):
    """Request Model for starting a new consultation"""
    patient_name: str = Field(description="Patient name, must not be blank")
    patient_id: Optional[str] = Field(default=None, description="Optional external patient identifier")

    @field_validator("patient_name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("patient_name must not be empty")
        return value.strip()

    @field_validator("patient_id")
    @classmethod
    def blank_id_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class NoteUpdate(BaseModel):
    """Manual edits to the four SOAP sections"""
    subjective: str = Field(..., description="Subjective section")
    objective: str = Field(..., description="Objective section")
    assessment: str = Field(..., description="Assessment section")
    plan: str = Field(..., description="Plan section")


class TranscriptSubmission(BaseModel):
    """Transcript text delivered after a recording was transcribed"""
    text: str = Field(default="", description="Transcript text; empty means transcription failed")


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = None
    medical_license: Optional[str] = None
    specialty: Optional[str] = None


class RecordingStartRequest(BaseModel):
    """The browser owns the microphone and reports the outcome of the permission prompt."""
    microphone_granted: bool = Field(description="Whether the user allowed microphone access")
    supported_mime_types: List[str] = Field(
        default_factory=list,
        description="Mime types the client's recorder can produce",
    )


class RecordingChunk(BaseModel):
    """One timeslice of recorded audio"""
    data: str = Field(description="Base64-encoded audio chunk")


class TranscribeRequest(BaseModel):
    """Proxied transcription request; keeps vendor secrets on the server"""
    audio_base64: str = Field(description="Base64-encoded audio")
    mime_type: str = Field(default="audio/mp3")


class NoteGenerationRequest(BaseModel):
    transcript: str = Field(description="Consultation transcript")
    patient_name: Optional[str] = Field(default=None)

"""
Consult Scribe - Consultation Recording and Clinical Note Service

A FastAPI-based service that records doctor-patient consultations,
transcribes them via a speech-to-text vendor and turns the transcript
into a reviewable SOAP note.
"""

__version__ = "1.0.0"

"""
Audio-Validierung und verschlüsselte Ablage
"""

import io
import os
import uuid
from pathlib import Path
from typing import Optional, Tuple

from mutagen import File as MutagenFile

from consult_scribe.config import settings
from consult_scribe.core.logging import get_logger
from consult_scribe.core.security import DataEncryption, data_encryption
from consult_scribe.services.recording import AudioBlob

logger = get_logger(__name__)


class AudioValidationError(ValueError):
    """Audio payload rejected before it reaches storage or a vendor."""


class AudioProcessor:
    """Audio-Validierung und Verarbeitung"""

    def __init__(
        self,
        storage_dir: Optional[str] = None,
        encryption: Optional[DataEncryption] = None,
        max_file_size_mb: Optional[int] = None,
    ):
        self.storage_dir = Path(storage_dir or settings.recording_storage_dir)
        self.encryption = encryption or data_encryption
        self.max_bytes = (max_file_size_mb or settings.max_file_size_mb) * 1024 * 1024

    def validate(self, blob: AudioBlob) -> None:
        """Checks format, emptiness and size limits."""
        if blob.base_mime_type not in settings.supported_audio_formats:
            logger.warning(
                f"Unsupported audio format: {blob.mime_type}. Supported: {settings.supported_audio_formats}"
            )
            raise AudioValidationError(f"Unsupported audio format: {blob.mime_type}")
        if not blob.data:
            raise AudioValidationError("No audio data received.")
        if blob.size > self.max_bytes:
            raise AudioValidationError(
                f"Audio exceeds the maximum size of {self.max_bytes // (1024 * 1024)} MB"
            )

    def save(self, consultation_id: uuid.UUID, recording_id: uuid.UUID, blob: AudioBlob) -> str:
        """Encrypts the audio and stores it; returns the storage path."""
        target_dir = self.storage_dir / str(consultation_id)
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{recording_id}{self._get_extension_from_content_type(blob.base_mime_type)}.enc"

        logger.info("Encrypting audio data for secure storage.")
        encrypted = self.encryption.encrypt_data(blob.data)
        path.write_bytes(encrypted)
        logger.info(f"Encrypted audio saved to {path}")
        return str(path)

    def load(self, file_path: str) -> bytes:
        """Reads and decrypts a stored recording."""
        return self.encryption.decrypt_data(Path(file_path).read_bytes())

    def delete(self, file_path: Optional[str]) -> bool:
        """Safely delete a stored recording. Missing files are not an error."""
        if file_path and os.path.exists(file_path):
            try:
                os.unlink(file_path)
                logger.info(f"Deleted stored recording: {file_path}")
                return True
            except OSError as e:
                logger.error(f"Error deleting recording {file_path}: {e}")
        return False

    def estimate_duration(self, blob: AudioBlob) -> float:
        """Duration reported by the client, or read from the audio headers."""
        if blob.duration_seconds:
            return blob.duration_seconds
        duration, _ = self._extract_metadata(blob.data, blob.mime_type)
        return duration

    def _get_extension_from_content_type(self, content_type: str) -> str:
        """Maps content type to file extension."""
        return {
            "audio/mpeg": ".mp3",
            "audio/mp3": ".mp3",
            "audio/wav": ".wav",
            "audio/mp4": ".mp4",
            "audio/m4a": ".m4a",
            "audio/ogg": ".ogg",
            "audio/webm": ".webm",
        }.get(content_type, ".bin")

    def _extract_metadata(self, audio_data: bytes, content_type: str) -> Tuple[float, dict]:
        """Extracts duration and other metadata using mutagen."""
        try:
            audio = MutagenFile(io.BytesIO(audio_data))
            if audio is None:
                raise ValueError("Could not load audio with mutagen.")

            duration = getattr(audio.info, "length", 0.0) or 0.0
            metadata = {
                "duration_seconds": duration,
                "bitrate": getattr(audio.info, "bitrate", None),
                "sample_rate": getattr(audio.info, "sample_rate", None),
                "channels": getattr(audio.info, "channels", None),
                "content_type": content_type,
            }
            return float(duration), metadata
        except Exception as e:
            logger.warning(f"Could not extract metadata using mutagen: {e}")
            return 0.0, {"content_type": content_type}

    @staticmethod
    def detect_content_type(audio_data: bytes, filename: Optional[str] = None) -> str:
        """Erkennt Content-Type basierend auf Datei-Signature"""
        if b"ftyp" in audio_data[4:12]:
            return "audio/mp4"

        signatures = {
            b"ID3": "audio/mpeg",      # MP3 with ID3 Tag
            b"\xff\xfb": "audio/mpeg",  # MP3 frame
            b"\xff\xf3": "audio/mpeg",  # MP3 frame
            b"\xff\xf2": "audio/mpeg",  # MP3 frame
            b"RIFF": "audio/wav",      # WAV
            b"OggS": "audio/ogg",      # OGG
            b"\x1a\x45\xdf\xa3": "audio/webm",  # EBML (WebM)
        }
        for signature, detected_type in signatures.items():
            if audio_data.startswith(signature):
                return detected_type

        if filename:
            ext_map = {
                ".mp3": "audio/mpeg",
                ".wav": "audio/wav",
                ".m4a": "audio/mp4",
                ".mp4": "audio/mp4",
                ".ogg": "audio/ogg",
                ".webm": "audio/webm",
            }
            _, ext = os.path.splitext(filename)
            if ext.lower() in ext_map:
                return ext_map[ext.lower()]

        logger.warning("Could not detect specific audio type. Falling back to 'application/octet-stream'.")
        return "application/octet-stream"

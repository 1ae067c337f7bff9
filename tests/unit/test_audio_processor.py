"""Unit tests for audio validation and encrypted storage."""

import uuid
from pathlib import Path

import pytest

from consult_scribe.services.audio_processor import AudioProcessor, AudioValidationError
from consult_scribe.services.recording import AudioBlob

pytestmark = pytest.mark.unit


class TestValidation:
    def test_codec_parameters_are_ignored(self, audio_processor) -> None:
        audio_processor.validate(AudioBlob(data=b"webm", mime_type="audio/webm;codecs=opus"))

    def test_unsupported_format(self, audio_processor) -> None:
        with pytest.raises(AudioValidationError, match="Unsupported audio format"):
            audio_processor.validate(AudioBlob(data=b"x", mime_type="video/mp4"))

    def test_empty_audio(self, audio_processor) -> None:
        with pytest.raises(AudioValidationError, match="No audio data"):
            audio_processor.validate(AudioBlob(data=b"", mime_type="audio/mpeg"))

    def test_size_limit(self, tmp_path) -> None:
        processor = AudioProcessor(storage_dir=str(tmp_path), max_file_size_mb=1)
        with pytest.raises(AudioValidationError, match="maximum size"):
            processor.validate(AudioBlob(data=b"0" * (1024 * 1024 + 1), mime_type="audio/mpeg"))


class TestStorage:
    def test_saved_audio_is_encrypted_and_loadable(self, audio_processor) -> None:
        blob = AudioBlob(data=b"\xff\xfbsecret consultation audio", mime_type="audio/mpeg")
        consultation_id, recording_id = uuid.uuid4(), uuid.uuid4()

        path = audio_processor.save(consultation_id, recording_id, blob)

        assert path.endswith(f"{recording_id}.mp3.enc")
        assert str(consultation_id) in path
        assert b"secret consultation audio" not in Path(path).read_bytes()
        assert audio_processor.load(path) == blob.data

    def test_delete_is_idempotent(self, audio_processor) -> None:
        path = audio_processor.save(uuid.uuid4(), uuid.uuid4(), AudioBlob(data=b"a", mime_type="audio/ogg"))
        assert audio_processor.delete(path) is True
        assert audio_processor.delete(path) is False


class TestMetadata:
    def test_client_duration_wins(self, audio_processor) -> None:
        blob = AudioBlob(data=b"not really audio", mime_type="audio/webm", duration_seconds=42.0)
        assert audio_processor.estimate_duration(blob) == 42.0

    def test_unreadable_audio_has_no_duration(self, audio_processor) -> None:
        assert audio_processor.estimate_duration(AudioBlob(data=b"garbage", mime_type="audio/webm")) == 0.0

    @pytest.mark.parametrize(
        "data, filename, expected",
        [
            (b"ID3\x03rest", None, "audio/mpeg"),
            (b"RIFF....WAVE", None, "audio/wav"),
            (b"OggS\x00", None, "audio/ogg"),
            (b"\x1a\x45\xdf\xa3rest", None, "audio/webm"),
            (b"????", "visit.webm", "audio/webm"),
            (b"????", None, "application/octet-stream"),
        ],
    )
    def test_content_type_detection(self, data, filename, expected) -> None:
        assert AudioProcessor.detect_content_type(data, filename) == expected

"""
Recording capture.

The microphone belongs to whatever device the session is given. Over HTTP
that is the practitioner's browser: it asks for permission, records, and
delivers one chunk per timeslice. The session owns the chunk buffer for the
lifetime of one recording and discards it once the audio is finalized.
"""

import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from consult_scribe.config import settings
from consult_scribe.core.errors import DeviceAccessDenied, RecordingStateError
from consult_scribe.core.logging import get_logger

logger = get_logger(__name__)

PREFERRED_MIME_TYPES = ("audio/mpeg", "audio/mp3")
FALLBACK_MIME_TYPE = "audio/webm;codecs=opus"
MICROPHONE_DENIED_MESSAGE = "Could not access microphone. Please check permissions."


@dataclass(frozen=True)
class CaptureConstraints:
    """Microphone settings requested when a recording starts"""
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    sample_rate: int = 16000
    channel_count: int = 1


@dataclass(frozen=True)
class AudioBlob:
    """One finalized recording"""
    data: bytes
    mime_type: str
    duration_seconds: float = 0.0

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def base_mime_type(self) -> str:
        """Mime type without codec parameters, e.g. ``audio/webm``."""
        return self.mime_type.split(";", 1)[0].strip()


class AudioStream(Protocol):
    mime_type: str

    def stop(self) -> None:
        ...


class AudioDevice(Protocol):
    def open(self, constraints: CaptureConstraints) -> AudioStream:
        """Opens the microphone or raises DeviceAccessDenied."""
        ...


def choose_mime_type(supported: Iterable[str]) -> str:
    """MP3 when the recorder can produce it, Opus in WebM otherwise."""
    supported = set(supported)
    for mime_type in PREFERRED_MIME_TYPES:
        if mime_type in supported:
            return "audio/mpeg"
    return FALLBACK_MIME_TYPE


class ClientStream:
    """Stream handle for audio recorded by the client."""

    def __init__(self, mime_type: str):
        self.mime_type = mime_type
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class ClientStreamDevice:
    """Device backed by the browser's permission prompt and recorder."""

    def __init__(self, microphone_granted: bool, supported_mime_types: Iterable[str] = ()):
        self.microphone_granted = microphone_granted
        self.supported_mime_types = list(supported_mime_types)

    def open(self, constraints: CaptureConstraints) -> ClientStream:
        if not self.microphone_granted:
            raise DeviceAccessDenied(MICROPHONE_DENIED_MESSAGE)
        return ClientStream(choose_mime_type(self.supported_mime_types))


class RecordingState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPED = "stopped"


class RecordingSession:
    """Buffers audio chunks between start() and stop()."""

    def __init__(
        self,
        device: AudioDevice,
        timeslice_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._device = device
        self.timeslice_seconds = timeslice_seconds or settings.recording_timeslice_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._stream: Optional[AudioStream] = None
        self._chunks: List[bytes] = []
        self._elapsed = 0.0
        self._segment_started: Optional[float] = None
        self.state = RecordingState.IDLE

    @property
    def mime_type(self) -> Optional[str]:
        return self._stream.mime_type if self._stream else None

    @property
    def chunk_count(self) -> int:
        with self._lock:
            return len(self._chunks)

    @property
    def elapsed_seconds(self) -> float:
        """Running duration, excluding paused time. Display only."""
        with self._lock:
            return self._elapsed_locked()

    def _elapsed_locked(self) -> float:
        if self._segment_started is None:
            return self._elapsed
        return self._elapsed + (self._clock() - self._segment_started)

    def start(self, constraints: Optional[CaptureConstraints] = None) -> None:
        with self._lock:
            if self.state != RecordingState.IDLE:
                raise RecordingStateError(f"Cannot start a recording that is {self.state.value}")
            # on DeviceAccessDenied nothing below runs and the session stays idle
            stream = self._device.open(constraints or CaptureConstraints())
            self._stream = stream
            self._chunks = []
            self._elapsed = 0.0
            self._segment_started = self._clock()
            self.state = RecordingState.RECORDING
        logger.info(f"Recording started with mimeType: {stream.mime_type}")

    def add_chunk(self, data: bytes) -> bool:
        """Buffers one chunk. Returns False when the chunk was not kept."""
        with self._lock:
            if self.state == RecordingState.PAUSED:
                return False
            if self.state != RecordingState.RECORDING:
                raise RecordingStateError(f"Cannot add audio to a recording that is {self.state.value}")
            if not data:
                return False
            self._chunks.append(bytes(data))
            return True

    def pause(self) -> None:
        with self._lock:
            if self.state != RecordingState.RECORDING:
                raise RecordingStateError(f"Cannot pause a recording that is {self.state.value}")
            self._elapsed = self._elapsed_locked()
            self._segment_started = None
            self.state = RecordingState.PAUSED

    def resume(self) -> None:
        with self._lock:
            if self.state != RecordingState.PAUSED:
                raise RecordingStateError(f"Cannot resume a recording that is {self.state.value}")
            self._segment_started = self._clock()
            self.state = RecordingState.RECORDING

    def stop(self) -> AudioBlob:
        """Joins all chunks into one AudioBlob and releases the stream."""
        with self._lock:
            if self.state not in (RecordingState.RECORDING, RecordingState.PAUSED):
                raise RecordingStateError(f"Cannot stop a recording that is {self.state.value}")
            duration = self._elapsed_locked()
            blob = AudioBlob(
                data=b"".join(self._chunks),
                mime_type=self._stream.mime_type,
                duration_seconds=duration,
            )
            self._stream.stop()
            self._chunks = []
            self._elapsed = duration
            self._segment_started = None
            self.state = RecordingState.STOPPED
        logger.info(f"Recording stopped: {blob.size} bytes, {duration:.1f}s")
        return blob


class RecordingRegistry:
    """Active recording sessions, at most one per consultation."""

    def __init__(self):
        self._sessions: Dict[uuid.UUID, RecordingSession] = {}
        self._lock = threading.Lock()

    def open(self, consultation_id: uuid.UUID, session: RecordingSession) -> RecordingSession:
        with self._lock:
            current = self._sessions.get(consultation_id)
            if current is not None and current.state in (RecordingState.RECORDING, RecordingState.PAUSED):
                raise RecordingStateError("A recording is already active for this consultation")
            self._sessions[consultation_id] = session
        return session

    def get(self, consultation_id: uuid.UUID) -> RecordingSession:
        with self._lock:
            session = self._sessions.get(consultation_id)
        if session is None:
            raise RecordingStateError("No active recording for this consultation")
        return session

    def release(self, consultation_id: uuid.UUID) -> None:
        with self._lock:
            self._sessions.pop(consultation_id, None)

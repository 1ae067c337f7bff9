"""
Speech-to-Text Service
Uploads audio to the vendor, creates a transcription job and polls it.
"""

import base64
import binascii
import time
from typing import Any, Dict, Optional, Protocol

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from consult_scribe.config import settings, STTProvider
from consult_scribe.core.errors import ConfigurationError, TranscriptionFailed
from consult_scribe.core.logging import get_logger, audit_logger
from consult_scribe.services.recording import AudioBlob

logger = get_logger(__name__)


def encode_audio(data: bytes) -> str:
    """Transport-safe encoding used between client and backend."""
    return base64.b64encode(data).decode("ascii")


def decode_audio(encoded: str) -> bytes:
    """Inverse of encode_audio. Raises ValueError on malformed input."""
    try:
        return base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Audio is not valid base64: {e}") from e


def _json_body(response: httpx.Response, context: str) -> Dict[str, Any]:
    """Decodes a vendor reply that must be a JSON object."""
    try:
        payload = response.json()
    except ValueError as e:
        raise TranscriptionFailed(f"{context} returned malformed JSON: {e}") from e
    if not isinstance(payload, dict):
        raise TranscriptionFailed(f"{context} returned unexpected JSON: {type(payload).__name__}")
    return payload


def _json_field(response: httpx.Response, field: str, context: str) -> Any:
    value = _json_body(response, context).get(field)
    if not value:
        raise TranscriptionFailed(f"{context} response is missing '{field}'")
    return value


class Transcriber(Protocol):
    """Any speech-to-text vendor: one capability, audio in, text out."""

    async def transcribe(self, audio: AudioBlob) -> str:
        ...


class AssemblyAITranscriber:
    """AssemblyAI REST flow: upload, create transcript, poll until done."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        language_code: Optional[str] = None,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.assemblyai_api_key
        self.base_url = (base_url or settings.assemblyai_base_url).rstrip("/")
        self.language_code = language_code or settings.stt_language_code
        self.poll_interval = settings.stt_poll_interval if poll_interval is None else poll_interval
        self.max_poll_attempts = max_poll_attempts or settings.stt_max_poll_attempts
        self.timeout = timeout or settings.stt_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"authorization": self.api_key},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def transcribe(self, audio: AudioBlob) -> str:
        if not self.api_key:
            raise ConfigurationError("ASSEMBLYAI_API_KEY is not set")

        logger.info(f"Starting transcription with AssemblyAI: {audio.size} bytes, {audio.mime_type}")
        async with self._client() as client:
            upload_url = await self._upload(client, audio.data)
            transcript_id = await self._create_transcript(client, upload_url)
            logger.info(f"AssemblyAI transcript created with ID: {transcript_id}")
            text = await self._wait_for_completion(client, transcript_id)

        logger.info(f"AssemblyAI transcription successful for ID {transcript_id}: {len(text)} characters")
        return text

    async def _upload(self, client: httpx.AsyncClient, data: bytes) -> str:
        response = await self._call(
            client, "POST", "/v2/upload",
            content=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        if response.is_error:
            raise TranscriptionFailed(f"AssemblyAI upload error: {response.text}")
        return _json_field(response, "upload_url", "AssemblyAI upload")

    async def _create_transcript(self, client: httpx.AsyncClient, upload_url: str) -> str:
        response = await self._call(
            client, "POST", "/v2/transcript",
            json={
                "audio_url": upload_url,
                "language_code": self.language_code,
                "punctuate": True,
                "format_text": True,
            },
        )
        if response.is_error:
            raise TranscriptionFailed(f"AssemblyAI transcription error: {response.text}")
        return _json_field(response, "id", "AssemblyAI transcript")

    async def _fetch_status(self, client: httpx.AsyncClient, transcript_id: str) -> Dict[str, Any]:
        response = await self._call(client, "GET", f"/v2/transcript/{transcript_id}")
        if response.is_error:
            logger.error(f"Failed to check status: {response.text}")
            raise TranscriptionFailed("Failed to check transcription status")

        data = _json_body(response, "AssemblyAI status")
        if data.get("status") == "error":
            raise TranscriptionFailed(f"Transcription failed: {data.get('error')}")
        return data

    async def _wait_for_completion(self, client: httpx.AsyncClient, transcript_id: str) -> str:
        """Polls at a fixed interval; gives up after max_poll_attempts checks."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_poll_attempts),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda data: data.get("status") != "completed"),
            before_sleep=lambda state: logger.debug(
                f"Transcript {transcript_id} not ready, attempt {state.attempt_number}"
            ),
        )
        try:
            data = await retrying(self._fetch_status, client, transcript_id)
        except RetryError:
            logger.warning(f"Transcript {transcript_id} not completed after {self.max_poll_attempts} attempts")
            raise TranscriptionFailed("Transcription timeout")
        return data.get("text") or ""

    async def _call(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> httpx.Response:
        started = time.perf_counter()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TranscriptionFailed(f"AssemblyAI request failed: {e}") from e
        audit_logger.log_external_api_call(
            service="assemblyai",
            endpoint="/v2/transcript/{id}" if path.startswith("/v2/transcript/") else path,
            response_status=response.status_code,
            response_time_ms=int((time.perf_counter() - started) * 1000),
        )
        return response


class HuggingFaceSpaceTranscriber:
    """Whisper-style Space that accepts a multipart ``file`` and answers with text or JSON."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url if api_url is not None else settings.hf_space_api_url
        self.token = token if token is not None else settings.hf_token
        self.timeout = timeout or settings.stt_timeout
        self._transport = transport

    async def transcribe(self, audio: AudioBlob) -> str:
        if not self.api_url:
            raise ConfigurationError("HF_SPACE_API_URL is not set")

        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        started = time.perf_counter()
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    self.api_url,
                    headers=headers,
                    files={"file": ("audio.mp3", audio.data, audio.base_mime_type)},
                )
            except httpx.HTTPError as e:
                raise TranscriptionFailed(f"HF Space request failed: {e}") from e

        audit_logger.log_external_api_call(
            service="huggingface",
            endpoint=self.api_url,
            response_status=response.status_code,
            response_time_ms=int((time.perf_counter() - started) * 1000),
        )
        if response.is_error:
            logger.error(f"HF Space error: {response.text}")
            raise TranscriptionFailed(f"HF Space error: {response.text}")

        if "application/json" in response.headers.get("content-type", ""):
            try:
                payload = response.json()
            except ValueError as e:
                raise TranscriptionFailed(f"HF Space returned malformed JSON: {e}") from e
            if isinstance(payload, dict):
                text = payload.get("text") or payload.get("transcription")
                if text:
                    return text
            return response.text
        return response.text


def get_transcriber(provider: Optional[STTProvider] = None) -> Transcriber:
    """Returns the transcriber configured for this deployment."""
    provider = provider or settings.stt_provider
    if provider == STTProvider.HUGGINGFACE:
        return HuggingFaceSpaceTranscriber()
    return AssemblyAITranscriber()

"""
LLM Service for SOAP note generation
"""
import json
import re
from typing import Any, List, Optional, Protocol

from openai import AsyncOpenAI

from consult_scribe.config import settings, NoteGeneratorName
from consult_scribe.core.errors import ConfigurationError, NoteGenerationParseFailed
from consult_scribe.core.logging import get_logger
from consult_scribe.models.responses import ExtractedEntities, SoapNote

logger = get_logger(__name__)

UNPARSED_PLACEHOLDER = "Unable to parse - please review manually"

SYSTEM_PROMPT = """
You are a clinical documentation assistant. Convert the consultation transcript
you are given into a SOAP note.

Respond with a single JSON object and nothing else, using exactly these keys:
- subjective: the patient's complaints and history, in their own words where possible.
- objective: observed details, vital signs and test results mentioned.
- assessment: the provisional diagnosis or differential.
- plan: prescriptions, advice and follow-up.
- extracted_entities: an object with the lists symptoms, medications,
  conditions, duration and severity.

Do not invent findings that are not in the transcript. Use an empty string
for a section the transcript does not cover.
"""

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class NoteGenerator(Protocol):
    """Any LLM vendor: one capability, transcript in, SOAP note out."""

    async def generate_note(self, transcript: str, patient_name: Optional[str] = None) -> SoapNote:
        ...


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [_as_text(item) for item in value if item is not None]
    return [_as_text(value)]


def _parse_json_note(raw: str) -> SoapNote:
    text = raw.strip()
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise NoteGenerationParseFailed(f"Response is not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise NoteGenerationParseFailed(f"Expected a JSON object, got {type(payload).__name__}")

    entities = payload.get("extracted_entities")
    if not isinstance(entities, dict):
        entities = {}

    return SoapNote(
        subjective=_as_text(payload.get("subjective")),
        objective=_as_text(payload.get("objective")),
        assessment=_as_text(payload.get("assessment")),
        plan=_as_text(payload.get("plan")),
        extracted_entities=ExtractedEntities(
            **{field: _as_list(entities.get(field)) for field in ExtractedEntities.model_fields}
        ),
    )


def parse_soap_note(raw: Optional[str]) -> SoapNote:
    """Parses the vendor reply; unparseable replies end up in ``subjective``."""
    raw = raw or ""
    try:
        return _parse_json_note(raw)
    except NoteGenerationParseFailed as e:
        logger.warning(f"SOAP note response could not be parsed, keeping raw text: {e}")
        return SoapNote(
            subjective=raw,
            objective=UNPARSED_PLACEHOLDER,
            assessment=UNPARSED_PLACEHOLDER,
            plan=UNPARSED_PLACEHOLDER,
        )


class OpenAINoteGenerator:
    """Generates SOAP notes with an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        json_mode: bool = True,
    ):
        self._client = client
        self.model = model or settings.default_llm_model
        self.temperature = settings.llm_temperature
        self.max_tokens = settings.llm_max_tokens
        self.json_mode = json_mode

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise ConfigurationError("OPENAI_API_KEY is not set")
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                timeout=settings.llm_timeout,
            )
        return self._client

    def _build_user_prompt(self, transcript: str, patient_name: Optional[str]) -> str:
        if patient_name:
            return f"Patient: {patient_name}\n\nTranscript:\n{transcript}"
        return f"Transcript:\n{transcript}"

    async def generate_note(self, transcript: str, patient_name: Optional[str] = None) -> SoapNote:
        if not transcript or not transcript.strip():
            raise ValueError("No transcript provided")

        logger.info(f"Starting SOAP note generation with model: {self.model}")
        extra = {"response_format": {"type": "json_object"}} if self.json_mode else {}
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._build_user_prompt(transcript, patient_name)},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            **extra,
        )

        content = completion.choices[0].message.content if completion.choices else ""
        note = parse_soap_note(content)
        logger.info("SOAP note generation completed.")
        return note


class TranscriptNoteGenerator:
    """Vendor-free generator: the full transcript becomes the subjective section."""

    async def generate_note(self, transcript: str, patient_name: Optional[str] = None) -> SoapNote:
        if not transcript or not transcript.strip():
            raise ValueError("No transcript provided")
        return SoapNote(subjective=transcript)


def get_note_generator(name: Optional[NoteGeneratorName] = None) -> NoteGenerator:
    name = name or settings.note_generator
    if name == NoteGeneratorName.TRANSCRIPT:
        return TranscriptNoteGenerator()
    return OpenAINoteGenerator()

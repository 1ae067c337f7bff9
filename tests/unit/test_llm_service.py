"""Unit tests for SOAP note generation and response parsing."""

import json

import httpx
import pytest
from openai import AsyncOpenAI

from consult_scribe.services.llm_service import (
    UNPARSED_PLACEHOLDER,
    OpenAINoteGenerator,
    TranscriptNoteGenerator,
    parse_soap_note,
)

pytestmark = pytest.mark.unit

STRUCTURED_REPLY = {
    "subjective": "Dry cough and mild fever for three days.",
    "objective": "Temperature 38.1 C.",
    "assessment": "Likely viral upper respiratory infection.",
    "plan": "Rest, fluids, paracetamol as needed. Review in one week.",
    "extracted_entities": {
        "symptoms": ["dry cough", "fever"],
        "medications": ["paracetamol"],
        "conditions": ["upper respiratory infection"],
        "duration": ["three days"],
        "severity": ["mild"],
    },
}


def chat_completion(content: str) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def make_client(content: str, captured: list) -> AsyncOpenAI:
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(200, json=chat_completion(content))

    return AsyncOpenAI(
        api_key="test-key",
        base_url="https://llm.example/v1",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestParseSoapNote:
    def test_structured_json(self) -> None:
        note = parse_soap_note(json.dumps(STRUCTURED_REPLY))
        assert note.assessment == STRUCTURED_REPLY["assessment"]
        assert note.extracted_entities.medications == ["paracetamol"]

    def test_json_inside_code_fence(self) -> None:
        note = parse_soap_note("```json\n" + json.dumps(STRUCTURED_REPLY) + "\n```")
        assert note.plan == STRUCTURED_REPLY["plan"]

    def test_missing_sections_become_empty(self) -> None:
        note = parse_soap_note(json.dumps({"subjective": "Headache."}))
        assert note.subjective == "Headache."
        assert note.objective == ""
        assert note.extracted_entities.symptoms == []

    def test_unparseable_reply_is_kept_as_subjective(self) -> None:
        raw = "The patient has a cough. I could not structure this."
        note = parse_soap_note(raw)
        assert note.subjective == raw
        assert note.objective == UNPARSED_PLACEHOLDER
        assert note.assessment == UNPARSED_PLACEHOLDER
        assert note.plan == UNPARSED_PLACEHOLDER

    def test_json_array_is_not_a_note(self) -> None:
        note = parse_soap_note("[1, 2, 3]")
        assert note.subjective == "[1, 2, 3]"
        assert note.plan == UNPARSED_PLACEHOLDER


class TestOpenAINoteGenerator:
    async def test_generates_structured_note(self) -> None:
        captured = []
        generator = OpenAINoteGenerator(client=make_client(json.dumps(STRUCTURED_REPLY), captured))

        note = await generator.generate_note("Patient: dry cough for three days.", patient_name="Jane Roe")

        assert note.subjective == STRUCTURED_REPLY["subjective"]
        assert captured[0]["response_format"] == {"type": "json_object"}
        assert "dry cough for three days" in captured[0]["messages"][1]["content"]

    async def test_free_text_reply_falls_back(self) -> None:
        captured = []
        generator = OpenAINoteGenerator(client=make_client("Not JSON at all", captured))

        note = await generator.generate_note("Patient: headache.")

        assert note.subjective == "Not JSON at all"
        assert note.assessment == UNPARSED_PLACEHOLDER

    async def test_empty_transcript_is_rejected(self) -> None:
        generator = OpenAINoteGenerator(client=make_client("{}", []))
        with pytest.raises(ValueError, match="No transcript provided"):
            await generator.generate_note("   ")


class TestTranscriptNoteGenerator:
    async def test_transcript_becomes_subjective(self) -> None:
        note = await TranscriptNoteGenerator().generate_note("Full transcript text.")
        assert note.subjective == "Full transcript text."
        assert note.objective == ""

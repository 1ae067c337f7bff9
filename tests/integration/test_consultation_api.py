"""Integration test: consultation lifecycle over HTTP.

Flow: create consultation → submit transcript → review note → complete,
      plus ownership scoping, dashboard counts and profile handling.
"""

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from consult_scribe.db.database import get_db
from consult_scribe.services.lifecycle import TRANSCRIPTION_FAILED_PLACEHOLDER

pytestmark = pytest.mark.integration


@pytest.fixture
def consultation(client, auth_headers) -> dict:
    response = client.post("/v1/consultations", json={"patient_name": "Jane Roe"}, headers=auth_headers)
    assert response.status_code == 201
    return response.json()


def test_requests_without_token_are_rejected(client) -> None:
    assert client.get("/v1/consultations").status_code == 401
    response = client.get("/v1/consultations", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Request-ID" in response.headers


class TestConsultationFlow:
    def test_full_lifecycle(self, client, auth_headers, consultation) -> None:
        cid = consultation["id"]
        assert consultation["status"] == "in_progress"

        detail = client.get(f"/v1/consultations/{cid}", headers=auth_headers).json()
        assert detail["note"] is None
        assert detail["can_record"] is True
        assert detail["can_complete"] is False

        handled = client.post(
            f"/v1/consultations/{cid}/transcript",
            json={"text": "Patient: I have had a cough for a week."},
            headers=auth_headers,
        ).json()
        assert handled["transcription_failed"] is False
        assert handled["note"]["is_reviewed"] is False
        assert handled["note"]["subjective"] == "Patient: I have had a cough for a week."
        assert handled["transcript_download"]["filename"] == "transcript-Jane Roe.txt"

        # an unreviewed note does not allow completion
        response = client.post(f"/v1/consultations/{cid}/complete", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "consultation_state_error"

        saved = client.put(
            f"/v1/consultations/{cid}/note",
            json={
                "subjective": "Cough for one week.",
                "objective": "Chest clear.",
                "assessment": "Viral bronchitis.",
                "plan": "Supportive care.",
            },
            headers=auth_headers,
        ).json()
        assert saved["is_reviewed"] is True
        assert saved["raw_transcript"] == "Patient: I have had a cough for a week."

        assert client.get(f"/v1/consultations/{cid}", headers=auth_headers).json()["can_complete"] is True

        completed = client.post(f"/v1/consultations/{cid}/complete", headers=auth_headers)
        assert completed.status_code == 200
        assert completed.json()["status"] == "completed"
        again = client.post(f"/v1/consultations/{cid}/complete", headers=auth_headers)
        assert again.json()["status"] == "completed"

        late = client.post(f"/v1/consultations/{cid}/transcript", json={"text": "late"}, headers=auth_headers)
        assert late.status_code == 409

    def test_empty_transcript_gives_placeholder_note(self, client, auth_headers, consultation) -> None:
        handled = client.post(
            f"/v1/consultations/{consultation['id']}/transcript",
            json={"text": ""},
            headers=auth_headers,
        ).json()

        assert handled["transcription_failed"] is True
        assert handled["transcript_download"] is None
        assert handled["note"]["subjective"] == TRANSCRIPTION_FAILED_PLACEHOLDER

        download = client.get(f"/v1/consultations/{consultation['id']}/transcript", headers=auth_headers)
        assert download.status_code == 404

    def test_transcript_download(self, client, auth_headers, consultation) -> None:
        cid = consultation["id"]
        client.post(f"/v1/consultations/{cid}/transcript", json={"text": "Exact words."}, headers=auth_headers)

        response = client.get(f"/v1/consultations/{cid}/transcript", headers=auth_headers)

        assert response.status_code == 200
        assert response.text == "Exact words."
        assert response.headers["content-type"].startswith("text/plain")
        assert 'filename="transcript-Jane Roe.txt"' in response.headers["content-disposition"]

    def test_generate_note_from_stored_transcript(self, client, auth_headers, consultation) -> None:
        cid = consultation["id"]
        response = client.post(f"/v1/consultations/{cid}/note/generate", headers=auth_headers)
        assert response.status_code == 409

        client.post(f"/v1/consultations/{cid}/transcript", json={"text": "Sore throat."}, headers=auth_headers)
        note = client.post(f"/v1/consultations/{cid}/note/generate", headers=auth_headers).json()
        assert note["subjective"] == "Sore throat."
        assert note["is_reviewed"] is False

    def test_cancel(self, client, auth_headers, consultation) -> None:
        cid = consultation["id"]
        assert client.post(f"/v1/consultations/{cid}/cancel", headers=auth_headers).json()["status"] == "cancelled"
        detail = client.get(f"/v1/consultations/{cid}", headers=auth_headers).json()
        assert detail["can_record"] is False

    def test_blank_patient_name_is_invalid(self, client, auth_headers) -> None:
        response = client.post("/v1/consultations", json={"patient_name": "   "}, headers=auth_headers)
        assert response.status_code == 422

    def test_save_before_transcript_is_not_found(self, client, auth_headers, consultation) -> None:
        response = client.put(
            f"/v1/consultations/{consultation['id']}/note",
            json={"subjective": "S", "objective": "O", "assessment": "A", "plan": "P"},
            headers=auth_headers,
        )
        assert response.status_code == 404

    def test_partial_note_is_invalid(self, client, auth_headers, consultation) -> None:
        cid = consultation["id"]
        client.post(f"/v1/consultations/{cid}/transcript", json={"text": "Knee pain."}, headers=auth_headers)

        assert client.put(f"/v1/consultations/{cid}/note", json={}, headers=auth_headers).status_code == 422
        response = client.put(f"/v1/consultations/{cid}/note", json={"plan": "Rest."}, headers=auth_headers)
        assert response.status_code == 422

        note = client.get(f"/v1/consultations/{cid}/note", headers=auth_headers).json()
        assert note["subjective"] == "Knee pain."
        assert note["is_reviewed"] is False


class TestOwnership:
    def test_other_practitioner_gets_not_found(
        self, client, consultation, make_auth_headers, other_practitioner
    ) -> None:
        other_headers = make_auth_headers(other_practitioner)
        cid = consultation["id"]

        assert client.get(f"/v1/consultations/{cid}", headers=other_headers).status_code == 404
        assert client.get("/v1/consultations", headers=other_headers).json() == []
        response = client.post(f"/v1/consultations/{cid}/transcript", json={"text": "x"}, headers=other_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_dashboard_counts(self, client, auth_headers, consultation) -> None:
        second = client.post("/v1/consultations", json={"patient_name": "John Doe"}, headers=auth_headers).json()
        client.post(f"/v1/consultations/{second['id']}/cancel", headers=auth_headers)

        stats = client.get("/v1/dashboard", headers=auth_headers).json()
        assert stats == {"total": 2, "in_progress": 1, "completed": 0, "cancelled": 1}


class TestProfile:
    def test_profile_created_from_token(self, client, auth_headers, practitioner) -> None:
        profile = client.get("/v1/profile", headers=auth_headers).json()
        assert profile["user_id"] == str(practitioner.user_id)
        assert profile["full_name"] == practitioner.full_name

    def test_profile_update(self, client, auth_headers) -> None:
        updated = client.patch(
            "/v1/profile",
            json={"specialty": "General Practice", "medical_license": "GMC-123"},
            headers=auth_headers,
        ).json()
        assert updated["specialty"] == "General Practice"
        assert updated["medical_license"] == "GMC-123"


class TestNoteGeneration:
    def test_generate_from_transcript(self, client, auth_headers) -> None:
        response = client.post(
            "/v1/notes/generate",
            json={"transcript": "Patient: headache since Monday."},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["subjective"] == "Patient: headache since Monday."

    def test_empty_transcript_is_rejected(self, client, auth_headers) -> None:
        response = client.post("/v1/notes/generate", json={"transcript": ""}, headers=auth_headers)
        assert response.status_code == 422


class FailingCommitSession(Session):
    def commit(self) -> None:
        raise OperationalError("COMMIT", {}, Exception("database is locked"))


class TestDatabaseFailure:
    def test_failed_commit_is_service_unavailable(self, client, auth_headers, consultation, engine) -> None:
        from consult_scribe import main

        failing_factory = sessionmaker(bind=engine, class_=FailingCommitSession, expire_on_commit=False)

        def failing_get_db():
            db = failing_factory()
            try:
                yield db
            finally:
                db.close()

        working_get_db = main.app.dependency_overrides[get_db]
        main.app.dependency_overrides[get_db] = failing_get_db
        response = client.post(f"/v1/consultations/{consultation['id']}/cancel", headers=auth_headers)
        main.app.dependency_overrides[get_db] = working_get_db

        assert response.status_code == 503
        body = response.json()
        assert body["error"] == "persistence_error"
        assert body["message"] == "Failed to update consultation"
        assert "request_id" in body

        detail = client.get(f"/v1/consultations/{consultation['id']}", headers=auth_headers).json()
        assert detail["consultation"]["status"] == "in_progress"

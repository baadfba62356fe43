"""Tests for the HTTP entry points."""

import asyncio
import base64
import importlib

import pytest
from flask import Request
from unittest.mock import AsyncMock, MagicMock, patch

from config.errors import DomuxError, ErrorCode, FinalizationError
from models.computo import GenerationResult
from pipeline.finalization import FinalizationOutcome, FinalizationStatus


@pytest.fixture(scope="module")
def main():
    with patch("firebase_admin.initialize_app"):
        return importlib.import_module("main")


@pytest.fixture
def session_doc(sample_session):
    return sample_session.to_firestore_dict()


@pytest.fixture
def api(main, fake_firestore, session_doc):
    """Patch auth and Firestore; returns a `call(endpoint, body)` helper."""
    fake_firestore.get_session.return_value = session_doc
    auth = MagicMock()
    auth.verify_id_token.return_value = {"uid": "user-1"}

    with patch.object(main, "FirestoreService", return_value=fake_firestore), \
            patch.object(main, "auth", auth):

        def call(endpoint, body, token="good-token", method="POST"):
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            req = Request.from_values(method=method, json=body, headers=headers)
            response = getattr(main, endpoint)(req)
            return response.status_code, response.get_json(silent=True)

        yield call


class TestStatusMapping:

    @pytest.mark.parametrize("code,status", [
        (ErrorCode.VALIDATION_ERROR, 400),
        (ErrorCode.IMAGE_TOO_LARGE, 400),
        (ErrorCode.UNAUTHORIZED, 403),
        (ErrorCode.SESSION_NOT_FOUND, 404),
        (ErrorCode.OPERATION_TIMEOUT, 504),
        (ErrorCode.LLM_ERROR, 500),
    ])
    def test_codes(self, main, code, status):
        assert main.status_for_error(DomuxError(code=code, message="x")) == status

    def test_finalization_uses_cause(self, main):
        error = FinalizationError("Save failed", "s", "upload_pdf", ErrorCode.OPERATION_TIMEOUT)
        assert main.status_for_error(error) == 504


class TestParseImage:

    def test_data_url(self, main):
        image = main.parse_image({"dataUrl": "data:image/png;base64,UE5H", "name": "a.png"})

        assert image.content == b"PNG"
        assert image.mime_type == "image/png"
        assert image.name == "a.png"

    def test_absent(self, main):
        assert main.parse_image(None) is None

    @pytest.mark.parametrize("payload", [{"base64": "***"}, {"base64": 12}, "not-an-object"])
    def test_invalid(self, main, payload):
        with pytest.raises(DomuxError) as exc_info:
            main.parse_image(payload)
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


class TestAuth:

    def test_missing_token(self, api):
        status, body = api("get_session", {"sessionId": "sess-123"}, token=None)

        assert status == 403
        assert body["error"]["code"] == ErrorCode.UNAUTHORIZED

    def test_rejected_token(self, api, main):
        main.auth.verify_id_token.side_effect = ValueError("expired")

        status, body = api("get_session", {"sessionId": "sess-123"})

        assert status == 403

    def test_disabled_user(self, api, fake_firestore):
        fake_firestore.get_user.return_value = {"disabled": True}

        status, body = api("get_session", {"sessionId": "sess-123"})

        assert status == 403
        assert body["error"]["code"] == ErrorCode.USER_DISABLED

    def test_options_preflight(self, api):
        status, _ = api("get_session", None, method="OPTIONS")
        assert status == 204


class TestSessionEndpoints:

    def test_create(self, api, fake_firestore):
        status, body = api("create_session", {"projectName": "Bagno", "projectType": "public_works"})

        assert status == 200
        assert body["data"]["session"]["id"] == "sess-new"
        assert body["data"]["session"]["userId"] == "user-1"
        assert fake_firestore.create_session.call_args.kwargs["project_type"] == "public_works"

    def test_create_missing_name(self, api):
        status, body = api("create_session", {})

        assert status == 400
        assert body["success"] is False

    def test_get(self, api):
        status, body = api("get_session", {"sessionId": "sess-123"})

        assert status == 200
        assert body["data"]["session"]["context"]["location"] == "Roma"

    def test_get_other_owner(self, api, fake_firestore, session_doc):
        fake_firestore.get_session.return_value = {**session_doc, "userId": "user-2"}

        status, _ = api("get_session", {"sessionId": "sess-123"})

        assert status == 403

    def test_get_missing(self, api, fake_firestore):
        fake_firestore.get_session.return_value = None

        status, body = api("get_session", {"sessionId": "nope"})

        assert status == 404
        assert body["error"]["code"] == ErrorCode.SESSION_NOT_FOUND

    def test_update_cannot_close(self, api, fake_firestore):
        status, _ = api("update_session", {
            "sessionId": "sess-123",
            "patch": {"status": "closed", "generatedProjectId": "p"}
        })

        assert status == 400
        fake_firestore.update_session.assert_not_awaited()

    def test_update_context(self, api, fake_firestore):
        status, _ = api("update_session_context", {"sessionId": "sess-123", "context": {"location": "Milano"}})

        assert status == 200
        fake_firestore.update_session.assert_awaited_once_with("sess-123", {"context.location": "Milano"})

    def test_update_context_unknown_field(self, api):
        status, body = api("update_session_context", {"sessionId": "sess-123", "context": {"budget": 1}})

        assert status == 400
        assert body["error"]["details"]["field"] == "context"


class TestGenerationEndpoints:

    def test_generate(self, api, main, sample_items):
        result = GenerationResult(computo_items=sample_items, report_text="Demolizione muro")

        with patch.object(main, "generate_for_session", AsyncMock(return_value=result)) as generate:
            status, body = api("generate_estimate", {"sessionId": "sess-123"})

        assert status == 200
        assert body["data"]["result"]["computoItems"][0]["importo"] == 100
        assert generate.call_args[0][1] is None

    def test_suggest_title(self, api, main, fixed_now):
        estimates = MagicMock()
        estimates.summarize_title = AsyncMock(return_value="Demolizione tramezzo")

        with patch.object(main, "EstimateService", return_value=estimates), \
                patch.object(main, "utc_now", return_value=fixed_now):
            status, body = api("suggest_project_title", {"sessionId": "sess-123", "computoItems": []})

        assert status == 200
        assert body["data"]["suggestedTitle"] == "Demolizione tramezzo Sig. Rossi - 14/03/2025"


class TestFinalizeEndpoint:

    def _body(self, sample_items, **extra):
        return {
            "sessionId": "sess-123",
            "computoItems": [item.model_dump() for item in sample_items],
            "reportText": "Demolizione muro",
            **extra
        }

    def test_completed(self, api, main, sample_items, sample_session):
        orchestrator = MagicMock()
        closed = sample_session.with_updates(status="closed", generated_project_id="proj-1")
        orchestrator.finalize = AsyncMock(return_value=FinalizationOutcome(
            status=FinalizationStatus.COMPLETED,
            session=closed,
            result=GenerationResult(computo_items=sample_items, pdf_bytes=b"%PDF", pdf_download_url="https://x"),
            project_id="proj-1"
        ))

        with patch.object(main, "FinalizationOrchestrator", return_value=orchestrator):
            status, body = api("finalize_project", self._body(sample_items, projectTitle="Bagno Rossi"))

        assert status == 200
        data = body["data"]
        assert data["status"] == "completed"
        assert data["projectId"] == "proj-1"
        assert base64.b64decode(data["pdfBase64"]) == b"%PDF"
        assert "pdfBytes" not in data["result"]

        request = orchestrator.finalize.call_args[0][0]
        assert request.items[0].importo == 100

    def test_title_answers(self, api, main, sample_items, sample_session):
        orchestrator = MagicMock()
        orchestrator.finalize = AsyncMock(return_value=FinalizationOutcome(
            status=FinalizationStatus.CANCELLED, session=sample_session
        ))

        with patch.object(main, "FinalizationOrchestrator", return_value=orchestrator):
            api("finalize_project", self._body(sample_items, cancelled=True))
            cancelled_request = orchestrator.finalize.call_args[0][0]
            api("finalize_project", self._body(sample_items))
            default_request = orchestrator.finalize.call_args[0][0]

        assert asyncio.run(cancelled_request.confirm_title("Suggested")) is None
        assert asyncio.run(default_request.confirm_title("Suggested")) == "Suggested"

    def test_cancelled(self, api, main, sample_items, sample_session):
        orchestrator = MagicMock()
        orchestrator.finalize = AsyncMock(return_value=FinalizationOutcome(
            status=FinalizationStatus.CANCELLED, session=sample_session
        ))

        with patch.object(main, "FinalizationOrchestrator", return_value=orchestrator):
            status, body = api("finalize_project", self._body(sample_items, cancelled=True))

        assert status == 200
        assert body["data"] == {"status": "cancelled"}

    def test_closed_session_rejected(self, api, main, fake_firestore, session_doc, sample_items):
        fake_firestore.get_session.return_value = {
            **session_doc, "status": "closed", "generatedProjectId": "proj-1"
        }

        with patch.object(main, "FinalizationOrchestrator") as orchestrator_cls:
            status, _ = api("finalize_project", self._body(sample_items))

        assert status == 400
        orchestrator_cls.assert_not_called()

    def test_failure_status_from_cause(self, api, main, sample_items):
        orchestrator = MagicMock()
        orchestrator.finalize = AsyncMock(side_effect=FinalizationError(
            "Save failed: The operation took too long. The session has been paused, "
            "you can resume it from the dashboard.",
            "sess-123", "upload_pdf", ErrorCode.OPERATION_TIMEOUT
        ))

        with patch.object(main, "FinalizationOrchestrator", return_value=orchestrator):
            status, body = api("finalize_project", self._body(sample_items))

        assert status == 504
        assert body["error"]["code"] == ErrorCode.FINALIZATION_FAILED
        assert body["error"]["details"]["recoverable"] is True

    def test_invalid_item_rejected_before_pipeline(self, api, main, sample_items):
        with patch.object(main, "FinalizationOrchestrator") as orchestrator_cls:
            status, body = api("finalize_project", {
                "sessionId": "sess-123",
                "computoItems": [{"id": "primo", "importo": 100}],
                "reportText": "Demolizione muro"
            })

        assert status == 400
        assert body["error"]["details"]["field"] == "computo_items"
        orchestrator_cls.assert_not_called()

    def test_report_must_be_text(self, api, main, sample_items):
        with patch.object(main, "FinalizationOrchestrator") as orchestrator_cls:
            status, _ = api("finalize_project", self._body(sample_items, reportText=["a"]))

        assert status == 400
        orchestrator_cls.assert_not_called()

    def test_draft_feeds_request(self, api, main, sample_items, sample_session):
        orchestrator = MagicMock()
        orchestrator.finalize = AsyncMock(return_value=FinalizationOutcome(
            status=FinalizationStatus.CANCELLED, session=sample_session
        ))
        sources = [{"web": {"uri": "https://prezzario.regione.lazio.it", "title": "Prezzario"}}]

        with patch.object(main, "FinalizationOrchestrator", return_value=orchestrator):
            api("finalize_project", self._body(sample_items, generatedImage="UFJF", sources=sources))

        request = orchestrator.finalize.call_args[0][0]
        assert request.report_text == "Demolizione muro"
        assert request.generated_image == "UFJF"
        assert request.sources[0].web.title == "Prezzario"


class TestApplyEditsEndpoint:

    def _result(self, sample_items, **overrides):
        return {
            "computoItems": [item.model_dump() for item in sample_items],
            "reportText": "Demolizione muro",
            "metadata": {
                "uuid": "uuid-1",
                "readableId": "CM-2025-03-14-AB12",
                "hash": "old",
                "timestamp": "2025-03-14T09:30:00+00:00",
                "generatorVersion": "Domux AI v1.5"
            },
            **overrides
        }

    def test_edits_applied(self, api, main, sample_items):
        edited = GenerationResult(computo_items=sample_items, report_text="Nuova", pdf_bytes=b"%PDF-2")

        with patch.object(main, "apply_edits", AsyncMock(return_value=edited)) as edits:
            status, body = api("apply_project_edits", {
                "sessionId": "sess-123",
                "result": self._result(sample_items),
                "computoItems": [{"id": 1, "importo": 150}],
                "reportText": "Nuova"
            })

        assert status == 200
        assert base64.b64decode(body["data"]["pdfBase64"]) == b"%PDF-2"
        args = edits.call_args[0]
        assert args[1][0].importo == 150
        assert args[2] == "Nuova"

    def test_foreign_image_url_never_rendered(self, api, sample_items):
        forged = self._result(sample_items, originalImageUrl="http://169.254.169.254/computeMetadata/v1/")

        with patch("services.pdf_generator._html_to_pdf") as convert:
            status, body = api("apply_project_edits", {
                "sessionId": "sess-123",
                "result": forged,
                "computoItems": [item.model_dump() for item in sample_items],
                "reportText": "Nuova"
            })

        assert status == 500
        assert body["error"]["code"] == ErrorCode.EDIT_FAILED
        convert.assert_not_called()

"""Pytest configuration and shared fixtures for Domux tests."""

import io
import os
import sys
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch


# ============================================================================
# Ensure local imports work (models/, services/, pipeline/, config/)
# ============================================================================
#
# The codebase uses absolute imports like `from models...` / `from services...`.
# This guarantees that `functions/` is importable as the top-level module root.
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


# ============================================================================
# Firebase Mocks
# ============================================================================

@pytest.fixture
def mock_firestore_client():
    """Mock Firestore client."""
    client = MagicMock()

    # Mock collection and document methods
    collection_mock = MagicMock()
    document_mock = MagicMock()

    # Set up chain: client.collection().document()
    client.collection.return_value = collection_mock
    collection_mock.document.return_value = document_mock
    document_mock.id = "generated-doc-id"

    # Mock async methods
    document_mock.get = AsyncMock(return_value=MagicMock(
        exists=True,
        id="sess-123",
        to_dict=lambda: {"userId": "user-1", "projectName": "Bagno", "status": "open"}
    ))
    document_mock.set = AsyncMock()
    document_mock.update = AsyncMock()

    return client


@pytest.fixture
def mock_firestore_service(mock_firestore_client):
    """Mock FirestoreService with mocked client."""
    from services.firestore_service import FirestoreService

    service = FirestoreService(db=mock_firestore_client)
    return service


@pytest.fixture
def fake_firestore():
    """FirestoreService stand-in recording every call."""
    service = MagicMock()
    service.get_user = AsyncMock(return_value={"email": "geom@studio.it", "companyName": "Studio Bianchi"})
    service.get_session = AsyncMock(return_value=None)
    service.create_session = AsyncMock(return_value="sess-new")
    service.update_session = AsyncMock()
    service.create_project = AsyncMock(return_value="proj-1")
    service.close_session = AsyncMock()
    service.pause_session = AsyncMock()
    service.watch_session = MagicMock()
    return service


@pytest.fixture
def fake_storage():
    """StorageService stand-in returning deterministic handles."""
    from services.storage_service import StoredObject

    service = MagicMock()

    async def _upload(path, data, content_type="application/octet-stream"):
        return StoredObject(
            bucket="domux-test.appspot.com",
            path=path,
            download_token="token-1",
            content_type=content_type,
            size=len(data)
        )

    async def _upload_base64(path, data, content_type="image/jpeg"):
        return await _upload(path, b"decoded", content_type)

    service.upload = AsyncMock(side_effect=_upload)
    service.upload_base64 = AsyncMock(side_effect=_upload_base64)
    service.get_durable_url = MagicMock(
        side_effect=lambda stored: f"https://storage.test/{stored.path}?token={stored.download_token}"
    )
    return service


# ============================================================================
# LLM Mocks
# ============================================================================

@pytest.fixture
def mock_llm_response():
    """Standard mock LLM response."""
    return {
        "content": "Rifacimento bagno",
        "tokens_used": 100
    }


@pytest.fixture
def mock_llm_json_response():
    """Mock LLM JSON response with a one-line estimate."""
    return {
        "content": {
            "computoItems": [
                {
                    "id": 1,
                    "codice_articolo": "LAZ-A03.001",
                    "descrizione": "Demolizione di tramezzi in laterizio",
                    "um": "m2",
                    "quantita": 2,
                    "prezzo_unitario": 50,
                    "importo": 100
                }
            ],
            "reportText": "Demolizione muro",
            "sources": [{"uri": "https://prezzario.regione.lazio.it", "title": "Prezzario Lazio"}]
        },
        "tokens_used": 150
    }


@pytest.fixture
def mock_chat_openai():
    """Mock ChatOpenAI client."""
    mock = AsyncMock()
    mock.ainvoke.return_value = MagicMock(
        content="Mock response content",
        response_metadata={"token_usage": {"total_tokens": 100}}
    )
    return mock


@pytest.fixture
def mock_llm_service(mock_chat_openai):
    """Mock LLMService."""
    from services.llm_service import LLMService

    with patch('services.llm_service.ChatOpenAI', return_value=mock_chat_openai):
        service = LLMService(api_key="test-api-key")
        service._client = mock_chat_openai
        return service


@pytest.fixture
def fake_estimate_service():
    """EstimateService stand-in."""
    service = MagicMock()
    service.summarize_title = AsyncMock(return_value="Demolizione tramezzo")
    service.generate_estimate = AsyncMock()
    service.generate_estimate_from_image = AsyncMock()
    return service


# ============================================================================
# Domain Fixtures
# ============================================================================

@pytest.fixture
def fixed_now():
    return datetime(2025, 3, 14, 9, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_items():
    from models.computo import ComputoItem

    return [
        ComputoItem(
            id=1,
            codice_articolo="LAZ-A03.001",
            descrizione="Demolizione di tramezzi in laterizio",
            um="m2",
            quantita=2,
            prezzo_unitario=50,
            importo=100
        )
    ]


@pytest.fixture
def sample_session():
    from models.session import ProjectSession

    return ProjectSession.model_validate({
        "id": "sess-123",
        "userId": "user-1",
        "projectName": "Nuovo progetto",
        "status": "open",
        "projectType": "public_works",
        "region": "Lazio",
        "context": {
            "descriptionItems": ["Demolizione tramezzo cucina", "Rifacimento intonaco"],
            "location": "Roma",
            "committente": {
                "nome": "Mario",
                "cognome": "Rossi",
                "codiceFiscale": "RSSMRA80A01H501U",
                "indirizzo": "Via Roma 1, Roma"
            }
        }
    })


@pytest.fixture
def sample_user():
    from models.user import UserProfile

    return UserProfile(uid="user-1", email="geom@studio.it", company_name="Studio Bianchi")


def make_jpeg_bytes(width: int, height: int, color=(200, 120, 40), fmt: str = "JPEG") -> bytes:
    """Encode a solid-color test image with Pillow."""
    from PIL import Image

    buffer = io.BytesIO()
    mode = "RGBA" if fmt == "PNG" else "RGB"
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def jpeg_factory():
    return make_jpeg_bytes

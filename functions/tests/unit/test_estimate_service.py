"""Unit tests for the AI estimate service."""

import base64

import pytest
from unittest.mock import AsyncMock, MagicMock

from config.errors import DomuxError, ErrorCode
from services.estimate_service import (
    EstimateService,
    parse_estimate_payload,
    pricing_instructions,
)


@pytest.fixture
def llm():
    service = MagicMock()
    service.generate_with_system_prompt = AsyncMock(
        return_value={"content": '  "Rifacimento   bagno"  ', "tokens_used": 12}
    )
    service.generate_json = AsyncMock()
    return service


@pytest.fixture
def image_client():
    client = MagicMock()
    client.images.edit = AsyncMock(return_value=MagicMock(data=[MagicMock(b64_json="UFJFVklFVw==")]))
    return client


@pytest.fixture
def estimate_service(llm, image_client):
    return EstimateService(llm_service=llm, image_client=image_client)


class TestPricingInstructions:

    def test_public_works_uses_region(self):
        assert "Lazio" in pricing_instructions("Roma", "public_works", "Lazio")

    def test_public_works_falls_back_to_location(self):
        assert "Roma" in pricing_instructions("Roma", "public_works")

    def test_private_lists_stores(self):
        text = pricing_instructions("Roma", "private_estimate", preferred_stores=["OBI", "Bricoman"])
        assert "OBI, Bricoman" in text

    def test_private_default_stores(self):
        assert "the main building-supply stores" in pricing_instructions("Roma", "private_estimate")

    def test_generic(self):
        assert "Italian market prices" in pricing_instructions("Roma")


class TestParsePayload:

    def test_parses_items_and_sources(self, mock_llm_json_response):
        result = parse_estimate_payload(mock_llm_json_response["content"])

        assert result.total_amount == 100
        assert result.report_text == "Demolizione muro"
        assert result.sources[0].web.uri == "https://prezzario.regione.lazio.it"

    def test_missing_ids_numbered(self):
        result = parse_estimate_payload({"computoItems": [{"importo": 1}, {"importo": 2}]})
        assert [item.id for item in result.computo_items] == [1, 2]

    def test_sources_without_uri_dropped(self):
        result = parse_estimate_payload({
            "computoItems": [{"importo": 1}],
            "sources": [{"title": "no uri"}, {"web": {"uri": "https://a.it"}}]
        })
        assert len(result.sources) == 1

    @pytest.mark.parametrize("payload", [{}, {"computoItems": []}, ["not", "a", "dict"]])
    def test_no_items(self, payload):
        with pytest.raises(DomuxError) as exc_info:
            parse_estimate_payload(payload)
        assert exc_info.value.code == ErrorCode.LLM_ERROR


class TestEstimateService:

    @pytest.mark.asyncio
    async def test_summarize_title_cleans_answer(self, estimate_service, sample_items):
        title = await estimate_service.summarize_title(sample_items, "Demolizione tramezzo")
        assert title == "Rifacimento bagno"

    @pytest.mark.asyncio
    async def test_summarize_title_blank_fallback(self, estimate_service, llm, sample_items):
        llm.generate_with_system_prompt.return_value = {"content": "  ", "tokens_used": 1}
        assert await estimate_service.summarize_title(sample_items, "x") == "Computo metrico"

    @pytest.mark.asyncio
    async def test_generate_estimate(self, estimate_service, llm, mock_llm_json_response):
        llm.generate_json.return_value = mock_llm_json_response

        result = await estimate_service.generate_estimate(
            "Demolizione tramezzo", "Roma", project_type="public_works", region="Lazio"
        )

        assert result.computo_items[0].codice_articolo == "LAZ-A03.001"
        system_prompt, user_message = llm.generate_json.call_args[0]
        assert "prezzario regionale" in system_prompt
        assert "Roma" in user_message

    @pytest.mark.asyncio
    async def test_generate_from_image_adds_preview(
        self, estimate_service, llm, image_client, mock_llm_json_response
    ):
        llm.generate_json.return_value = mock_llm_json_response
        photo = base64.b64encode(b"jpeg-bytes").decode()

        result = await estimate_service.generate_estimate_from_image("Rifacimento bagno", "Roma", photo)

        assert result.generated_image == "UFJFVklFVw=="
        assert llm.generate_json.call_args.kwargs["image_base64"] == photo
        edit_kwargs = image_client.images.edit.call_args.kwargs
        assert edit_kwargs["image"] == ("site.jpeg", b"jpeg-bytes", "image/jpeg")

    @pytest.mark.asyncio
    async def test_preview_failure(self, estimate_service, image_client):
        image_client.images.edit.side_effect = RuntimeError("content policy")

        with pytest.raises(DomuxError) as exc_info:
            await estimate_service.generate_preview_image("x", base64.b64encode(b"a").decode())

        assert exc_info.value.code == ErrorCode.IMAGE_GENERATION_FAILED

    @pytest.mark.asyncio
    async def test_preview_empty(self, estimate_service, image_client):
        image_client.images.edit.return_value = MagicMock(data=[MagicMock(b64_json=None)])

        with pytest.raises(DomuxError):
            await estimate_service.generate_preview_image("x", base64.b64encode(b"a").decode())

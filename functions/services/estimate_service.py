"""AI estimate generation for Domux.

Drafts computo metrico line items and the narrative report from a work
description (optionally with a site photo), suggests project titles and
renders the renovation preview image.
"""

import base64
from typing import Any, Dict, List, Optional

import structlog
from openai import AsyncOpenAI

from config.settings import settings
from config.errors import DomuxError, ErrorCode
from models.computo import ComputoItem, GenerationResult, GroundingSource
from models.session import ProjectType
from services.llm_service import LLMService

logger = structlog.get_logger()

DEFAULT_STORES_LABEL = "the main building-supply stores"
MAX_TITLE_LENGTH = 80


ESTIMATE_SYSTEM_PROMPT = """You are an Italian quantity surveyor (geometra) drafting a computo metrico estimativo.

Return a JSON object with these keys:
- "computoItems": list of line items, each with
  "id" (1-based integer), "codice_articolo" (price list article or product code),
  "descrizione" (work description in Italian), "um" (unit of measure, e.g. m2, m, cad),
  "quantita" (number), "prezzo_unitario" (EUR, number), "importo" (quantita x prezzo_unitario, EUR)
- "reportText": a technical report in Italian describing the works, their order and assumptions
- "sources": list of {{"uri": ..., "title": ...}} for the price sources you relied on

{pricing_instructions}"""


PUBLIC_WORKS_PRICING = """Price every item from the official regional price list (prezzario regionale
dei lavori pubblici) of {region}. Use the article codes of that price list."""

PRIVATE_ESTIMATE_PRICING = """Price every item with current retail prices and product codes from
{stores}. Include labour as separate items where needed."""

GENERIC_PRICING = """Use realistic current Italian market prices for the work location."""

IMAGE_INSTRUCTIONS = """A photo of the current state of the site is attached. Base quantities on what is
visible in the photo and state in the report which measurements are estimated from it."""

TITLE_SYSTEM_PROMPT = """You write short Italian titles for construction estimates.
Answer with the title only: at most 6 words, no quotes, no customer name, no date."""

PREVIEW_PROMPT = """Photorealistic render of the same room after the following renovation works,
keeping the same camera angle and room geometry: {description}"""


def pricing_instructions(
    location: str,
    project_type: Optional[str] = None,
    region: Optional[str] = None,
    preferred_stores: Optional[List[str]] = None
) -> str:
    """Pick the pricing source instructions for a project type."""
    if project_type == ProjectType.PUBLIC_WORKS.value:
        return PUBLIC_WORKS_PRICING.format(region=region or location)
    if project_type == ProjectType.PRIVATE_ESTIMATE.value:
        stores = ", ".join(preferred_stores) if preferred_stores else DEFAULT_STORES_LABEL
        return PRIVATE_ESTIMATE_PRICING.format(stores=stores)
    return GENERIC_PRICING


def parse_estimate_payload(payload: Dict[str, Any]) -> GenerationResult:
    """Build a GenerationResult from the model's JSON answer.

    Raises:
        DomuxError: If the payload has no usable line items.
    """
    if not isinstance(payload, dict):
        payload = {}
    raw_items = payload.get("computoItems") or payload.get("computo_items") or []
    if not isinstance(raw_items, list) or not raw_items:
        raise DomuxError(
            code=ErrorCode.LLM_ERROR,
            message="The AI response contains no estimate items",
            details={"keys": sorted(payload.keys())}
        )

    items = []
    for position, raw in enumerate(raw_items, start=1):
        data = dict(raw)
        data.setdefault("id", position)
        items.append(ComputoItem.model_validate(data))

    sources = []
    for raw in payload.get("sources") or []:
        web = raw.get("web", raw) if isinstance(raw, dict) else None
        if web and web.get("uri"):
            sources.append(GroundingSource.model_validate({"web": web}))

    return GenerationResult(
        computo_items=items,
        report_text=str(payload.get("reportText") or payload.get("report_text") or ""),
        sources=sources
    )


class EstimateService:
    """AI capability used by generation and finalization."""

    def __init__(
        self,
        llm_service: Optional[LLMService] = None,
        image_client: Optional[AsyncOpenAI] = None
    ):
        self.llm = llm_service or LLMService()
        self._image_client = image_client

    @property
    def image_client(self) -> AsyncOpenAI:
        if self._image_client is None:
            self._image_client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._image_client

    async def summarize_title(self, items: List[ComputoItem], description: str) -> str:
        """Short descriptive title for a project, from its items and description."""
        lines = "\n".join(f"- {item.descrizione}" for item in items[:20])
        user_message = f"Work description: {description}\n\nEstimate items:\n{lines}"

        result = await self.llm.generate_with_system_prompt(TITLE_SYSTEM_PROMPT, user_message)
        title = result["content"].strip().strip('"').strip()
        title = " ".join(title.split())[:MAX_TITLE_LENGTH]

        if not title:
            title = "Computo metrico"
        logger.info("title_summarized", title=title)
        return title

    async def generate_estimate(
        self,
        description: str,
        location: str,
        project_type: Optional[str] = None,
        region: Optional[str] = None,
        preferred_stores: Optional[List[str]] = None
    ) -> GenerationResult:
        """Draft an estimate from a text description."""
        system_prompt = ESTIMATE_SYSTEM_PROMPT.format(
            pricing_instructions=pricing_instructions(location, project_type, region, preferred_stores)
        )
        user_message = f"Work location: {location}\nWorks to estimate: {description}"

        result = await self.llm.generate_json(system_prompt, user_message)
        generation = parse_estimate_payload(result["content"])

        logger.info(
            "estimate_generated",
            items=len(generation.computo_items),
            total=generation.total_amount,
            project_type=project_type,
            tokens_used=result["tokens_used"]
        )
        return generation

    async def generate_estimate_from_image(
        self,
        description: str,
        location: str,
        image_base64: str,
        mime_type: str = "image/jpeg",
        project_type: Optional[str] = None,
        region: Optional[str] = None,
        preferred_stores: Optional[List[str]] = None
    ) -> GenerationResult:
        """Draft an estimate from a description and a site photo.

        Also renders the renovation preview, returned as `generated_image`.
        """
        system_prompt = ESTIMATE_SYSTEM_PROMPT.format(
            pricing_instructions=pricing_instructions(location, project_type, region, preferred_stores)
        ) + "\n\n" + IMAGE_INSTRUCTIONS
        user_message = f"Work location: {location}\nWorks to estimate: {description}"

        result = await self.llm.generate_json(
            system_prompt,
            user_message,
            image_base64=image_base64,
            mime_type=mime_type
        )
        generation = parse_estimate_payload(result["content"])

        preview = await self.generate_preview_image(description, image_base64, mime_type)

        logger.info(
            "estimate_generated_from_image",
            items=len(generation.computo_items),
            total=generation.total_amount,
            project_type=project_type,
            has_preview=bool(preview)
        )
        return generation.model_copy(update={"generated_image": preview})

    async def generate_preview_image(
        self,
        description: str,
        image_base64: str,
        mime_type: str = "image/jpeg"
    ) -> str:
        """Image-to-image renovation preview, as a base64 payload.

        Raises:
            DomuxError: IMAGE_GENERATION_FAILED if the image API fails.
        """
        extension = mime_type.split("/")[-1]
        try:
            response = await self.image_client.images.edit(
                model=settings.image_model,
                image=(f"site.{extension}", base64.b64decode(image_base64), mime_type),
                prompt=PREVIEW_PROMPT.format(description=description)
            )
            preview = response.data[0].b64_json
        except Exception as e:
            logger.error("preview_generation_failed", model=settings.image_model, error=str(e))
            raise DomuxError(
                code=ErrorCode.IMAGE_GENERATION_FAILED,
                message=f"Preview image generation failed: {str(e)}",
                details={"model": settings.image_model}
            )

        if not preview:
            raise DomuxError(
                code=ErrorCode.IMAGE_GENERATION_FAILED,
                message="Preview image generation returned no image",
                details={"model": settings.image_model}
            )
        return preview

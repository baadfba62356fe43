"""Estimate generation for a project session.

Validates the session context and asks the AI capability for the first
draft. Photo-based runs also produce the renovation preview.
"""

from typing import Optional

import structlog

from config.errors import DomuxError, ErrorCode, ServiceError, ValidationError
from models.computo import GenerationResult, find_amount_drift
from models.session import ProjectSession
from services.estimate_service import EstimateService
from services.image_normalizer import NormalizedImage

logger = structlog.get_logger()

GENERATION_FAILED_PREFIX = "Generation failed: "


def validate_generation_input(session: ProjectSession) -> None:
    """Raise ValidationError when the session cannot be sent for generation."""
    if not session.context.location.strip():
        raise ValidationError("Please specify the work location.", field="context.location")
    if not session.context.full_description:
        raise ValidationError(
            "Please add at least one work description.",
            field="context.descriptionItems"
        )


async def generate_for_session(
    session: ProjectSession,
    image: Optional[NormalizedImage] = None,
    estimate_service: Optional[EstimateService] = None
) -> GenerationResult:
    """Produce the initial draft for a session.

    Raises:
        ValidationError: Location or descriptions missing (no AI call made).
        ServiceError: The AI call failed; message starts with "Generation failed: ".
    """
    validate_generation_input(session)
    service = estimate_service or EstimateService()
    context = session.context

    logger.info(
        "generation_started",
        session_id=session.id,
        project_type=session.project_type,
        has_image=image is not None
    )

    try:
        if image is not None:
            result = await service.generate_estimate_from_image(
                context.full_description,
                context.location,
                image.base64,
                mime_type=image.mime_type,
                project_type=session.project_type,
                region=session.region,
                preferred_stores=session.preferred_stores
            )
        else:
            result = await service.generate_estimate(
                context.full_description,
                context.location,
                project_type=session.project_type,
                region=session.region,
                preferred_stores=session.preferred_stores
            )
    except Exception as e:
        message = e.message if isinstance(e, DomuxError) else str(e)
        logger.error("generation_failed", session_id=session.id, error=message)
        raise ServiceError(
            code=ErrorCode.GENERATION_FAILED,
            message=f"{GENERATION_FAILED_PREFIX}{message}",
            stage="generation",
            details={
                "session_id": session.id,
                "cause_code": e.code if isinstance(e, DomuxError) else None
            }
        ) from e

    drifted = find_amount_drift(result.computo_items)
    if drifted:
        logger.warning("amount_drift", session_id=session.id, item_ids=drifted)

    logger.info(
        "generation_completed",
        session_id=session.id,
        items=len(result.computo_items),
        total=result.total_amount
    )
    return result

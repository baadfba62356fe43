"""Cloud Function entry points for Domux.

Provides HTTP endpoints for:
- Project session CRUD (create, read, partial updates)
- Estimate generation (text or site photo)
- Project title suggestion
- Project finalization (certified PDF, uploads, project record)
- Re-editing a finalized result
- Site photo normalization
"""

import asyncio
import base64
import binascii
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from datetime import datetime, date

import structlog
from firebase_functions import https_fn, options
from firebase_admin import initialize_app, auth
from pydantic import BaseModel, ValidationError as PydanticValidationError

from config.settings import settings
from config.errors import DomuxError, ErrorCode, FinalizationError, ValidationError
from models.computo import ComputoItem, GenerationResult, GroundingSource
from models.draft import EstimateDraft
from models.session import ProjectSession, SessionContext, SessionContextPatch, SessionPatch, SessionStatus
from models.user import UserProfile
from pipeline.finalization import (
    FinalizationOrchestrator,
    FinalizationRequest,
    apply_edits,
    compose_project_title,
    utc_now,
)
from pipeline.generation import generate_for_session
from services.estimate_service import EstimateService
from services.firestore_service import FirestoreService
from services.image_normalizer import ImageFile, normalize_image_async
from services.session_sync import SessionSynchronizer
from utils.pipeline_logger import configure_logging

# Initialize Firebase Admin SDK
try:
    initialize_app(options={"storageBucket": settings.storage_bucket} if settings.storage_bucket else None)
except ValueError:
    # Already initialized
    pass

configure_logging(settings.log_level_value)
logger = structlog.get_logger()

Handler = Callable[[https_fn.Request, Dict[str, Any]], Awaitable[Dict[str, Any]]]

# ============================================================================
# Helper Functions
# ============================================================================


def success_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """Build success response."""
    return {"success": True, "data": data}


def error_response(code: str, message: str, details: Dict[str, Any] = None) -> Dict[str, Any]:
    """Build error response."""
    return {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "details": details or {}
        }
    }


def get_request_json(req: https_fn.Request) -> Dict[str, Any]:
    """Extract JSON from request body.

    Args:
        req: HTTP request object.

    Returns:
        Parsed JSON data.

    Raises:
        ValidationError: If JSON is invalid.
    """
    try:
        return req.get_json(force=True) or {}
    except Exception as e:
        raise ValidationError(
            message=f"Invalid JSON in request body: {str(e)}"
        )


def require_field(data: Dict[str, Any], name: str) -> Any:
    value = data.get(name)
    if value in (None, ""):
        raise ValidationError(f"Missing {name} in request", field=name)
    return value


def parse_model(model_cls, payload: Any, field: str):
    """Validate a request fragment into a model, as a 400-class error."""
    try:
        return model_cls.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {field}",
            field=field,
            details={"errors": e.errors(include_url=False)}
        )


def parse_items(payload: Any) -> list:
    if not isinstance(payload, list):
        raise ValidationError("computoItems must be a list", field="computoItems")
    return [parse_model(ComputoItem, item, "computoItems") for item in payload]


def parse_image(payload: Optional[Dict[str, Any]], field: str = "image") -> Optional[ImageFile]:
    """Decode an uploaded image: {base64 | dataUrl, name, mimeType, lastModified}."""
    if not payload:
        return None
    if not isinstance(payload, dict):
        raise ValidationError(f"{field} must be an object", field=field)
    raw = payload.get("base64") or payload.get("dataUrl") or ""
    if not isinstance(raw, str):
        raise ValidationError(f"{field} must carry a base64 string", field=field)
    mime_type = payload.get("mimeType") or "image/jpeg"
    if raw.startswith("data:"):
        header, raw = raw.split(",", 1)
        mime_type = header[5:].split(";", 1)[0] or mime_type
    try:
        content = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"{field} is not valid base64", field=field)
    if not content:
        raise ValidationError(f"{field} is empty", field=field)
    return ImageFile(
        name=payload.get("name") or "image",
        content=content,
        mime_type=mime_type,
        last_modified=int(payload.get("lastModified") or time.time() * 1000),
    )


def build_draft(data: Dict[str, Any], draft: EstimateDraft) -> EstimateDraft:
    """Apply the edited items and report text from a request to `draft`."""
    draft.replace_items(require_field(data, "computoItems"))
    draft.set_report_text(data.get("reportText") or "")
    return draft


def session_response(session: ProjectSession) -> Dict[str, Any]:
    return session.model_dump(by_alias=True, exclude_none=True)


async def authenticate(req: https_fn.Request, data: Dict[str, Any], firestore_service: FirestoreService) -> UserProfile:
    """Resolve the acting user.

    Verifies the Firebase ID token from the Authorization header. In emulator
    mode a `userId` in the body is accepted instead.

    Raises:
        DomuxError: UNAUTHORIZED or USER_DISABLED.
    """
    header = req.headers.get("Authorization") or req.headers.get("authorization") or ""
    uid = None

    if header.startswith("Bearer "):
        try:
            uid = auth.verify_id_token(header[7:])["uid"]
        except Exception as e:
            logger.warning("auth_token_rejected", error=str(e))
            raise DomuxError(
                code=ErrorCode.UNAUTHORIZED,
                message="Invalid or expired authentication token"
            )
    elif settings.is_emulator_mode and data.get("userId"):
        uid = data["userId"]

    if not uid:
        raise DomuxError(
            code=ErrorCode.UNAUTHORIZED,
            message="Authentication required"
        )

    user = UserProfile.from_firestore(uid, await firestore_service.get_user(uid))
    if user.disabled:
        raise DomuxError(
            code=ErrorCode.USER_DISABLED,
            message="This account has been disabled",
            details={"uid": uid}
        )
    return user


NOT_FOUND_CODES = {ErrorCode.SESSION_NOT_FOUND, ErrorCode.PROJECT_NOT_FOUND}
FORBIDDEN_CODES = {ErrorCode.UNAUTHORIZED, ErrorCode.USER_DISABLED}
BAD_REQUEST_CODES = {
    ErrorCode.VALIDATION_ERROR,
    ErrorCode.MISSING_FIELD,
    ErrorCode.INVALID_FIELD,
    ErrorCode.IMAGE_TOO_LARGE,
    ErrorCode.IMAGE_UNREADABLE,
    ErrorCode.IMAGE_DECODE_FAILED,
    ErrorCode.IMAGE_CONTEXT_UNAVAILABLE,
    ErrorCode.IMAGE_ENCODE_FAILED,
}


def status_for_error(error: DomuxError) -> int:
    """HTTP status for a DomuxError: 400, 403, 404, 504 or 500."""
    code = error.code
    if isinstance(error, FinalizationError):
        code = error.cause_code or code
    if code in BAD_REQUEST_CODES:
        return 400
    if code in FORBIDDEN_CODES:
        return 403
    if code in NOT_FOUND_CODES:
        return 404
    if code == ErrorCode.OPERATION_TIMEOUT:
        return 504
    return 500


def _handle(req: https_fn.Request, endpoint: str, handler: Handler) -> https_fn.Response:
    """Run an async endpoint handler with the shared error envelope."""
    if req.method == "OPTIONS":
        return _cors_response()

    try:
        data = get_request_json(req)
        result = asyncio.run(handler(req, data))
        return _json_response(success_response(result))

    except DomuxError as e:
        status = status_for_error(e)
        if status >= 500:
            logger.error(f"{endpoint}_error", code=e.code, error=e.message)
        else:
            logger.warning(f"{endpoint}_rejected", code=e.code, error=e.message)
        return _json_response(
            error_response(e.code, e.message, e.details),
            status=status
        )
    except Exception as e:
        logger.exception(f"{endpoint}_exception", error=str(e))
        return _json_response(
            error_response(
                ErrorCode.INTERNAL_ERROR,
                f"Unexpected error: {str(e)}"
            ),
            status=500
        )


# ============================================================================
# Session Endpoints
# ============================================================================


SESSION_ENDPOINT_CONFIG = {
    "timeout_sec": 30,
    "memory": options.MemoryOption.MB_256,
    "region": "europe-west1"
}


@https_fn.on_request(**SESSION_ENDPOINT_CONFIG)
def create_session(req: https_fn.Request) -> https_fn.Response:
    """Create an open project session.

    Request body:
    {
        "projectName": "Bagno via Roma",
        "projectType": "private_estimate",    // optional
        "region": "Lazio",                    // optional
        "preferredStores": ["Leroy Merlin"],  // optional
        "context": {...},                     // optional
        "parentId": "sess-xxx"                // optional
    }
    """
    return _handle(req, "create_session", _create_session_async)


async def _create_session_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    firestore_service = FirestoreService()
    user = await authenticate(req, data, firestore_service)
    fields = parse_model(SessionPatch, {
        key: data[key] for key in ("projectType", "region", "preferredStores") if key in data
    }, "session")
    context = parse_model(SessionContext, data.get("context") or {}, "context")

    session = await SessionSynchronizer(firestore_service).create_session(
        user_id=user.uid,
        project_name=require_field(data, "projectName"),
        project_type=fields.project_type,
        region=fields.region,
        preferred_stores=fields.preferred_stores,
        context=context,
        parent_id=data.get("parentId")
    )
    return {"session": session_response(session)}


@https_fn.on_request(**SESSION_ENDPOINT_CONFIG)
def get_session(req: https_fn.Request) -> https_fn.Response:
    """Read a session the caller owns. Body: {"sessionId": "..."}"""
    return _handle(req, "get_session", _get_session_async)


async def _get_session_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    firestore_service = FirestoreService()
    user = await authenticate(req, data, firestore_service)
    session = await SessionSynchronizer(firestore_service).get_session(
        require_field(data, "sessionId"), user.uid
    )
    return {"session": session_response(session)}


@https_fn.on_request(**SESSION_ENDPOINT_CONFIG)
def update_session(req: https_fn.Request) -> https_fn.Response:
    """Patch session fields.

    Request body:
    {
        "sessionId": "sess-xxx",
        "patch": {"projectName": "...", "status": "open", "preferredStores": [...]}
    }

    Closing a session is reserved to finalization.
    """
    return _handle(req, "update_session", _update_session_async)


async def _update_session_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    firestore_service = FirestoreService()
    user = await authenticate(req, data, firestore_service)
    sync = SessionSynchronizer(firestore_service)
    session_id = require_field(data, "sessionId")

    patch = parse_model(SessionPatch, require_field(data, "patch"), "patch")
    if patch.status == SessionStatus.CLOSED.value or patch.generated_project_id:
        raise ValidationError("Sessions can only be closed by finalization", field="patch.status")

    await sync.get_session(session_id, user.uid)
    await sync.patch_session(session_id, patch)
    return {"session": session_response(await sync.get_session(session_id, user.uid))}


@https_fn.on_request(**SESSION_ENDPOINT_CONFIG)
def update_session_context(req: https_fn.Request) -> https_fn.Response:
    """Patch context fields.

    Request body:
    {
        "sessionId": "sess-xxx",
        "context": {"descriptionItems": [...], "location": "...", "committente": {...}}
    }
    """
    return _handle(req, "update_session_context", _update_session_context_async)


async def _update_session_context_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    firestore_service = FirestoreService()
    user = await authenticate(req, data, firestore_service)
    sync = SessionSynchronizer(firestore_service)
    session_id = require_field(data, "sessionId")

    patch = parse_model(SessionContextPatch, require_field(data, "context"), "context")

    await sync.get_session(session_id, user.uid)
    await sync.patch_context(session_id, patch)
    return {"session": session_response(await sync.get_session(session_id, user.uid))}


# ============================================================================
# Generation Endpoints
# ============================================================================


@https_fn.on_request(
    timeout_sec=300,
    memory=options.MemoryOption.GB_1,
    region="europe-west1"
)
def generate_estimate(req: https_fn.Request) -> https_fn.Response:
    """Generate the first estimate draft for a session.

    Request body:
    {
        "sessionId": "sess-xxx",
        "image": {"base64": "...", "name": "foto.jpg", "mimeType": "image/jpeg"}  // optional
    }

    Response:
    {
        "success": true,
        "data": {"result": {"computoItems": [...], "reportText": "...", "generatedImage": "...", "sources": [...]}}
    }
    """
    return _handle(req, "generate_estimate", _generate_estimate_async)


async def _generate_estimate_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    firestore_service = FirestoreService()
    user = await authenticate(req, data, firestore_service)
    session = await SessionSynchronizer(firestore_service).get_session(
        require_field(data, "sessionId"), user.uid
    )

    image = parse_image(data.get("image"))
    normalized = await normalize_image_async(image) if image else None

    result = await generate_for_session(session, normalized)
    return {"result": result.to_response_dict()}


@https_fn.on_request(
    timeout_sec=60,
    memory=options.MemoryOption.MB_512,
    region="europe-west1"
)
def suggest_project_title(req: https_fn.Request) -> https_fn.Response:
    """Suggest "<summary> Sig. <Cognome> - <DD/MM/YYYY>" for a session.

    Request body: {"sessionId": "sess-xxx", "computoItems": [...]}
    """
    return _handle(req, "suggest_project_title", _suggest_project_title_async)


async def _suggest_project_title_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    firestore_service = FirestoreService()
    user = await authenticate(req, data, firestore_service)
    session = await SessionSynchronizer(firestore_service).get_session(
        require_field(data, "sessionId"), user.uid
    )
    if not session.customer_surname:
        raise ValidationError("The customer's surname is required.", field="committente.cognome")

    items = parse_items(data.get("computoItems") or [])
    summary = await EstimateService().summarize_title(items, session.context.full_description)
    return {
        "summary": summary,
        "suggestedTitle": compose_project_title(summary, session.customer_surname, utc_now().date())
    }


# ============================================================================
# Finalization Endpoints
# ============================================================================


@https_fn.on_request(
    timeout_sec=540,
    memory=options.MemoryOption.GB_1,
    region="europe-west1"
)
def finalize_project(req: https_fn.Request) -> https_fn.Response:
    """Certify, store and persist an edited estimate.

    Request body:
    {
        "sessionId": "sess-xxx",
        "computoItems": [...],
        "reportText": "...",
        "projectTitle": "Rifacimento bagno Sig. Rossi - 01/02/2025",  // optional, absent = accept suggestion
        "cancelled": false,                                           // true = user dismissed the title prompt
        "originalImage": {"base64": "...", "mimeType": "image/jpeg"}, // optional
        "generatedImage": "<base64>",                                 // optional
        "sources": [...]                                              // optional
    }

    Response:
    {
        "success": true,
        "data": {
            "status": "completed",
            "projectId": "...",
            "session": {...},
            "result": {... "pdfDownloadUrl": "...", "metadata": {...}},
            "pdfBase64": "..."
        }
    }
    """
    return _handle(req, "finalize_project", _finalize_project_async)


async def _finalize_project_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    firestore_service = FirestoreService()
    user = await authenticate(req, data, firestore_service)
    session = await SessionSynchronizer(firestore_service).get_session(
        require_field(data, "sessionId"), user.uid
    )
    if session.is_closed:
        raise ValidationError("This session has already been finalized", field="sessionId")

    cancelled = bool(data.get("cancelled"))
    project_title = data.get("projectTitle")

    async def confirm_title(suggested: str) -> Optional[str]:
        if cancelled:
            return None
        if isinstance(project_title, str):
            return project_title
        return suggested

    draft = build_draft(data, EstimateDraft(
        description_items=list(session.context.description_items),
        generated_image=data.get("generatedImage") or None,
        sources=[parse_model(GroundingSource, s, "sources") for s in data.get("sources") or []]
    ))

    request = FinalizationRequest(
        session=session,
        items=draft.computo_items,
        report_text=draft.report_text,
        user=user,
        confirm_title=confirm_title,
        original_image=parse_image(data.get("originalImage"), "originalImage"),
        generated_image=draft.generated_image,
        sources=draft.sources
    )

    outcome = await FinalizationOrchestrator(firestore_service=firestore_service).finalize(request)
    if outcome.cancelled:
        return {"status": outcome.status.value}

    return {
        "status": outcome.status.value,
        "projectId": outcome.project_id,
        "session": session_response(outcome.session),
        "result": outcome.result.to_response_dict(),
        "pdfBase64": base64.b64encode(outcome.result.pdf_bytes).decode("ascii")
    }


@https_fn.on_request(
    timeout_sec=120,
    memory=options.MemoryOption.GB_1,
    region="europe-west1"
)
def apply_project_edits(req: https_fn.Request) -> https_fn.Response:
    """Rebuild and rehash a finalized result after edits (not persisted).

    Request body:
    {
        "sessionId": "sess-xxx",
        "result": {...},            // result returned by finalize_project
        "computoItems": [...],
        "reportText": "..."
    }
    """
    return _handle(req, "apply_project_edits", _apply_project_edits_async)


async def _apply_project_edits_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    firestore_service = FirestoreService()
    user = await authenticate(req, data, firestore_service)
    session = await SessionSynchronizer(firestore_service).get_session(
        require_field(data, "sessionId"), user.uid
    )
    result = parse_model(GenerationResult, require_field(data, "result"), "result")
    draft = build_draft(data, EstimateDraft.from_generation(result, session.context.description_items))

    updated = await apply_edits(
        result,
        draft.computo_items,
        draft.report_text,
        user,
        session
    )
    return {
        "result": updated.to_response_dict(),
        "pdfBase64": base64.b64encode(updated.pdf_bytes).decode("ascii")
    }


# ============================================================================
# Image Endpoints
# ============================================================================


@https_fn.on_request(
    timeout_sec=60,
    memory=options.MemoryOption.GB_1,
    region="europe-west1"
)
def normalize_image(req: https_fn.Request) -> https_fn.Response:
    """Downscale and re-encode a site photo as JPEG.

    Request body: {"image": {"base64": "...", "name": "foto.heic", "mimeType": "image/heic"}}
    """
    return _handle(req, "normalize_image", _normalize_image_async)


async def _normalize_image_async(req: https_fn.Request, data: Dict[str, Any]) -> Dict[str, Any]:
    await authenticate(req, data, FirestoreService())
    image = parse_image(require_field(data, "image"))
    normalized = await normalize_image_async(image)
    return {
        "name": normalized.file.name,
        "base64": normalized.base64,
        "mimeType": normalized.mime_type,
        "width": normalized.width,
        "height": normalized.height,
        "size": normalized.file.size,
        "originalSize": normalized.original_size,
        "lastModified": normalized.file.last_modified
    }


# ============================================================================
# Response Helpers
# ============================================================================


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "3600"
}


def _cors_response() -> https_fn.Response:
    """Return CORS preflight response."""
    return https_fn.Response(
        "",
        status=204,
        headers=CORS_HEADERS
    )


def _json_response(data: dict, status: int = 200) -> https_fn.Response:
    """Return JSON response with CORS headers."""

    def _json_default(o: Any):
        """JSON serializer for objects not serializable by default.

        Firestore returns timestamp types like `DatetimeWithNanoseconds` which
        behave like datetime objects but are not JSON serializable.
        """
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        if isinstance(o, BaseModel):
            return o.model_dump(by_alias=True, exclude_none=True)
        return str(o)

    return https_fn.Response(
        json.dumps(data, default=_json_default),
        status=status,
        mimetype="application/json",
        headers=CORS_HEADERS
    )

"""Finalization pipeline for Domux.

Turns an edited estimate into a certified project:

    title -> identifiers -> artifact -> hash -> uploads -> project record -> closure

Each stage is a forward action with an optional compensation. When a stage
fails the pipeline stops, runs the compensations of every stage that was
entered (in reverse order, best-effort) and raises FinalizationError. The
only compensation is pausing the session with an error note, so the user
can resume it from the dashboard.

No stage retries. Uploads are bounded by settings.upload_timeout_ms.
"""

import asyncio
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import structlog

from config.settings import settings
from config.errors import (
    DomuxError,
    ErrorCode,
    FinalizationError,
    ValidationError,
)
from models.computo import (
    CertificationMetadata,
    ComputoItem,
    GenerationResult,
    GroundingSource,
)
from models.project import ProjectRecord, ProjectResult
from models.session import ProjectSession
from models.user import UserProfile
from services.estimate_service import EstimateService
from services.firestore_service import FirestoreService
from services.hashing import compute_sha256
from services.image_normalizer import ImageFile
from services.pdf_generator import build_artifact, build_artifact_filename
from services.storage_service import StorageService, project_storage_path
from utils.pipeline_logger import (
    log_pipeline_complete,
    log_pipeline_failed,
    log_pipeline_start,
    log_stage,
)
from utils.timeout import with_timeout

logger = structlog.get_logger()

PIPELINE_NAME = "finalization"
READABLE_ID_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
READABLE_ID_RANDOM_LENGTH = 4

SAVE_FAILED_PREFIX = "Save failed: "
PAUSED_SUFFIX = "The session has been paused, you can resume it from the dashboard."
EDIT_FAILED_PREFIX = "Applying edits failed: "

TitleConfirmation = Callable[[str], Awaitable[Optional[str]]]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_readable_id(today: date) -> str:
    """CM-<YYYY-MM-DD>-<4 random base36 chars>. Uniqueness is not checked."""
    suffix = "".join(secrets.choice(READABLE_ID_ALPHABET) for _ in range(READABLE_ID_RANDOM_LENGTH))
    return f"CM-{today.isoformat()}-{suffix}"


def compose_project_title(summary: str, surname: str, when: date) -> str:
    return f"{summary} Sig. {surname} - {when.strftime('%d/%m/%Y')}"


def _error_message(error: Exception) -> str:
    if isinstance(error, DomuxError):
        return error.message
    return str(error) or type(error).__name__


class FinalizationStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class FinalizationRequest:
    """Everything the pipeline needs, captured at the moment of finalizing.

    `confirm_title` receives the suggested title and returns the confirmed
    one; None cancels the run, a blank answer keeps the suggestion.
    """

    session: ProjectSession
    items: List[ComputoItem]
    report_text: str
    user: UserProfile
    confirm_title: TitleConfirmation
    original_image: Optional[ImageFile] = None
    generated_image: Optional[str] = None
    sources: List[GroundingSource] = field(default_factory=list)


@dataclass
class FinalizationOutcome:
    status: FinalizationStatus
    session: ProjectSession
    result: Optional[GenerationResult] = None
    project_id: Optional[str] = None
    completed_stages: List[str] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.status == FinalizationStatus.CANCELLED


class _TitleCancelled(Exception):
    pass


@dataclass
class _RunState:
    request: FinalizationRequest
    session: ProjectSession
    started_at: datetime
    metadata: Optional[CertificationMetadata] = None
    pdf_bytes: Optional[bytes] = None
    pdf_url: Optional[str] = None
    original_image_url: Optional[str] = None
    generated_image_url: Optional[str] = None
    project_id: Optional[str] = None


@dataclass
class _Stage:
    name: str
    action: Callable[[_RunState], Awaitable[None]]
    compensation: Optional[Callable[[_RunState, str], Awaitable[None]]] = None


class FinalizationOrchestrator:
    """Runs the finalization stages for one request at a time.

    Concurrent runs on the same session are not serialized; the last write
    wins.
    """

    def __init__(
        self,
        firestore_service: Optional[FirestoreService] = None,
        storage_service: Optional[StorageService] = None,
        estimate_service: Optional[EstimateService] = None,
        clock: Optional[Clock] = None,
        upload_timeout_ms: Optional[int] = None
    ):
        self.firestore = firestore_service or FirestoreService()
        self.storage = storage_service or StorageService()
        self.estimates = estimate_service or EstimateService()
        self.clock = clock or utc_now
        self.upload_timeout_ms = upload_timeout_ms or settings.upload_timeout_ms

        self._stages = [
            _Stage("title", self._derive_title, self._pause_session),
            _Stage("identifiers", self._assign_identifiers),
            _Stage("artifact", self._build_artifact),
            _Stage("hash", self._hash_artifact),
            _Stage("upload_pdf", self._upload_pdf),
            _Stage("upload_original_image", self._upload_original_image),
            _Stage("upload_generated_image", self._upload_generated_image),
            _Stage("project_record", self._write_project_record),
            _Stage("session_closure", self._close_session),
        ]

    async def finalize(self, request: FinalizationRequest) -> FinalizationOutcome:
        """Run the pipeline.

        Returns:
            FinalizationOutcome, COMPLETED with the result bundle or
            CANCELLED (nothing written) when the title was not confirmed.

        Raises:
            ValidationError: Customer surname missing (nothing attempted).
            FinalizationError: A stage failed; the session was paused.
        """
        session = request.session
        if not session.customer_surname:
            raise ValidationError(
                "The customer's surname is required. Please complete the customer details before finalizing.",
                field="committente.cognome"
            )

        start_time = time.time()
        state = _RunState(request=request, session=session, started_at=self.clock())
        entered: List[_Stage] = []
        completed: List[str] = []

        log_pipeline_start(PIPELINE_NAME, session.id, request.user.uid)

        for stage in self._stages:
            entered.append(stage)
            log_stage(PIPELINE_NAME, session.id, stage.name)
            try:
                await stage.action(state)
            except _TitleCancelled:
                logger.info("finalization_cancelled", session_id=session.id)
                return FinalizationOutcome(
                    status=FinalizationStatus.CANCELLED,
                    session=session,
                    completed_stages=completed
                )
            except Exception as e:
                raise await self._fail(state, stage, entered, completed, e) from e
            completed.append(stage.name)

        duration_ms = int((time.time() - start_time) * 1000)
        log_pipeline_complete(PIPELINE_NAME, session.id, duration_ms, completed, state.project_id)

        return FinalizationOutcome(
            status=FinalizationStatus.COMPLETED,
            session=state.session,
            result=self._result_bundle(state),
            project_id=state.project_id,
            completed_stages=completed
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _derive_title(self, state: _RunState) -> None:
        request = state.request
        session = state.session

        summary = await self.estimates.summarize_title(
            request.items, session.context.full_description
        )
        suggested = compose_project_title(summary, session.customer_surname, state.started_at.date())

        answer = await request.confirm_title(suggested)
        if answer is None:
            raise _TitleCancelled()

        project_name = answer.strip() or suggested
        state.session = session.with_updates(project_name=project_name)
        logger.info("project_title_confirmed", session_id=session.id, project_name=project_name)

    async def _assign_identifiers(self, state: _RunState) -> None:
        state.metadata = CertificationMetadata(
            uuid=str(uuid.uuid4()),
            readable_id=generate_readable_id(state.started_at.date()),
            hash="",
            timestamp=state.started_at.isoformat(),
            generator_version=settings.generator_version,
            parent_id=state.session.parent_id
        )
        logger.info(
            "identifiers_assigned",
            session_id=state.session.id,
            readable_id=state.metadata.readable_id,
            uuid=state.metadata.uuid
        )

    async def _build_artifact(self, state: _RunState) -> None:
        request = state.request
        state.pdf_bytes = await asyncio.to_thread(
            build_artifact,
            request.items,
            request.report_text,
            request.user,
            state.session,
            state.metadata,
            request.original_image,
            request.generated_image
        )

    async def _hash_artifact(self, state: _RunState) -> None:
        digest = compute_sha256(state.pdf_bytes)
        state.metadata = state.metadata.model_copy(update={"hash": digest})
        logger.info("artifact_hashed", readable_id=state.metadata.readable_id, hash=digest)

    async def _upload_pdf(self, state: _RunState) -> None:
        filename = build_artifact_filename(state.session.project_name, state.metadata.readable_id)
        path = self._storage_path(state, filename)
        stored = await with_timeout(
            self.storage.upload(path, state.pdf_bytes, "application/pdf"),
            self.upload_timeout_ms,
            operation="upload_pdf"
        )
        state.pdf_url = self.storage.get_durable_url(stored)
        logger.info("pdf_uploaded", session_id=state.session.id, path=path)

    async def _upload_original_image(self, state: _RunState) -> None:
        image = state.request.original_image
        if image is None:
            return
        path = self._storage_path(state, f"original_{self._epoch_ms()}")
        stored = await with_timeout(
            self.storage.upload(path, image.content, image.mime_type),
            self.upload_timeout_ms,
            operation="upload_original_image"
        )
        state.original_image_url = self.storage.get_durable_url(stored)
        logger.info("original_image_uploaded", session_id=state.session.id, path=path)

    async def _upload_generated_image(self, state: _RunState) -> None:
        generated = state.request.generated_image
        if not generated:
            return
        path = self._storage_path(state, f"generated_{self._epoch_ms()}.jpeg")
        stored = await with_timeout(
            self.storage.upload_base64(path, generated, "image/jpeg"),
            self.upload_timeout_ms,
            operation="upload_generated_image"
        )
        state.generated_image_url = self.storage.get_durable_url(stored)
        logger.info("generated_image_uploaded", session_id=state.session.id, path=path)

    async def _write_project_record(self, state: _RunState) -> None:
        request = state.request
        session = state.session
        record = ProjectRecord(
            user_id=request.user.uid,
            user_input=session.context.full_description,
            project_name=session.project_name,
            location=session.context.location,
            committente=session.context.committente,
            is_renovation=request.original_image is not None,
            result=ProjectResult(
                computo_items=request.items,
                report_text=request.report_text,
                sources=request.sources
            ),
            pdf_download_url=state.pdf_url,
            metadata=state.metadata,
            original_image_url=state.original_image_url,
            generated_image_url=state.generated_image_url
        )
        state.project_id = await self.firestore.create_project(record)

    async def _close_session(self, state: _RunState) -> None:
        await self.firestore.close_session(
            state.session.id, state.project_id, state.session.project_name
        )
        state.session = state.session.with_updates(
            status="closed",
            generated_project_id=state.project_id,
            error_log=None
        )

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    async def _pause_session(self, state: _RunState, message: str) -> None:
        await self.firestore.pause_session(state.session.id, f"{SAVE_FAILED_PREFIX}{message}")

    async def _fail(
        self,
        state: _RunState,
        stage: _Stage,
        entered: List[_Stage],
        completed: List[str],
        error: Exception
    ) -> FinalizationError:
        message = _error_message(error)
        logger.error(
            "finalization_failed",
            session_id=state.session.id,
            stage=stage.name,
            error=message,
            error_type=type(error).__name__
        )
        log_pipeline_failed(PIPELINE_NAME, state.session.id, stage.name, message, completed)

        compensation_errors = []
        for entered_stage in reversed(entered):
            if entered_stage.compensation is None:
                continue
            try:
                await entered_stage.compensation(state, message)
            except Exception as comp_error:
                logger.error(
                    "finalization_compensation_failed",
                    session_id=state.session.id,
                    stage=entered_stage.name,
                    error=str(comp_error)
                )
                compensation_errors.append({
                    "stage": entered_stage.name,
                    "error": _error_message(comp_error)
                })

        return FinalizationError(
            message=f"{SAVE_FAILED_PREFIX}{message.rstrip('.')}. {PAUSED_SUFFIX}",
            session_id=state.session.id,
            failed_stage=stage.name,
            cause_code=error.code if isinstance(error, DomuxError) else None,
            details={"compensation_errors": compensation_errors}
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _storage_path(self, state: _RunState, filename: str) -> str:
        return project_storage_path(state.request.user.uid, state.session.id, filename)

    def _epoch_ms(self) -> int:
        return int(self.clock().timestamp() * 1000)

    def _result_bundle(self, state: _RunState) -> GenerationResult:
        request = state.request
        return GenerationResult(
            computo_items=request.items,
            report_text=request.report_text,
            generated_image=request.generated_image,
            original_image=request.original_image.to_data_url() if request.original_image else None,
            metadata=state.metadata,
            pdf_bytes=state.pdf_bytes,
            sources=request.sources,
            pdf_download_url=state.pdf_url,
            original_image_url=state.original_image_url,
            generated_image_url=state.generated_image_url
        )


async def apply_edits(
    result: GenerationResult,
    items: List[ComputoItem],
    report_text: str,
    user: UserProfile,
    session: ProjectSession,
    clock: Optional[Clock] = None
) -> GenerationResult:
    """Rebuild and rehash an already finalized result after edits.

    Keeps uuid, readableId and parentId, stamps a new timestamp and returns
    a new result with fresh PDF bytes and hash. Nothing is persisted; the
    stored project record keeps the original artifact.

    Raises:
        DomuxError: EDIT_FAILED with an "Applying edits failed: " message.
    """
    if result.metadata is None:
        raise ValidationError("The result has no certification metadata to update", field="metadata")

    now = (clock or utc_now)()
    metadata = result.metadata.model_copy(update={"timestamp": now.isoformat(), "hash": ""})

    try:
        pdf_bytes = await asyncio.to_thread(
            build_artifact,
            items,
            report_text,
            user,
            session,
            metadata,
            result.original_image or result.original_image_url,
            result.generated_image or result.generated_image_url
        )
    except Exception as e:
        message = _error_message(e)
        logger.error("apply_edits_failed", session_id=session.id, error=message)
        raise DomuxError(
            code=ErrorCode.EDIT_FAILED,
            message=f"{EDIT_FAILED_PREFIX}{message}",
            details={"session_id": session.id, "readable_id": metadata.readable_id}
        )

    metadata = metadata.model_copy(update={"hash": compute_sha256(pdf_bytes)})
    logger.info(
        "edits_applied",
        session_id=session.id,
        readable_id=metadata.readable_id,
        hash=metadata.hash,
        items=len(items)
    )

    return result.model_copy(update={
        "computo_items": list(items),
        "report_text": report_text,
        "metadata": metadata,
        "pdf_bytes": pdf_bytes,
    })

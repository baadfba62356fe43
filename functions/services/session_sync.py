"""Session synchronizer for Domux.

Thin layer over /projectSessions: creation, owner-checked reads, live
subscription and typed partial updates. Writes are last-write-wins; every
write stamps updatedAt with the server timestamp.
"""

from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from config.errors import DomuxError, ErrorCode, ValidationError
from models.session import (
    Committente,
    ProjectSession,
    SessionContext,
    SessionContextPatch,
    SessionPatch,
)
from services.firestore_service import FirestoreService

logger = structlog.get_logger()

SnapshotCallback = Callable[[Optional[ProjectSession]], None]
ErrorCallback = Callable[[Exception], None]


class SessionSubscription:
    """Handle returned by `subscribe`; call `unsubscribe()` to stop updates."""

    def __init__(self, session_id: str, watch):
        self.session_id = session_id
        self._watch = watch
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self._watch.unsubscribe()
        self.active = False
        logger.info("session_unsubscribed", session_id=self.session_id)


class SessionSynchronizer:
    """Create, read, watch and patch project sessions."""

    def __init__(self, firestore_service: Optional[FirestoreService] = None):
        self.firestore = firestore_service or FirestoreService()

    async def create_session(
        self,
        user_id: str,
        project_name: str,
        project_type: Optional[str] = None,
        region: Optional[str] = None,
        preferred_stores: Optional[List[str]] = None,
        context: Optional[SessionContext] = None,
        parent_id: Optional[str] = None
    ) -> ProjectSession:
        """Create an open session and return its first snapshot."""
        if not project_name or not project_name.strip():
            raise ValidationError("Project name is required", field="projectName")

        session_id = await self.firestore.create_session(
            user_id=user_id,
            project_name=project_name.strip(),
            project_type=project_type,
            region=region,
            preferred_stores=preferred_stores,
            context=context,
            parent_id=parent_id
        )
        return ProjectSession(
            id=session_id,
            user_id=user_id,
            project_name=project_name.strip(),
            project_type=project_type,
            region=region,
            preferred_stores=preferred_stores,
            context=context or SessionContext(),
            parent_id=parent_id
        )

    async def get_session(self, session_id: str, user_id: Optional[str] = None) -> ProjectSession:
        """Load a session snapshot.

        Raises:
            DomuxError: SESSION_NOT_FOUND if missing, UNAUTHORIZED if
                `user_id` is given and does not own the session.
        """
        data = await self.firestore.get_session(session_id)
        if data is None:
            raise DomuxError(
                code=ErrorCode.SESSION_NOT_FOUND,
                message=f"Session {session_id} not found",
                details={"session_id": session_id}
            )

        session = ProjectSession.from_firestore(session_id, data)
        if user_id is not None and session.user_id != user_id:
            logger.warning("session_owner_mismatch", session_id=session_id, user_id=user_id)
            raise DomuxError(
                code=ErrorCode.UNAUTHORIZED,
                message="You do not have access to this session",
                details={"session_id": session_id}
            )
        return session

    def subscribe(
        self,
        session_id: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> SessionSubscription:
        """Deliver a fresh snapshot on every change of the session document.

        `on_snapshot` receives None when the document does not exist.
        Snapshots that fail validation go to `on_error`.
        """

        def _listener(doc_snapshots, changes, read_time):
            for doc in doc_snapshots:
                try:
                    session = (
                        ProjectSession.from_firestore(doc.id, doc.to_dict() or {})
                        if doc.exists else None
                    )
                except Exception as e:
                    logger.error("session_snapshot_invalid", session_id=session_id, error=str(e))
                    if on_error:
                        on_error(e)
                    continue
                on_snapshot(session)

        watch = self.firestore.watch_session(session_id, _listener)
        logger.info("session_subscribed", session_id=session_id)
        return SessionSubscription(session_id, watch)

    async def patch_context(self, session_id: str, patch: SessionContextPatch) -> None:
        """Write only the context fields set on `patch`."""
        if patch.is_empty():
            logger.debug("session_patch_skipped", session_id=session_id, reason="empty context patch")
            return
        await self.firestore.update_session(session_id, patch.to_firestore_update())

    async def patch_session(self, session_id: str, patch: SessionPatch) -> None:
        """Write only the session fields set on `patch`."""
        if patch.is_empty():
            logger.debug("session_patch_skipped", session_id=session_id, reason="empty session patch")
            return
        await self.firestore.update_session(session_id, patch.to_firestore_update())

    # Convenience edits. Each writes the change and returns the new snapshot.

    async def add_description(self, session: ProjectSession, text: str) -> ProjectSession:
        cleaned = text.strip()
        if not cleaned:
            return session
        items = [*session.context.description_items, cleaned]
        return await self._replace_descriptions(session, items)

    async def remove_description(self, session: ProjectSession, index: int) -> ProjectSession:
        items = list(session.context.description_items)
        _check_index(index, len(items))
        del items[index]
        return await self._replace_descriptions(session, items)

    async def edit_description(self, session: ProjectSession, index: int, text: str) -> ProjectSession:
        items = list(session.context.description_items)
        _check_index(index, len(items))
        items[index] = text
        return await self._replace_descriptions(session, items)

    async def update_committente(
        self,
        session: ProjectSession,
        committente: Union[Committente, Dict[str, Any]]
    ) -> ProjectSession:
        value = Committente.model_validate(committente)
        await self.patch_context(session.id, SessionContextPatch(committente=value))
        return session.with_updates(context=session.context.model_copy(update={"committente": value}))

    async def toggle_store(self, session: ProjectSession, store: str) -> ProjectSession:
        """Add `store` to the preferred stores, or remove it if present."""
        stores = list(session.preferred_stores or [])
        if store in stores:
            stores.remove(store)
        else:
            stores.append(store)
        await self.patch_session(session.id, SessionPatch(preferred_stores=stores))
        return session.with_updates(preferred_stores=stores)

    async def _replace_descriptions(self, session: ProjectSession, items: List[str]) -> ProjectSession:
        await self.patch_context(session.id, SessionContextPatch(description_items=items))
        return session.with_updates(
            context=session.context.model_copy(update={"description_items": items})
        )


def _check_index(index: int, size: int) -> None:
    if not 0 <= index < size:
        raise ValidationError(f"Index {index} out of range", field="descriptionItems")

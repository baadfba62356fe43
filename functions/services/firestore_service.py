"""Firestore service for Domux.

Provides CRUD operations for users, project sessions and finalized projects.
"""

from typing import Any, Callable, Dict, List, Optional
import inspect
import structlog

from firebase_admin import firestore

from config.errors import DomuxError, ErrorCode
from models.project import ProjectRecord
from models.session import SessionContext, SessionPatch, SessionStatus

logger = structlog.get_logger()


class FirestoreService:
    """Service for Firestore operations.

    Handles all database operations for users, project sessions and
    finalized project records.

    Note: Firebase Admin SDK for Python is synchronous. Methods are
    marked async for interface compatibility but operations are sync.
    """

    COLLECTION_USERS = "users"
    COLLECTION_SESSIONS = "projectSessions"
    COLLECTION_PROJECTS = "projects"

    def __init__(self, db=None):
        """Initialize FirestoreService.

        Args:
            db: Optional Firestore client. If not provided, uses default.
        """
        self._db = db

    @property
    def db(self):
        """Get Firestore client (lazy initialization)."""
        if self._db is None:
            self._db = firestore.client()
        return self._db

    async def _maybe_await(self, result: Any) -> Any:
        """Await result if it is awaitable (supports AsyncMock in unit tests)."""
        if inspect.isawaitable(result):
            return await result
        return result

    async def _get_document(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            doc_ref = self.db.collection(collection).document(doc_id)
            doc = await self._maybe_await(doc_ref.get())

            if doc.exists:
                return {"id": doc.id, **(doc.to_dict() or {})}
            return None

        except Exception as e:
            logger.error("firestore_get_failed", collection=collection, doc_id=doc_id, error=str(e))
            raise DomuxError(
                code=ErrorCode.FIRESTORE_ERROR,
                message=f"Failed to read {collection}/{doc_id}: {str(e)}",
                details={"collection": collection, "doc_id": doc_id}
            )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a user profile document.

        Args:
            user_id: Firebase Auth uid.

        Returns:
            Profile data or None if the user has no profile document.
        """
        return await self._get_document(self.COLLECTION_USERS, user_id)

    # ------------------------------------------------------------------
    # Project sessions
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a project session by ID.

        Raises:
            DomuxError: If Firestore operation fails.
        """
        return await self._get_document(self.COLLECTION_SESSIONS, session_id)

    async def create_session(
        self,
        user_id: str,
        project_name: str,
        project_type: Optional[str] = None,
        region: Optional[str] = None,
        preferred_stores: Optional[List[str]] = None,
        context: Optional[SessionContext] = None,
        parent_id: Optional[str] = None
    ) -> str:
        """Create a new open project session.

        Returns:
            The generated session ID.
        """
        try:
            doc_ref = self.db.collection(self.COLLECTION_SESSIONS).document()

            session_data = {
                "userId": user_id,
                "projectName": project_name,
                "status": SessionStatus.OPEN.value,
                "projectType": project_type,
                "region": region,
                "preferredStores": preferred_stores,
                "context": (context or SessionContext()).model_dump(by_alias=True),
                "parentId": parent_id,
                "createdAt": firestore.SERVER_TIMESTAMP,
                "updatedAt": firestore.SERVER_TIMESTAMP
            }
            # Absent optional fields are omitted, not written as null
            session_data = {k: v for k, v in session_data.items() if v is not None}

            await self._maybe_await(doc_ref.set(session_data))
            logger.info("session_created", session_id=doc_ref.id, user_id=user_id)

            return doc_ref.id

        except Exception as e:
            logger.error("session_create_failed", user_id=user_id, error=str(e))
            raise DomuxError(
                code=ErrorCode.FIRESTORE_WRITE_FAILED,
                message=f"Failed to create session: {str(e)}",
                details={"user_id": user_id}
            )

    async def update_session(self, session_id: str, data: Dict[str, Any]) -> None:
        """Patch session fields (supports dot notation for context fields).

        Raises:
            DomuxError: If Firestore operation fails.
        """
        try:
            doc_ref = self.db.collection(self.COLLECTION_SESSIONS).document(session_id)

            update = {**data, "updatedAt": firestore.SERVER_TIMESTAMP}

            await self._maybe_await(doc_ref.update(update))
            logger.info("session_updated", session_id=session_id, fields=list(update.keys()))

        except Exception as e:
            logger.error("firestore_update_failed", session_id=session_id, error=str(e))
            raise DomuxError(
                code=ErrorCode.FIRESTORE_WRITE_FAILED,
                message=f"Failed to update session: {str(e)}",
                details={"session_id": session_id}
            )

    async def close_session(self, session_id: str, project_id: str, project_name: str) -> None:
        """Mark a session closed and link it to its project record."""
        patch = SessionPatch(
            status=SessionStatus.CLOSED,
            generated_project_id=project_id,
            project_name=project_name
        )
        update = {**patch.to_firestore_update(), "errorLog": firestore.DELETE_FIELD}
        await self.update_session(session_id, update)
        logger.info("session_closed", session_id=session_id, project_id=project_id)

    async def pause_session(self, session_id: str, error_log: str) -> None:
        """Mark a session paused after a failed finalization."""
        patch = SessionPatch(status=SessionStatus.PAUSED, error_log=error_log)
        await self.update_session(session_id, patch.to_firestore_update())
        logger.info("session_paused", session_id=session_id)

    def watch_session(
        self,
        session_id: str,
        callback: Callable[[List[Any], List[Any], Any], None]
    ):
        """Register a snapshot listener on a session document.

        Returns:
            The Firestore watch handle (call `.unsubscribe()` to stop).
        """
        doc_ref = self.db.collection(self.COLLECTION_SESSIONS).document(session_id)
        return doc_ref.on_snapshot(callback)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(self, record: ProjectRecord) -> str:
        """Append a finalized project record.

        Returns:
            The generated project ID.

        Raises:
            DomuxError: If Firestore operation fails.
        """
        try:
            doc_ref = self.db.collection(self.COLLECTION_PROJECTS).document()

            project_data = {
                **record.to_firestore_dict(),
                "createdAt": firestore.SERVER_TIMESTAMP
            }

            await self._maybe_await(doc_ref.set(project_data))
            logger.info("project_created", project_id=doc_ref.id, user_id=record.user_id)

            return doc_ref.id

        except Exception as e:
            logger.error("project_create_failed", user_id=record.user_id, error=str(e))
            raise DomuxError(
                code=ErrorCode.FIRESTORE_WRITE_FAILED,
                message=f"Failed to save project: {str(e)}",
                details={"user_id": record.user_id}
            )

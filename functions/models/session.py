"""Project session models for Domux.

A project session is the editable, in-progress estimate workflow stored in
/projectSessions/{id}. Snapshots are immutable: every change produces a new
ProjectSession value.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, model_validator


class SessionStatus(str, Enum):
    """Lifecycle status of a project session."""

    OPEN = "open"
    PAUSED = "paused"
    CLOSED = "closed"


class ProjectType(str, Enum):
    """Project classification, selects the pricing source."""

    PUBLIC_WORKS = "public_works"
    PRIVATE_ESTIMATE = "private_estimate"


ITALIAN_REGIONS = [
    "Abruzzo", "Basilicata", "Calabria", "Campania", "Emilia-Romagna",
    "Friuli-Venezia Giulia", "Lazio", "Liguria", "Lombardia", "Marche",
    "Molise", "Piemonte", "Puglia", "Sardegna", "Sicilia", "Toscana",
    "Trentino-Alto Adige", "Umbria", "Valle d'Aosta", "Veneto",
]

KNOWN_STORES = ["Leroy Merlin", "Bricoman", "OBI", "Bricofer", "Brico IO", "Castorama"]


class Committente(BaseModel):
    """Customer commissioning the work."""

    nome: str = ""
    cognome: str = ""
    codice_fiscale: str = Field(default="", alias="codiceFiscale")
    indirizzo: str = ""

    class Config:
        populate_by_name = True
        frozen = True

    @property
    def full_name(self) -> str:
        return f"{self.nome} {self.cognome}".strip()


class SessionContext(BaseModel):
    """Work description gathered during the session."""

    description_items: List[str] = Field(default_factory=list, alias="descriptionItems")
    location: str = ""
    committente: Committente = Field(default_factory=Committente)

    class Config:
        populate_by_name = True
        frozen = True

    @property
    def full_description(self) -> str:
        return "; ".join(self.description_items)


class ProjectSession(BaseModel):
    """Immutable snapshot of a /projectSessions document."""

    id: str = Field(description="Document ID")
    user_id: str = Field(alias="userId", description="Owner user ID")
    project_name: str = Field(default="", alias="projectName")
    status: SessionStatus = Field(default=SessionStatus.OPEN)
    project_type: Optional[ProjectType] = Field(default=None, alias="projectType")
    region: Optional[str] = Field(
        default=None,
        description="Italian region for public works price lists"
    )
    preferred_stores: Optional[List[str]] = Field(
        default=None,
        alias="preferredStores",
        description="Store names for private estimates"
    )
    context: SessionContext = Field(default_factory=SessionContext)
    parent_id: Optional[str] = Field(
        default=None,
        alias="parentId",
        description="Originating session when this is a re-edit"
    )
    generated_project_id: Optional[str] = Field(
        default=None,
        alias="generatedProjectId",
        description="Finalized project record, set only when closed"
    )
    error_log: Optional[str] = Field(default=None, alias="errorLog")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    class Config:
        populate_by_name = True
        use_enum_values = True
        frozen = True

    @model_validator(mode="after")
    def _check_closure_link(self) -> "ProjectSession":
        closed = self.status == SessionStatus.CLOSED.value
        if closed != bool(self.generated_project_id):
            raise ValueError("generatedProjectId must be set if and only if status is 'closed'")
        return self

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "ProjectSession":
        return cls.model_validate({**data, "id": doc_id})

    def with_updates(self, **changes: Any) -> "ProjectSession":
        """Return a new validated snapshot with the given fields replaced."""
        merged = {**self.model_dump(), **changes}
        return type(self).model_validate(merged)

    @property
    def is_closed(self) -> bool:
        return self.status == SessionStatus.CLOSED.value

    @property
    def customer_surname(self) -> str:
        return self.context.committente.cognome.strip()

    def to_firestore_dict(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        data.pop("id", None)
        return data


class SessionContextPatch(BaseModel):
    """Typed partial update of a session's context.

    Only fields explicitly set are written; each maps to `context.<field>`.
    """

    description_items: Optional[List[str]] = Field(default=None, alias="descriptionItems")
    location: Optional[str] = None
    committente: Optional[Committente] = None

    class Config:
        populate_by_name = True
        extra = "forbid"

    def to_firestore_update(self) -> Dict[str, Any]:
        fields = self.model_dump(by_alias=True, exclude_unset=True)
        return {f"context.{key}": value for key, value in fields.items()}

    def is_empty(self) -> bool:
        return not self.model_fields_set


class SessionPatch(BaseModel):
    """Typed partial update of session fields (never id, owner or context)."""

    project_name: Optional[str] = Field(default=None, alias="projectName")
    status: Optional[SessionStatus] = None
    project_type: Optional[ProjectType] = Field(default=None, alias="projectType")
    region: Optional[str] = None
    preferred_stores: Optional[List[str]] = Field(default=None, alias="preferredStores")
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    generated_project_id: Optional[str] = Field(default=None, alias="generatedProjectId")
    error_log: Optional[str] = Field(default=None, alias="errorLog")

    class Config:
        populate_by_name = True
        use_enum_values = True
        extra = "forbid"

    @model_validator(mode="after")
    def _check_closure_link(self) -> "SessionPatch":
        closing = self.status == SessionStatus.CLOSED.value
        linking = bool(self.generated_project_id)
        if closing and not linking:
            raise ValueError("closing a session requires generatedProjectId")
        if linking and not closing:
            raise ValueError("generatedProjectId can only be set when closing the session")
        return self

    def to_firestore_update(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)

    def is_empty(self) -> bool:
        return not self.model_fields_set

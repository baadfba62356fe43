"""Project record model for Domux.

The immutable document written once to /projects/{id} when a session is
finalized.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from models.computo import CertificationMetadata, ComputoItem, GroundingSource
from models.session import Committente


class ProjectResult(BaseModel):
    computo_items: List[ComputoItem] = Field(default_factory=list, alias="computoItems")
    report_text: str = Field(default="", alias="reportText")
    sources: List[GroundingSource] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class ProjectRecord(BaseModel):
    """A finalized, certified project.

    Optional fields that are absent are omitted from the stored document
    rather than written as null.
    """

    user_id: str = Field(alias="userId")
    user_input: str = Field(alias="userInput", description="Full work description")
    project_name: str = Field(alias="projectName")
    location: str = ""
    committente: Committente = Field(default_factory=Committente)
    is_renovation: bool = Field(default=False, alias="isRenovation")
    result: ProjectResult
    pdf_download_url: str = Field(alias="pdfDownloadUrl")
    metadata: CertificationMetadata
    original_image_url: Optional[str] = Field(default=None, alias="originalImageUrl")
    generated_image_url: Optional[str] = Field(default=None, alias="generatedImageUrl")

    class Config:
        populate_by_name = True

    @field_validator("pdf_download_url")
    @classmethod
    def _require_pdf_url(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("pdfDownloadUrl must be a non-empty URL")
        return value

    @field_validator("metadata")
    @classmethod
    def _require_hash(cls, value: CertificationMetadata) -> CertificationMetadata:
        if not value.hash:
            raise ValueError("metadata.hash must be computed before persisting")
        return value

    def to_firestore_dict(self) -> Dict[str, Any]:
        """Serialize with camelCase keys, dropping absent optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)

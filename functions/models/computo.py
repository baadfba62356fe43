"""Computo metrico models for Domux.

Pydantic models for estimate line items, certification metadata and the
generation result bundle produced by the finalization pipeline.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class ComputoItem(BaseModel):
    """A single estimate line.

    `importo` is the amount as produced by the generator or the editor; it is
    not recomputed from quantita x prezzo_unitario.
    """

    id: int = Field(description="Line number")
    codice_articolo: str = Field(default="", description="Price list article code")
    descrizione: str = Field(default="", description="Work description")
    um: str = Field(default="", description="Unit of measure")
    quantita: float = Field(default=0.0, description="Quantity")
    prezzo_unitario: float = Field(default=0.0, description="Unit price (EUR)")
    importo: float = Field(default=0.0, description="Line amount (EUR)")

    def expected_amount(self) -> float:
        """Amount implied by quantity and unit price."""
        return round(self.quantita * self.prezzo_unitario, 2)

    def has_amount_drift(self, tolerance: float = 0.01) -> bool:
        """True when `importo` disagrees with quantity x unit price."""
        return abs(self.expected_amount() - self.importo) > tolerance


class CertificationMetadata(BaseModel):
    """Content-addressed provenance record embedded in the certified PDF."""

    uuid: str = Field(description="Globally unique id")
    readable_id: str = Field(
        alias="readableId",
        description="Human-facing id, CM-<date>-<random4>"
    )
    hash: str = Field(
        default="",
        description="SHA-256 of the generated PDF bytes"
    )
    timestamp: str = Field(description="ISO-8601 generation timestamp")
    generator_version: str = Field(
        alias="generatorVersion",
        description="Generator version string"
    )
    parent_id: Optional[str] = Field(
        default=None,
        alias="parentId",
        description="Originating session/project for version chains"
    )

    class Config:
        populate_by_name = True

    def to_firestore_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WebSource(BaseModel):
    uri: str
    title: str = ""


class GroundingSource(BaseModel):
    """A web source the AI used to ground its prices."""

    web: WebSource


class GenerationResult(BaseModel):
    """Output bundle of a generation or finalization run.

    `pdf_bytes` only lives in memory for immediate download; it is excluded
    from every serialization.
    """

    computo_items: List[ComputoItem] = Field(
        default_factory=list,
        alias="computoItems"
    )
    report_text: str = Field(default="", alias="reportText")
    generated_image: Optional[str] = Field(
        default=None,
        alias="generatedImage",
        description="Base64 encoded preview image"
    )
    original_image: Optional[str] = Field(
        default=None,
        alias="originalImage",
        description="Data URL of the source photo, for immediate display"
    )
    metadata: Optional[CertificationMetadata] = None
    pdf_bytes: Optional[bytes] = Field(default=None, alias="pdfBytes", exclude=True)
    sources: List[GroundingSource] = Field(default_factory=list)
    pdf_download_url: Optional[str] = Field(default=None, alias="pdfDownloadUrl")
    original_image_url: Optional[str] = Field(default=None, alias="originalImageUrl")
    generated_image_url: Optional[str] = Field(default=None, alias="generatedImageUrl")

    class Config:
        populate_by_name = True

    @property
    def total_amount(self) -> float:
        return compute_total(self.computo_items)

    def to_response_dict(self) -> Dict[str, Any]:
        """Serialize for HTTP responses (camelCase, no PDF bytes)."""
        return self.model_dump(by_alias=True, exclude_none=True)


def compute_total(items: List[ComputoItem]) -> float:
    """Sum of each item's precomputed amount."""
    return round(sum(item.importo for item in items), 2)


def find_amount_drift(items: List[ComputoItem]) -> List[int]:
    """Return ids of items whose amount disagrees with quantity x unit price."""
    return [item.id for item in items if item.has_amount_drift()]

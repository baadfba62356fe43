"""Estimate draft store for Domux.

In-memory, user-editable state between AI generation and finalization:
work description lines, estimate line items and the narrative report.
"""

from typing import Any, List, Optional
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from config.errors import ValidationError
from models.computo import ComputoItem, GenerationResult, GroundingSource, compute_total

EDITABLE_ITEM_FIELDS = {"codice_articolo", "descrizione", "um", "quantita", "prezzo_unitario", "importo"}


class EstimateDraft(BaseModel):
    """Mutable draft edited through explicit operations only."""

    description_items: List[str] = Field(default_factory=list)
    computo_items: List[ComputoItem] = Field(default_factory=list)
    report_text: str = ""
    generated_image: Optional[str] = None
    sources: List[GroundingSource] = Field(default_factory=list)

    @classmethod
    def from_generation(
        cls,
        result: GenerationResult,
        description_items: Optional[List[str]] = None
    ) -> "EstimateDraft":
        return cls(
            description_items=list(description_items or []),
            computo_items=[item.model_copy() for item in result.computo_items],
            report_text=result.report_text,
            generated_image=result.generated_image,
            sources=list(result.sources),
        )

    # Description lines

    def add_description(self, text: str) -> bool:
        """Append a trimmed description line; blank input is ignored."""
        cleaned = text.strip()
        if not cleaned:
            return False
        self.description_items = [*self.description_items, cleaned]
        return True

    def remove_description(self, index: int) -> None:
        self._check_index(index, len(self.description_items), "description_items")
        self.description_items = [
            item for i, item in enumerate(self.description_items) if i != index
        ]

    def edit_description(self, index: int, text: str) -> None:
        self._check_index(index, len(self.description_items), "description_items")
        items = list(self.description_items)
        items[index] = text
        self.description_items = items

    # Line items

    def replace_items(self, items: List[Any]) -> None:
        """Replace every line item; accepts models or plain mappings."""
        if not isinstance(items, list):
            raise ValidationError("computoItems must be a list", field="computo_items")
        try:
            self.computo_items = [ComputoItem.model_validate(item) for item in items]
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid computo item",
                field="computo_items",
                details={"errors": e.errors(include_url=False)}
            )

    def add_item(self, **fields: Any) -> ComputoItem:
        next_id = max((item.id for item in self.computo_items), default=0) + 1
        item = ComputoItem(id=next_id, **fields)
        self.computo_items = [*self.computo_items, item]
        return item

    def remove_item(self, item_id: int) -> None:
        remaining = [item for item in self.computo_items if item.id != item_id]
        if len(remaining) == len(self.computo_items):
            raise ValidationError(f"Unknown item id: {item_id}", field="computo_items")
        self.computo_items = remaining

    def update_item(self, item_id: int, **changes: Any) -> ComputoItem:
        unknown = set(changes) - EDITABLE_ITEM_FIELDS
        if unknown:
            raise ValidationError(
                f"Fields not editable: {', '.join(sorted(unknown))}",
                field="computo_items"
            )
        for position, item in enumerate(self.computo_items):
            if item.id == item_id:
                updated = item.model_copy(update=changes)
                items = list(self.computo_items)
                items[position] = updated
                self.computo_items = items
                return updated
        raise ValidationError(f"Unknown item id: {item_id}", field="computo_items")

    # Report

    def set_report_text(self, text: str) -> None:
        if not isinstance(text, str):
            raise ValidationError("reportText must be a string", field="report_text")
        self.report_text = text

    @property
    def total_amount(self) -> float:
        return compute_total(self.computo_items)

    @property
    def full_description(self) -> str:
        return "; ".join(self.description_items)

    @staticmethod
    def _check_index(index: int, size: int, field: str) -> None:
        if not 0 <= index < size:
            raise ValidationError(f"Index {index} out of range", field=field)

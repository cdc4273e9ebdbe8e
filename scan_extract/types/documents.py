"""Work item and extraction result models."""

import base64
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def clamp_confidence(value: float) -> int:
    """Clamp a raw confidence score into [0, 100]."""
    return max(0, min(100, int(round(value))))


class PagePayload(BaseModel):
    """One page image, ready to be sent inline."""

    mime_type: str = Field(description="Image MIME type (e.g., image/png)")
    data: str = Field(description="Base64-encoded image bytes")

    @classmethod
    def from_bytes(cls, content: bytes, mime_type: str) -> "PagePayload":
        """Build a payload from raw image bytes."""
        return cls(mime_type=mime_type, data=base64.b64encode(content).decode("ascii"))


class WorkItem(BaseModel):
    """One logical document. All pages are dispatched together."""

    id: str
    source_label: str = Field(description="Original file name or other label")
    pages: list[PagePayload] = Field(default_factory=list)

    @property
    def page_count(self) -> int:
        """Number of pages in the document."""
        return len(self.pages)


class VoteItem(BaseModel):
    """A vote on one agenda item."""

    agenda: str
    options: list[str] = Field(default_factory=list)
    voted: list[str] = Field(default_factory=list)


class Individual(BaseModel):
    """The person who submitted the document."""

    name: str
    is_lessee: bool = False
    birth_string: str = ""
    residential_address: str = ""
    contact_number: str = ""

    @field_validator("birth_string", "residential_address", "contact_number", mode="before")
    @classmethod
    def _none_to_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("is_lessee", mode="before")
    @classmethod
    def _none_to_false(cls, value: object) -> object:
        return False if value is None else value


class ExtractionMeta(BaseModel):
    """Quality metadata reported by the model."""

    confidence: int = Field(description="Self-reported score, clamped to 0-100")
    requires_review: bool = False
    extraction_notes: list[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: object) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("confidence must be a number")
        return clamp_confidence(value)

    @field_validator("extraction_notes", mode="before")
    @classmethod
    def _notes_default(cls, value: object) -> object:
        return [] if value is None else value


class ExtractedDocument(BaseModel):
    """Structured document as returned by a single-document call."""

    document_title: str
    property_number: str
    individual: Individual
    votes: list[VoteItem] = Field(default_factory=list)
    meta: ExtractionMeta = Field(alias="_meta")

    model_config = {"populate_by_name": True}


class BatchDocument(ExtractedDocument):
    """Document returned by a batch call, pointing back at its input."""

    source_index: int


class ResultMetadata(BaseModel):
    """Metadata attached to a stored result."""

    confidence_score: int = Field(ge=0, le=100)
    needs_review: bool = False
    notes: list[str] = Field(default_factory=list)
    source_label: str
    page_count: int = 1
    processed_at: datetime = Field(default_factory=datetime.now)


class ExtractionResult(BaseModel):
    """Final extraction result for a work item."""

    item_id: str
    document_title: str
    property_number: str
    individual: Individual
    votes: list[VoteItem] = Field(default_factory=list)
    meta: ResultMetadata

    @classmethod
    def from_document(
        cls,
        item: WorkItem,
        document: ExtractedDocument,
        processed_at: Optional[datetime] = None,
    ) -> "ExtractionResult":
        """Attach source metadata to a parsed document."""
        return cls(
            item_id=item.id,
            document_title=document.document_title,
            property_number=document.property_number,
            individual=document.individual,
            votes=document.votes,
            meta=ResultMetadata(
                confidence_score=clamp_confidence(document.meta.confidence),
                needs_review=document.meta.requires_review,
                notes=list(document.meta.extraction_notes),
                source_label=item.source_label,
                page_count=item.page_count,
                processed_at=processed_at or datetime.now(),
            ),
        )

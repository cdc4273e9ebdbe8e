"""Data-quality inspection of extraction results.

Flags duplicates, missing votes, inconsistent names, low confidence,
ambiguous marks and illegible fields so a reviewer knows where to look.
"""

from collections import defaultdict
from enum import Enum
from typing import Sequence

from pydantic import BaseModel, Field

from ..clients.prompts import UNCLEAR_MARKER
from ..types.documents import ExtractionResult

CONFIDENCE_HIGH = 90
CONFIDENCE_MEDIUM = 50

UNMARKED_MARKERS = ("unmarked",)
AMBIGUOUS_MARKERS = ("multiple", "ambiguous")


class ConfidenceTag(str, Enum):
    """Coarse confidence bands."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


def confidence_tag(score: int) -> ConfidenceTag:
    """Band a 0-100 confidence score."""
    if score >= CONFIDENCE_HIGH:
        return ConfidenceTag.HIGH
    if score >= CONFIDENCE_MEDIUM:
        return ConfidenceTag.MEDIUM
    return ConfidenceTag.LOW


def is_low_confidence(score: int) -> bool:
    """Check if a score falls in the LOW band."""
    return score < CONFIDENCE_MEDIUM


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class FindingCategory(str, Enum):
    DUPLICATE = "duplicate"
    MISSING = "missing"
    INCONSISTENT = "inconsistent"
    QUALITY = "quality"
    AMBIGUOUS = "ambiguous"


class InspectionFinding(BaseModel):
    """A single inspection finding."""

    severity: Severity
    category: FindingCategory
    message: str
    affected_items: list[str] = Field(default_factory=list)


class InspectionSummary(BaseModel):
    """Counts over the whole report."""

    total_documents: int = 0
    valid_documents: int = 0
    documents_with_issues: int = 0
    error_count: int = 0
    warning_count: int = 0


class InspectionReport(BaseModel):
    """Full inspection report."""

    summary: InspectionSummary = Field(default_factory=InspectionSummary)
    findings: list[InspectionFinding] = Field(default_factory=list)
    document_notes: dict[int, list[str]] = Field(
        default_factory=dict,
        description="Notes per index into the inspected results list",
    )

    def notes_for(self, index: int, existing: Sequence[str] = ()) -> str:
        """Join a document's own notes with its inspection notes."""
        return "; ".join([*existing, *self.document_notes.get(index, [])])


def _normalize_property(value: str) -> str:
    return value.strip().lower()


def inspect_results(results: list[ExtractionResult]) -> InspectionReport:
    """Inspect extracted data for issues.

    Args:
        results: Extraction results in display order.

    Returns:
        InspectionReport with findings and per-document notes.
    """
    findings: list[InspectionFinding] = []
    notes: dict[int, list[str]] = {index: [] for index in range(len(results))}

    # Duplicate property numbers
    by_property: dict[str, list[int]] = defaultdict(list)
    for index, result in enumerate(results):
        by_property[_normalize_property(result.property_number)].append(index)

    for prop, indices in by_property.items():
        if len(indices) > 1:
            findings.append(
                InspectionFinding(
                    severity=Severity.ERROR,
                    category=FindingCategory.DUPLICATE,
                    message=f"Duplicate property number: {prop} ({len(indices)} documents)",
                    affected_items=[results[i].property_number for i in indices],
                )
            )
            for i in indices:
                notes[i].append(f"Duplicate: {prop}")

    # Missing or unmarked votes
    for index, result in enumerate(results):
        if not result.votes:
            findings.append(
                InspectionFinding(
                    severity=Severity.WARNING,
                    category=FindingCategory.MISSING,
                    message=f"No votes recorded: {result.property_number}",
                    affected_items=[result.property_number],
                )
            )
            notes[index].append("No votes recorded")
        elif all(
            any(marker in vote.lower() for vote in v.voted for marker in UNMARKED_MARKERS)
            for v in result.votes
        ):
            findings.append(
                InspectionFinding(
                    severity=Severity.INFO,
                    category=FindingCategory.MISSING,
                    message=f"All agenda items unmarked: {result.property_number}",
                    affected_items=[result.property_number],
                )
            )
            notes[index].append("All agenda items unmarked")

    # Same property, different names
    names_by_property: dict[str, set[str]] = defaultdict(set)
    for result in results:
        names_by_property[_normalize_property(result.property_number)].add(
            result.individual.name.strip()
        )

    for prop, names in names_by_property.items():
        if len(names) > 1:
            ordered = sorted(names)
            findings.append(
                InspectionFinding(
                    severity=Severity.WARNING,
                    category=FindingCategory.INCONSISTENT,
                    message=f"Same property, different names: {prop} ({', '.join(ordered)})",
                    affected_items=ordered,
                )
            )
            for index in by_property[prop]:
                notes[index].append(f"Name mismatch: {'/'.join(ordered)}")

    # Low confidence
    for index, result in enumerate(results):
        score = result.meta.confidence_score
        if is_low_confidence(score):
            findings.append(
                InspectionFinding(
                    severity=Severity.WARNING,
                    category=FindingCategory.QUALITY,
                    message=f"Low confidence ({score}): {result.property_number}",
                    affected_items=[result.property_number],
                )
            )
            notes[index].append(f"Low confidence ({score})")

    # Ambiguous marks reported by the model
    for index, result in enumerate(results):
        text = " ".join(result.meta.notes).lower()
        if any(marker in text for marker in AMBIGUOUS_MARKERS):
            findings.append(
                InspectionFinding(
                    severity=Severity.WARNING,
                    category=FindingCategory.AMBIGUOUS,
                    message=f"Multiple marks suspected: {result.property_number}",
                    affected_items=[result.property_number],
                )
            )
            notes[index].append("Multiple marks suspected")

    review = [r.property_number for r in results if r.meta.needs_review]
    if review:
        findings.append(
            InspectionFinding(
                severity=Severity.INFO,
                category=FindingCategory.QUALITY,
                message=f"Items needing review: {len(review)}",
                affected_items=review,
            )
        )

    # Illegible fields
    for index, result in enumerate(results):
        fields = [
            result.document_title,
            result.property_number,
            result.individual.name,
            result.individual.birth_string,
            result.individual.residential_address,
            result.individual.contact_number,
            *(vote for v in result.votes for vote in v.voted),
        ]
        if any(UNCLEAR_MARKER in value for value in fields):
            findings.append(
                InspectionFinding(
                    severity=Severity.WARNING,
                    category=FindingCategory.QUALITY,
                    message=f"Illegible fields found: {result.property_number}",
                    affected_items=[result.property_number],
                )
            )
            notes[index].append("Illegible fields")

    with_issues = sum(1 for entries in notes.values() if entries)

    return InspectionReport(
        summary=InspectionSummary(
            total_documents=len(results),
            valid_documents=len(results) - with_issues,
            documents_with_issues=with_issues,
            error_count=sum(1 for f in findings if f.severity is Severity.ERROR),
            warning_count=sum(1 for f in findings if f.severity is Severity.WARNING),
        ),
        findings=findings,
        document_notes=notes,
    )


def format_findings(report: InspectionReport) -> list[str]:
    """Render a report as display lines."""
    summary = report.summary
    lines = [
        "=== Inspection Report ===",
        f"Total documents: {summary.total_documents}",
        f"Valid: {summary.valid_documents}",
        f"With issues: {summary.documents_with_issues}",
        "",
    ]

    if not report.findings:
        lines.append("No issues found.")
        return lines

    sections = [
        (Severity.ERROR, "[Errors]"),
        (Severity.WARNING, "[Warnings]"),
        (Severity.INFO, "[Info]"),
    ]
    for severity, title in sections:
        matching = [f for f in report.findings if f.severity is severity]
        if matching:
            lines.append(f"{title} ({len(matching)})")
            lines.extend(f"  - {f.message}" for f in matching)
            lines.append("")

    return lines[:-1] if lines[-1] == "" else lines

"""Fixed instructions and response schemas for document extraction."""

from typing import Any

UNCLEAR_MARKER = "[unclear]"

SYSTEM_INSTRUCTION = f"""You are a document extraction assistant specialized in processing written resolutions submitted for association meetings.

Your task is to extract structured data from scanned document images with high accuracy.

GUIDELINES:

1. EXTRACTION ACCURACY
   - Extract text exactly as written
   - Dates may appear in several formats; normalize birth dates to YYYY-MM-DD
   - Normalize phone numbers to "010-XXXX-XXXX" format

2. CONFIDENCE
   - Report an integer score from 0 to 100
   - 90+: all text clearly visible and printed
   - 50-89: some text handwritten or slightly unclear
   - below 50: text blurry, partially obscured, or inconsistent

3. REVIEW FLAGS
   - Set requires_review=true if confidence is below 90
   - Add extraction_notes for specific issues (e.g., "blurry signature area")

4. VOTE RECOGNITION
   - Look for checkmarks, circles, or filled boxes
   - Extract ALL agenda items and their votes
   - Mention "multiple marks" in extraction_notes if an agenda item has more than one mark

5. HANDLING UNCERTAINTY
   - If a field is completely illegible, set its value to "{UNCLEAR_MARKER}"
   - Never guess; mark as uncertain and flag for review"""

SINGLE_DOCUMENT_PROMPT = """Extract the following from this written resolution. All attached images are pages of ONE document.

1. document_title: the document title
2. property_number: unit or property identifier (e.g., "101")
3. individual: name, is_lessee (true for a lessee, false for an owner), birth_string, residential_address, contact_number
4. votes: for every agenda item, the agenda text, the available options and the option(s) actually marked
5. _meta: confidence (0-100 integer), requires_review, extraction_notes"""

BATCH_DOCUMENT_PROMPT = """The attached images contain {count} SEPARATE written resolutions. Each document starts with a "=== DOCUMENT n ===" marker followed by its pages.

Return a "documents" array with exactly {count} entries, one per document, in any order. Every entry must set source_index to the n of the marker it came from (0 to {last_index}) and contain the same fields as a single-document extraction: document_title, property_number, individual, votes and _meta."""


def document_delimiter(index: int, page_count: int) -> str:
    """Text part announcing the start of a document inside a batch."""
    return f"=== DOCUMENT {index} (pages: {page_count}) ==="


_DOCUMENT_PROPERTIES: dict[str, Any] = {
    "document_title": {"type": "STRING"},
    "property_number": {"type": "STRING"},
    "individual": {
        "type": "OBJECT",
        "properties": {
            "name": {"type": "STRING"},
            "is_lessee": {"type": "BOOLEAN"},
            "birth_string": {"type": "STRING"},
            "residential_address": {"type": "STRING"},
            "contact_number": {"type": "STRING"},
        },
        "required": ["name"],
    },
    "votes": {
        "type": "ARRAY",
        "items": {
            "type": "OBJECT",
            "properties": {
                "agenda": {"type": "STRING"},
                "options": {"type": "ARRAY", "items": {"type": "STRING"}},
                "voted": {"type": "ARRAY", "items": {"type": "STRING"}},
            },
            "required": ["agenda", "voted"],
        },
    },
    "_meta": {
        "type": "OBJECT",
        "properties": {
            "confidence": {"type": "INTEGER"},
            "requires_review": {"type": "BOOLEAN"},
            "extraction_notes": {"type": "ARRAY", "items": {"type": "STRING"}},
        },
        "required": ["confidence", "requires_review"],
    },
}

_DOCUMENT_REQUIRED = ["document_title", "property_number", "individual", "votes", "_meta"]

SINGLE_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": _DOCUMENT_PROPERTIES,
    "required": _DOCUMENT_REQUIRED,
}

BATCH_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "documents": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {"source_index": {"type": "INTEGER"}, **_DOCUMENT_PROPERTIES},
                "required": ["source_index", *_DOCUMENT_REQUIRED],
            },
        },
    },
    "required": ["documents"],
}

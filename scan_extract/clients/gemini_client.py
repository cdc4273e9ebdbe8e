"""Extraction client for the Gemini generateContent REST API.

Provides single-document and batch extraction with:
- Inline base64 page images
- JSON-mode responses constrained by a response schema
- Schema validation of every returned document
- Errors whose messages carry the HTTP status for classification
"""

import logging
from typing import Any, Optional, Protocol

import httpx
import orjson
from pydantic import BaseModel, ValidationError

from ..core.config import ExtractConfig, get_config
from ..core.errors import ExtractionClientError, ResponseValidationError
from ..types.credentials import Credential
from ..types.documents import BatchDocument, ExtractedDocument, WorkItem
from .prompts import (
    BATCH_DOCUMENT_PROMPT,
    BATCH_RESPONSE_SCHEMA,
    SINGLE_DOCUMENT_PROMPT,
    SINGLE_RESPONSE_SCHEMA,
    SYSTEM_INSTRUCTION,
    document_delimiter,
)

logger = logging.getLogger(__name__)

ERROR_BODY_LIMIT = 500


class ExtractionClient(Protocol):
    """Contract for anything that can extract documents with a credential."""

    async def extract_single(self, credential: Credential, item: WorkItem) -> ExtractedDocument:
        """Extract one document from all of its pages."""
        ...

    async def extract_batch(
        self, credential: Credential, items: list[WorkItem]
    ) -> list[BatchDocument]:
        """Extract several documents in one request."""
        ...


class _BatchEnvelope(BaseModel):
    documents: list[BatchDocument]


class GeminiClient:
    """Async Gemini client implementing ExtractionClient."""

    def __init__(
        self,
        config: Optional[ExtractConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            config: Provider configuration. If None, loads from environment.
            http_client: Shared async HTTP client. If None, one is created
                per request.
        """
        self._config = config or get_config()
        self._http_client = http_client
        self._debug = self._config.debug

    @property
    def url(self) -> str:
        """generateContent endpoint."""
        return self._config.generate_url

    def _build_headers(self, credential: Credential) -> dict[str, str]:
        return {
            "x-goog-api-key": credential.secret,
            "Content-Type": "application/json",
        }

    def _build_body(self, parts: list[dict[str, Any]], schema: dict[str, Any]) -> dict[str, Any]:
        return {
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }

    @staticmethod
    def _page_parts(item: WorkItem) -> list[dict[str, Any]]:
        return [
            {"inlineData": {"mimeType": page.mime_type, "data": page.data}}
            for page in item.pages
        ]

    async def _post(self, credential: Credential, body: dict[str, Any]) -> httpx.Response:
        content = orjson.dumps(body)
        headers = self._build_headers(credential)

        if self._debug:
            logger.debug(f"POST {self.url} ({len(content)} bytes) as {credential.display_name}")

        try:
            if self._http_client is not None:
                return await self._http_client.post(self.url, content=content, headers=headers)

            async with httpx.AsyncClient(timeout=self._config.request_timeout) as client:
                return await client.post(self.url, content=content, headers=headers)

        except httpx.TimeoutException as e:
            raise ExtractionClientError(f"Network timeout: {e}") from e
        except httpx.RequestError as e:
            raise ExtractionClientError(f"Network error: {e}") from e

    async def _generate(self, credential: Credential, body: dict[str, Any]) -> Any:
        """Send a request and return the decoded JSON payload."""
        response = await self._post(credential, body)

        if self._debug:
            logger.debug(f"Response status: {response.status_code}")

        if not response.is_success:
            raise ExtractionClientError(
                f"HTTP {response.status_code}: {response.text[:ERROR_BODY_LIMIT]}",
                status_code=response.status_code,
            )

        try:
            envelope = response.json()
        except ValueError as e:
            raise ResponseValidationError(f"Response is not JSON: {e}") from e

        text = self._extract_text(envelope)

        try:
            return orjson.loads(text)
        except orjson.JSONDecodeError as e:
            raise ResponseValidationError(f"Model output is not valid JSON: {e}") from e

    @staticmethod
    def _extract_text(envelope: Any) -> str:
        """Concatenate the text parts of the first candidate."""
        if not isinstance(envelope, dict):
            raise ResponseValidationError("Unexpected response envelope")

        candidates = envelope.get("candidates") or []
        if not candidates:
            reason = (envelope.get("promptFeedback") or {}).get("blockReason")
            detail = f" (blocked: {reason})" if reason else ""
            raise ResponseValidationError(f"Response contained no candidates{detail}")

        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text:
            raise ResponseValidationError("Response contained no text")
        return text

    async def extract_single(self, credential: Credential, item: WorkItem) -> ExtractedDocument:
        """Extract one document from all of its pages.

        Raises:
            ExtractionClientError: On HTTP or transport failure.
            ResponseValidationError: If the output violates the schema.
        """
        parts = self._page_parts(item)
        parts.append({"text": SINGLE_DOCUMENT_PROMPT})

        payload = await self._generate(credential, self._build_body(parts, SINGLE_RESPONSE_SCHEMA))

        try:
            return ExtractedDocument.model_validate(payload)
        except ValidationError as e:
            raise ResponseValidationError(f"Invalid document for {item.source_label}: {e}") from e

    async def extract_batch(
        self, credential: Credential, items: list[WorkItem]
    ) -> list[BatchDocument]:
        """Extract several documents in one request.

        The returned documents carry source_index back-references. Index
        coverage is checked by the caller.

        Raises:
            ExtractionClientError: On HTTP or transport failure.
            ResponseValidationError: If the output violates the schema.
        """
        parts: list[dict[str, Any]] = []
        for index, item in enumerate(items):
            parts.append({"text": document_delimiter(index, item.page_count)})
            parts.extend(self._page_parts(item))

        parts.append(
            {
                "text": BATCH_DOCUMENT_PROMPT.format(
                    count=len(items), last_index=len(items) - 1
                )
            }
        )

        payload = await self._generate(credential, self._build_body(parts, BATCH_RESPONSE_SCHEMA))

        try:
            return _BatchEnvelope.model_validate(payload).documents
        except ValidationError as e:
            raise ResponseValidationError(f"Invalid batch response: {e}") from e

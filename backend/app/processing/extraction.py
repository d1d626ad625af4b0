"""
Extraction Collaborator Client
══════════════════════════════

Turns a stored document into text / markdown / tables / pages by calling
the extraction microservices over HTTP. The OCR engines themselves live in
those services; this module only knows their request/response shapes.

Routing:
  mineru, documentai  →  POST {extraction_service_url}/extract
                           form: file, extraction_method, extraction_options
                           resp: {success, data: {full_text, markdown,
                                  pages, tables}, extraction_time_seconds}
  paddleocr           →  POST {paddleocr_service_url}/extract
                           form: file
                           resp: per-page storage data, converted here into
                                 the standard ExtractionResult shape

Failure contract:
  - Service says success=false, HTTP error, timeout  →  ExtractionResult
    with success=False (the Scheduler retries it).
  - Document missing from S3                          →  MissingRecordError
    (permanent; retrying cannot make the bytes appear).

Workers only see ExtractionResult.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import MissingRecordError
from app.processing.methods import extraction_options
from app.schemas.jobs import ExtractionMethod, FileRecord
from app.storage.s3 import DocumentStorage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    Unified output of every extraction method.

    text             : raw text, pages joined with "\n\n"
    markdown         : layout-preserving markdown (preferred LLM input)
    tables           : list of table dicts (page, data, bbox, ...)
    pages            : list of per-page dicts
    elapsed_seconds  : extraction wall time reported by the service
    """
    success:         bool
    method:          str                  = ""
    text:            str                  = ""
    markdown:        str                  = ""
    tables:          list[Any]            = field(default_factory=list)
    pages:           list[Any]            = field(default_factory=list)
    elapsed_seconds: float                = 0.0
    error:           str | None           = None
    metadata:        dict[str, Any]       = field(default_factory=dict)

    @classmethod
    def failure(cls, method: str, error: str) -> "ExtractionResult":
        return cls(success=False, method=method, error=error)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class ExtractionClient(ABC):

    @abstractmethod
    async def extract(
        self,
        file:    FileRecord,
        method:  ExtractionMethod,
        options: dict[str, Any],
    ) -> ExtractionResult:
        """Extract one file. Provider failures come back as success=False."""


# ---------------------------------------------------------------------------
# PaddleOCR response conversion
# ---------------------------------------------------------------------------

def convert_paddleocr_response(storage_data: dict[str, Any], filename: str) -> ExtractionResult:
    """Flatten PaddleOCR per-page storage data into an ExtractionResult."""
    pages_in = storage_data.get("pages") or []
    meta_in  = storage_data.get("extractionMetadata") or {}

    markdown_parts: list[str] = []
    tables:         list[dict[str, Any]] = []
    pages:          list[dict[str, Any]] = []

    for index, page in enumerate(pages_in):
        page_index = page.get("pageIndex", index)
        page_md    = (page.get("markdown") or {}).get("text") or ""
        markdown_parts.append(page_md)

        blocks = page.get("sourceBlocks") or []
        for block in blocks:
            if (block.get("blockLabel") or "").lower() != "table":
                continue
            content = block.get("blockContent") or ""
            if content.strip():
                tables.append({
                    "table_id": len(tables) + 1,
                    "page":     page_index + 1,
                    "data":     content,
                    "bbox":     block.get("blockBbox") or [],
                    "block_id": block.get("blockId"),
                })

        pages.append({
            "page_number":   page_index + 1,
            "text":          page_md,
            "markdown":      page_md,
            "source_blocks": blocks,
            "layout_boxes":  page.get("layoutBoxes") or [],
            "height":        page.get("pageHeight") or 0,
            "width":         page.get("pageWidth") or 0,
        })

    full_markdown = "\n\n".join(markdown_parts)
    return ExtractionResult(
        success=True,
        method=ExtractionMethod.PADDLEOCR.value,
        text=full_markdown,
        markdown=full_markdown,
        tables=tables,
        pages=pages,
        elapsed_seconds=float(meta_in.get("extractionTimeSeconds") or 0),
        metadata={
            "extraction_method": ExtractionMethod.PADDLEOCR.value,
            "total_pages":       len(pages),
            "total_tables":      len(tables),
            "text_length":       len(full_markdown),
            "document_id":       storage_data.get("documentId") or filename,
        },
    )


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

class HttpExtractionClient(ExtractionClient):
    """
    Extraction over HTTP multipart uploads.

    Constructor args:
        storage        : reader for the stored document bytes
        service_url    : mineru / documentai service base URL
        paddleocr_url  : PaddleOCR service base URL
        timeout        : per-request timeout in seconds (large scans are slow)
        transport      : optional httpx transport (tests use MockTransport)
    """

    def __init__(
        self,
        storage:       DocumentStorage,
        service_url:   str | None = None,
        paddleocr_url: str | None = None,
        timeout:       float | None = None,
        transport:     httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage       = storage
        self._service_url   = (service_url or settings.extraction_service_url).rstrip("/")
        self._paddleocr_url = (paddleocr_url or settings.paddleocr_service_url).rstrip("/")
        self._timeout       = timeout or settings.extraction_timeout_seconds
        self._transport     = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _load(self, file: FileRecord) -> bytes:
        if not file.s3_key:
            raise MissingRecordError(f"File {file.id} has no stored document", stage="extraction")
        try:
            return await self._storage.get_object(file.s3_key)
        except FileNotFoundError as exc:
            raise MissingRecordError(str(exc), stage="extraction") from exc

    async def extract(
        self,
        file:    FileRecord,
        method:  ExtractionMethod,
        options: dict[str, Any],
    ) -> ExtractionResult:
        method  = ExtractionMethod(method)
        options = extraction_options(method, options)
        content = await self._load(file)

        t0 = time.monotonic()
        try:
            if method == ExtractionMethod.PADDLEOCR:
                result = await self._extract_paddleocr(file.filename, content)
            else:
                result = await self._extract_service(file.filename, content, method, options)
        except (httpx.HTTPError, ValueError) as exc:   # ValueError: non-JSON body
            logger.error(
                "Extraction request failed | file=%s method=%s error=%s",
                file.id, method.value, exc,
            )
            return ExtractionResult.failure(method.value, f"{type(exc).__name__}: {exc}")

        logger.info(
            "Extraction | file=%s method=%s success=%s pages=%d tables=%d chars=%d wall=%.1fs",
            file.id, method.value, result.success, len(result.pages), len(result.tables),
            len(result.text), time.monotonic() - t0,
        )
        return result

    async def _extract_service(
        self,
        filename: str,
        content:  bytes,
        method:   ExtractionMethod,
        options:  dict[str, Any],
    ) -> ExtractionResult:
        async with self._http() as client:
            resp = await client.post(
                f"{self._service_url}/extract",
                files={"file": (filename, content, "application/octet-stream")},
                data={
                    "extraction_method":  method.value,
                    "extraction_options": json.dumps(options),
                },
            )
            resp.raise_for_status()
            body = resp.json()

        if not body.get("success"):
            return ExtractionResult.failure(
                method.value, f"Extraction service failed: {body.get('error') or 'unknown error'}",
            )

        data     = body.get("data") or {}
        text     = data.get("full_text") or ""
        markdown = data.get("markdown") or ""
        pages    = data.get("pages") or []
        tables   = data.get("tables") or []
        return ExtractionResult(
            success=True,
            method=method.value,
            text=text,
            markdown=markdown,
            tables=tables,
            pages=pages,
            elapsed_seconds=float(body.get("extraction_time_seconds") or 0),
            metadata={
                "extraction_method":  method.value,
                "extraction_options": options,
                "total_pages":        len(pages),
                "total_tables":       len(tables),
                "text_length":        len(text),
                "markdown_length":    len(markdown),
            },
        )

    async def _extract_paddleocr(self, filename: str, content: bytes) -> ExtractionResult:
        async with self._http() as client:
            resp = await client.post(
                f"{self._paddleocr_url}/extract",
                files={"file": (filename, content, "application/octet-stream")},
            )
            resp.raise_for_status()
            body = resp.json()

        if body.get("success") is False:
            return ExtractionResult.failure(
                ExtractionMethod.PADDLEOCR.value,
                f"PaddleOCR failed: {body.get('error') or 'unknown error'}",
            )
        return convert_paddleocr_response(body, filename)

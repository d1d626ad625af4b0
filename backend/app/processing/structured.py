"""
Processing Collaborator Client — schema-guided structured extraction

Sends extracted document content plus the job's JSON Schema to an LLM and
asks for a strictly schema-conformant JSON object back.

Providers:
  openai  →  ChatOpenAI against api.openai.com
  qwen    →  ChatOpenAI against DashScope's OpenAI-compatible endpoint

Both go through langchain_openai so request shaping, retries inside the SDK
and usage accounting are identical. The response_format is OpenAI's
json_schema mode with strict=True.

Failure classification (see _is_permanent):
  - 4xx "bad request" style errors mean the schema or request itself is
    unacceptable → InvalidJobConfigError (not retried)
  - everything else (timeouts, 5xx, rate limits, unparsable output)
    → ProcessingResult(success=False) and the Scheduler retries
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from app.core.config import settings
from app.core.exceptions import InvalidJobConfigError
from app.processing.methods import processing_options
from app.schemas.jobs import ExtractionSchema, ProcessingMethod

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are an expert at structured data extraction from documents. Extract data "
    "accurately according to the provided schema, paying attention to document "
    "structure, tables, and contextual relationships."
)

_USER_PROMPT = "Extract structured data from this document according to the provided schema:\n\n{content}"


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ProcessingResult:
    """
    data     : parsed JSON object conforming to the job's schema
    metadata : model, temperature, max_tokens, tokens_used, processing_method
    """
    success:  bool
    data:     dict[str, Any] | None = None
    metadata: dict[str, Any]        = field(default_factory=dict)
    error:    str | None            = None


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class ProcessingClient(ABC):

    @abstractmethod
    async def process(
        self,
        content: str,
        schema:  ExtractionSchema,
        method:  ProcessingMethod,
        model:   str,
        options: dict[str, Any],
    ) -> ProcessingResult:
        """Structured extraction. Provider failures come back as success=False."""


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

_PERMANENT_EXCEPTION_TYPES = (
    # openai
    "BadRequestError",
    "UnprocessableEntityError",
    "NotFoundError",
)


def _is_permanent(exc: Exception) -> bool:
    """True if the exception class name marks a request the provider will always reject."""
    name = type(exc).__name__
    return any(name.endswith(p) for p in _PERMANENT_EXCEPTION_TYPES)


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------

class LLMProcessingClient(ProcessingClient):
    """
    Structured extraction through langchain chat models.

    `llm_factory` builds the chat model for (method, model, options); tests
    inject a factory returning a mock with an `ainvoke` coroutine.
    """

    def __init__(self, llm_factory=None, timeout: float | None = None) -> None:
        self._timeout     = timeout or settings.processing_timeout_seconds
        self._llm_factory = llm_factory or self._build_llm

    def _build_llm(self, method: ProcessingMethod, model: str, options: dict[str, Any]) -> BaseChatModel:
        from langchain_openai import ChatOpenAI

        kwargs: dict[str, Any] = {
            "model":       model,
            "temperature": options.get("temperature"),
            "max_tokens":  options.get("max_tokens"),
            "timeout":     self._timeout,
        }
        if options.get("top_p") is not None:
            kwargs["top_p"] = options["top_p"]

        if method == ProcessingMethod.QWEN:
            kwargs["api_key"]  = settings.qwen_api_key
            kwargs["base_url"] = settings.qwen_base_url
        else:
            kwargs["api_key"] = settings.openai_api_key
        return ChatOpenAI(**kwargs)

    async def process(
        self,
        content: str,
        schema:  ExtractionSchema,
        method:  ProcessingMethod,
        model:   str,
        options: dict[str, Any],
    ) -> ProcessingResult:
        method  = ProcessingMethod(method)
        options = processing_options(method, model, options)
        llm     = self._llm_factory(method, model, options)

        structured = llm.bind(
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name":   schema.name,
                    "schema": schema.json_schema,
                    "strict": True,
                },
            }
        )
        messages = [
            SystemMessage(content=_SYSTEM_PROMPT),
            HumanMessage(content=_USER_PROMPT.format(content=content)),
        ]

        t0 = time.monotonic()
        try:
            response = await structured.ainvoke(messages)
        except Exception as exc:
            if _is_permanent(exc):
                raise InvalidJobConfigError(
                    f"{method.value}/{model} rejected the request: {exc}", stage="processing",
                ) from exc
            logger.warning("Processing call failed | method=%s model=%s error=%s", method.value, model, exc)
            return ProcessingResult(success=False, error=f"{type(exc).__name__}: {exc}")

        try:
            data = json.loads(response.content)
        except (TypeError, ValueError) as exc:
            return ProcessingResult(success=False, error=f"Model returned invalid JSON: {exc}")

        usage = getattr(response, "usage_metadata", None) or {}
        metadata = {
            "processing_method": method.value,
            "model":             model,
            "temperature":       options.get("temperature"),
            "max_tokens":        options.get("max_tokens"),
            "tokens_used":       usage.get("total_tokens", 0),
        }
        logger.info(
            "Processing | method=%s model=%s tokens=%s latency=%.0fms",
            method.value, model, metadata["tokens_used"], (time.monotonic() - t0) * 1000,
        )
        return ProcessingResult(success=True, data=data, metadata=metadata)

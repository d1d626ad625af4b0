"""
Collaborator Clients Package
════════════════════════════

The two external stages a document passes through:

  Text Extraction (OCR / layout services) → Structured Processing (LLM)

Modules
───────
  extraction.py  HTTP client for mineru / documentai / paddleocr services
  structured.py  Schema-guided JSON extraction via langchain chat models
  methods.py     Method catalogue: default options per service and model

Design principles
─────────────────
  • Clients are injected into the Scheduler; tests swap in mocks.
  • Collaborator failures come back as success=False results, which the
    Scheduler turns into retries. Requests that can never succeed raise
    PermanentItemError subclasses instead.
"""

from app.processing.extraction import ExtractionClient, ExtractionResult, HttpExtractionClient
from app.processing.structured import LLMProcessingClient, ProcessingClient, ProcessingResult

__all__ = [
    "ExtractionClient",
    "ExtractionResult",
    "HttpExtractionClient",
    "ProcessingClient",
    "ProcessingResult",
    "LLMProcessingClient",
]

"""
Unit Tests — Collaborator clients & status sinks
════════════════════════════════════════════════
HTTP extraction runs against httpx.MockTransport; the LLM client gets a
factory returning a mock chat model; S3 is a mocked DocumentStorage.

Coverage targets:
  ✅ mineru/documentai → multipart POST to /extract with merged options
  ✅ service success=false / HTTP 5xx / non-JSON → success=False result
  ✅ paddleocr response converted (markdown, tables, pages)
  ✅ missing S3 key / object → MissingRecordError
  ✅ LLM structured output parsed, usage recorded, json_schema strict
  ✅ provider 4xx "bad request" → InvalidJobConfigError
  ✅ provider timeout / invalid JSON → success=False
  ✅ qwen routed to the DashScope endpoint
  ✅ RedisStatusSink channel + envelope
"""

from __future__ import annotations

import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from app.core.config import settings
from app.core.exceptions import InvalidJobConfigError, MissingRecordError
from app.processing.extraction import HttpExtractionClient, convert_paddleocr_response
from app.processing.structured import LLMProcessingClient
from app.schemas.jobs import ExtractionMethod, ExtractionSchema, ProcessingMethod
from app.workers.status import LoggingStatusSink, RedisStatusSink
from tests.conftest import INVOICE_SCHEMA, make_file, make_job

SERVICE_URL   = "http://extract.test"
PADDLEOCR_URL = "http://paddle.test"


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_storage() -> MagicMock:
    storage = MagicMock()
    storage.get_object = AsyncMock(return_value=b"%PDF-1.7 fake")
    return storage


@pytest.fixture
def doc_file():
    return make_file(make_job(), filename="invoice.pdf")


def _client(storage, handler) -> HttpExtractionClient:
    return HttpExtractionClient(
        storage=storage,
        service_url=SERVICE_URL,
        paddleocr_url=PADDLEOCR_URL,
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


# ─────────────────────────────────────────────────────────────────────────────
# HTTP extraction client
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.collaborators
class TestHttpExtractionClient:

    async def test_service_extraction(self, mock_storage, doc_file):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"]  = str(request.url)
            seen["body"] = request.read()
            return httpx.Response(200, json={
                "success": True,
                "extraction_time_seconds": 12.5,
                "data": {
                    "full_text": "Invoice INV-9",
                    "markdown":  "# Invoice INV-9",
                    "pages":     [{"page_number": 1}],
                    "tables":    [{"page": 1, "data": "|a|"}],
                },
            })

        result = await _client(mock_storage, handler).extract(
            doc_file, ExtractionMethod.DOCUMENTAI, {"confidenceThreshold": 0.9},
        )

        assert result.success
        assert result.markdown == "# Invoice INV-9"
        assert result.elapsed_seconds == 12.5
        assert result.metadata["total_tables"] == 1
        assert result.metadata["extraction_options"]["confidenceThreshold"] == 0.9
        assert result.metadata["extraction_options"]["extractTables"] is True
        assert seen["url"] == f"{SERVICE_URL}/extract"
        assert b'name="extraction_method"' in seen["body"]
        assert b"documentai" in seen["body"]
        mock_storage.get_object.assert_awaited_once_with(doc_file.s3_key)

    async def test_service_reports_failure(self, mock_storage, doc_file):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error": "corrupt pdf"})

        result = await _client(mock_storage, handler).extract(doc_file, ExtractionMethod.MINERU, {})

        assert not result.success
        assert "corrupt pdf" in result.error

    async def test_http_error_is_failure_result(self, mock_storage, doc_file):
        def handler(request):
            return httpx.Response(503, text="overloaded")

        result = await _client(mock_storage, handler).extract(doc_file, ExtractionMethod.MINERU, {})

        assert not result.success
        assert "HTTPStatusError" in result.error

    async def test_non_json_body_is_failure_result(self, mock_storage, doc_file):
        def handler(request):
            return httpx.Response(200, text="<html>gateway</html>")

        result = await _client(mock_storage, handler).extract(doc_file, ExtractionMethod.MINERU, {})

        assert not result.success

    async def test_paddleocr_routed_and_converted(self, mock_storage, doc_file):
        def handler(request):
            assert str(request.url) == f"{PADDLEOCR_URL}/extract"
            return httpx.Response(200, json={
                "documentId": "doc-1",
                "extractionMetadata": {"extractionTimeSeconds": 3},
                "pages": [{
                    "pageIndex": 0,
                    "markdown": {"text": "Page one"},
                    "sourceBlocks": [
                        {"blockLabel": "table", "blockContent": "<table/>", "blockId": 7},
                        {"blockLabel": "text", "blockContent": "hello"},
                    ],
                }],
            })

        result = await _client(mock_storage, handler).extract(doc_file, ExtractionMethod.PADDLEOCR, {})

        assert result.success
        assert result.text == result.markdown == "Page one"
        assert result.tables == [{
            "table_id": 1, "page": 1, "data": "<table/>", "bbox": [], "block_id": 7,
        }]
        assert result.elapsed_seconds == 3.0

    async def test_missing_s3_key_is_permanent(self, mock_storage):
        file = make_file(make_job(), s3_key=None)

        with pytest.raises(MissingRecordError):
            await _client(mock_storage, lambda r: httpx.Response(200)).extract(
                file, ExtractionMethod.MINERU, {},
            )

    async def test_missing_object_is_permanent(self, mock_storage, doc_file):
        mock_storage.get_object.side_effect = FileNotFoundError("gone")

        with pytest.raises(MissingRecordError):
            await _client(mock_storage, lambda r: httpx.Response(200)).extract(
                doc_file, ExtractionMethod.MINERU, {},
            )

    def test_paddleocr_conversion_multi_page(self):
        result = convert_paddleocr_response(
            {"pages": [{"markdown": {"text": "a"}}, {"markdown": {"text": "b"}}]},
            "scan.pdf",
        )

        assert result.markdown == "a\n\nb"
        assert [p["page_number"] for p in result.pages] == [1, 2]
        assert result.metadata["document_id"] == "scan.pdf"


# ─────────────────────────────────────────────────────────────────────────────
# LLM processing client
# ─────────────────────────────────────────────────────────────────────────────

class BadRequestError(Exception):
    """Stand-in with the provider SDK's class name."""


def _fake_llm(response=None, error=None):
    runnable = MagicMock()
    runnable.ainvoke = AsyncMock(return_value=response, side_effect=error)
    llm = MagicMock()
    llm.bind.return_value = runnable
    return llm, runnable


@pytest.mark.unit
@pytest.mark.collaborators
class TestLLMProcessingClient:

    @pytest.fixture
    def schema(self) -> ExtractionSchema:
        return ExtractionSchema.from_stored({"name": "invoice", "schema": INVOICE_SCHEMA})

    async def test_structured_output(self, schema):
        response = SimpleNamespace(
            content=json.dumps({"invoice_number": "INV-1", "total": 10}),
            usage_metadata={"total_tokens": 150},
        )
        llm, runnable = _fake_llm(response)
        factory = MagicMock(return_value=llm)

        result = await LLMProcessingClient(llm_factory=factory).process(
            "# Invoice", schema, ProcessingMethod.OPENAI, "gpt-4o", {"temperature": 0},
        )

        assert result.success
        assert result.data == {"invoice_number": "INV-1", "total": 10}
        assert result.metadata == {
            "processing_method": "openai",
            "model":             "gpt-4o",
            "temperature":       0,
            "max_tokens":        4000,
            "tokens_used":       150,
        }
        factory.assert_called_once_with(
            ProcessingMethod.OPENAI, "gpt-4o", {"temperature": 0, "max_tokens": 4000},
        )
        response_format = llm.bind.call_args.kwargs["response_format"]
        assert response_format["type"] == "json_schema"
        assert response_format["json_schema"] == {"name": "invoice", "schema": INVOICE_SCHEMA, "strict": True}
        messages = runnable.ainvoke.await_args.args[0]
        assert "# Invoice" in messages[-1].content

    async def test_bad_request_is_permanent(self, schema):
        llm, _ = _fake_llm(error=BadRequestError("invalid schema"))

        with pytest.raises(InvalidJobConfigError) as exc_info:
            await LLMProcessingClient(llm_factory=lambda *a: llm).process(
                "text", schema, ProcessingMethod.OPENAI, "gpt-4o", {},
            )
        assert exc_info.value.stage == "processing"

    async def test_timeout_is_failure_result(self, schema):
        llm, _ = _fake_llm(error=TimeoutError("read timeout"))

        result = await LLMProcessingClient(llm_factory=lambda *a: llm).process(
            "text", schema, ProcessingMethod.QWEN, "qwen-max", {},
        )

        assert not result.success
        assert "TimeoutError" in result.error

    async def test_invalid_json_is_failure_result(self, schema):
        llm, _ = _fake_llm(SimpleNamespace(content="not json", usage_metadata=None))

        result = await LLMProcessingClient(llm_factory=lambda *a: llm).process(
            "text", schema, ProcessingMethod.OPENAI, "gpt-4o", {},
        )

        assert not result.success
        assert "invalid JSON" in result.error

    def test_qwen_uses_dashscope_endpoint(self):
        llm = LLMProcessingClient()._build_llm(
            ProcessingMethod.QWEN, "qwen-plus", {"temperature": 0.1, "max_tokens": 2000, "top_p": 0.8},
        )

        assert llm.model_name == "qwen-plus"
        assert llm.openai_api_base == settings.qwen_base_url
        assert llm.top_p == 0.8


# ─────────────────────────────────────────────────────────────────────────────
# Status sinks
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.collaborators
class TestStatusSinks:

    async def test_redis_sink_publishes_envelope(self):
        client = AsyncMock()
        client.publish.return_value = 2
        sink = RedisStatusSink(client, channel_prefix="docflow:status")

        await sink.publish("job-1", "file-status-update", {"file_id": "f"})

        channel, message = client.publish.await_args.args
        assert channel == "docflow:status:job-1"
        assert json.loads(message) == {"event": "file-status-update", "payload": {"file_id": "f"}}

    async def test_logging_sink(self, caplog):
        with caplog.at_level(logging.INFO, logger="app.workers.status"):
            await LoggingStatusSink().publish("job-1", "job-status-update", {"status": "completed"})

        assert "job-status-update" in caplog.text

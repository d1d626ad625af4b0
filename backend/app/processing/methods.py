"""
Processing Method Catalogue — extraction services and LLM models

Answers two questions for the pipeline:
  "Which options does this extraction method run with?"
  "Which sampling parameters does this model run with?"

Job-supplied options always win; catalogue defaults fill the gaps key by key.

Adding a new model:
  Add a ModelSpec to _REGISTERED_MODELS and it becomes immediately usable.
  Unknown names still resolve through the prefix fallbacks below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from app.schemas.jobs import ExtractionMethod, ProcessingMethod

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Extraction methods
# ---------------------------------------------------------------------------

_EXTRACTION_DEFAULTS: dict[ExtractionMethod, dict[str, Any]] = {
    ExtractionMethod.MINERU: {
        "preserveFormatting": True,
        "extractTables":      True,
        "extractImages":      False,
    },
    ExtractionMethod.DOCUMENTAI: {
        "extractTables":       True,
        "extractImages":       False,
        "confidenceThreshold": 0.8,
    },
    ExtractionMethod.PADDLEOCR: {
        "extractTables": True,
        "extractImages": False,
    },
}


def extraction_options(method: ExtractionMethod | str, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """Catalogue defaults for the method, overlaid with the job's options."""
    return {**_EXTRACTION_DEFAULTS.get(ExtractionMethod(method), {}), **(overrides or {})}


# ---------------------------------------------------------------------------
# Processing models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelSpec:
    """
    Default sampling parameters for one model.

    top_p is only sent to providers that accept it (None → omitted).
    """
    model_id:    str
    method:      ProcessingMethod
    temperature: float
    max_tokens:  int
    top_p:       float | None = None

    def options(self) -> dict[str, Any]:
        opts: dict[str, Any] = {"temperature": self.temperature, "max_tokens": self.max_tokens}
        if self.top_p is not None:
            opts["top_p"] = self.top_p
        return opts


_REGISTERED_MODELS: list[ModelSpec] = [
    # OpenAI
    ModelSpec("gpt-4o",            ProcessingMethod.OPENAI, 0.1, 4000),
    ModelSpec("gpt-4o-2024-08-06", ProcessingMethod.OPENAI, 0.1, 4000),
    ModelSpec("gpt-4",             ProcessingMethod.OPENAI, 0.1, 4000),
    ModelSpec("gpt-3.5-turbo",     ProcessingMethod.OPENAI, 0.2, 3000),
    # Qwen (DashScope, OpenAI-compatible endpoint)
    ModelSpec("qwen3-max",         ProcessingMethod.QWEN,   0.1, 2000, top_p=0.8),
    ModelSpec("qwen-max",          ProcessingMethod.QWEN,   0.1, 2000, top_p=0.8),
    ModelSpec("qwen-plus",         ProcessingMethod.QWEN,   0.1, 2000, top_p=0.8),
    ModelSpec("qwen-flash",        ProcessingMethod.QWEN,   0.2, 1500, top_p=0.8),
    ModelSpec("qwen-turbo",        ProcessingMethod.QWEN,   0.2, 1500, top_p=0.8),
    ModelSpec("qwen3-coder-plus",  ProcessingMethod.QWEN,   0.1, 2000, top_p=0.8),
    ModelSpec("qwen3-coder-flash", ProcessingMethod.QWEN,   0.2, 1500, top_p=0.8),
]

_BY_ID: dict[str, ModelSpec] = {s.model_id: s for s in _REGISTERED_MODELS}

DEFAULT_MODELS: dict[ProcessingMethod, str] = {
    ProcessingMethod.OPENAI: "gpt-4o",
    ProcessingMethod.QWEN:   "qwen3-max",
}

# Prefix → registered model whose defaults an unknown model inherits.
# Checked in order; the first match wins.
_QWEN_PREFIX_FALLBACKS: list[tuple[str, str]] = [
    ("qwen3-max",   "qwen3-max"),
    ("qwen-max",    "qwen3-max"),
    ("qwen-plus",   "qwen-plus"),
    ("qwen-flash",  "qwen-flash"),
    ("qwen-turbo",  "qwen-turbo"),
    ("qwen3-coder", "qwen3-coder-plus"),
]


def models_for(method: ProcessingMethod | str) -> list[str]:
    method = ProcessingMethod(method)
    return [s.model_id for s in _REGISTERED_MODELS if s.method == method]


def resolve_model_spec(method: ProcessingMethod | str, model: str | None) -> ModelSpec:
    """
    Find the catalogue entry for (method, model).

    Unknown OpenAI models use the gpt-4o defaults. Unknown Qwen models fall
    back by prefix, then to qwen3-max.
    """
    method = ProcessingMethod(method)
    model  = model or DEFAULT_MODELS[method]

    spec = _BY_ID.get(model)
    if spec is not None and spec.method == method:
        return spec

    if method == ProcessingMethod.QWEN:
        for prefix, target in _QWEN_PREFIX_FALLBACKS:
            if model.startswith(prefix):
                base = _BY_ID[target]
                break
        else:
            base = _BY_ID[DEFAULT_MODELS[method]]
    else:
        base = _BY_ID[DEFAULT_MODELS[method]]

    logger.debug("Unregistered model %s/%s — using %s defaults", method.value, model, base.model_id)
    return ModelSpec(
        model_id=model,
        method=method,
        temperature=base.temperature,
        max_tokens=base.max_tokens,
        top_p=base.top_p,
    )


def processing_options(
    method:    ProcessingMethod | str,
    model:     str | None,
    overrides: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Model defaults overlaid with the job's options."""
    return {**resolve_model_spec(method, model).options(), **(overrides or {})}

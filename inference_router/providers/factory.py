"""
Provider factory -- turns ProviderSettings into adapter instances.

Supported provider types:

  mock        Built-in deterministic mock, no API key needed (default)
  openai      OpenAI API        -- credentials_ref names the API key secret
  groq        Groq API          -- OpenAI-compatible, default model llama-3.3-70b-versatile
  gemini      Google AI         -- OpenAI-compatible endpoint, default model gemini-2.0-flash
  openrouter  OpenRouter        -- OpenAI-compatible, default model meta-llama/llama-3.3-70b-instruct:free
  local       Any OpenAI-compatible local server (LM Studio, vLLM, llama.cpp); no key
  anthropic   Anthropic Messages API
  ollama      Ollama native API (local)

SDK-backed adapters are imported lazily so a deployment that only runs
local providers does not pay for the cloud SDK imports.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from inference_router.credentials import SecretProvider
from inference_router.providers.base import ProviderAdapter
from inference_router.providers.mock_provider import MockProvider

if TYPE_CHECKING:
    from inference_router.config import ProviderSettings

logger = logging.getLogger(__name__)

_OPENAI_COMPATIBLE = {"openai", "groq", "gemini", "openrouter", "local"}

Builder = Callable[..., ProviderAdapter]


def _common_kwargs(settings: ProviderSettings) -> dict[str, Any]:
    kwargs: dict[str, Any] = {
        "priority": settings.priority,
        "cost_per_1k_tokens": settings.cost_per_1k_tokens,
        "timeout_s": settings.timeout_s,
    }
    if settings.kind is not None:
        kwargs["kind"] = settings.kind
    if settings.capabilities is not None:
        kwargs["capabilities"] = settings.capabilities
    return kwargs


def _build_mock(settings: ProviderSettings, secrets: SecretProvider | None, kwargs: dict[str, Any]) -> ProviderAdapter:
    return MockProvider(settings.id, **kwargs)


def _build_openai_compatible(
    settings: ProviderSettings, secrets: SecretProvider | None, kwargs: dict[str, Any]
) -> ProviderAdapter:
    from inference_router.providers.openai_provider import OpenAICompatibleProvider

    if settings.embedding_model is not None:
        kwargs["embedding_model"] = settings.embedding_model
    return OpenAICompatibleProvider(
        settings.id,
        flavor=settings.type,
        secrets=secrets,
        credentials_ref=settings.credentials_ref,
        base_url=settings.base_url,
        model=settings.model,
        **kwargs,
    )


def _build_anthropic(
    settings: ProviderSettings, secrets: SecretProvider | None, kwargs: dict[str, Any]
) -> ProviderAdapter:
    from inference_router.providers.anthropic_provider import AnthropicProvider

    return AnthropicProvider(
        settings.id,
        secrets=secrets,
        credentials_ref=settings.credentials_ref,
        base_url=settings.base_url,
        model=settings.model,
        **kwargs,
    )


def _build_ollama(
    settings: ProviderSettings, secrets: SecretProvider | None, kwargs: dict[str, Any]
) -> ProviderAdapter:
    from inference_router.providers.ollama_provider import OllamaProvider

    if settings.embedding_model is not None:
        kwargs["embedding_model"] = settings.embedding_model
    return OllamaProvider(
        settings.id,
        base_url=settings.base_url,
        model=settings.model,
        **kwargs,
    )


_BUILDERS: dict[str, Builder] = {
    "mock": _build_mock,
    "anthropic": _build_anthropic,
    "ollama": _build_ollama,
    **{name: _build_openai_compatible for name in _OPENAI_COMPATIBLE},
}


def build_adapter(settings: ProviderSettings, secrets: SecretProvider | None = None) -> ProviderAdapter:
    builder = _BUILDERS.get(settings.type)
    if builder is None:
        raise ValueError(
            f"Unknown provider type '{settings.type}'. "
            f"Available: {', '.join(sorted(_BUILDERS))}"
        )
    adapter = builder(settings, secrets, _common_kwargs(settings))
    logger.info(
        "Provider initialized: %s (type=%s, kind=%s, model=%s)",
        settings.id,
        settings.type,
        adapter.kind.value,
        settings.model or "provider-default",
    )
    return adapter


def build_adapters(
    providers: Iterable[ProviderSettings], secrets: SecretProvider | None = None
) -> list[ProviderAdapter]:
    """Instantiate every enabled provider, in configuration order."""
    return [build_adapter(p, secrets) for p in providers if p.enabled]

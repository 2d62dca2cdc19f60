"""LLM and embedding provider access.

Providers are configured by id in settings. Each has a kind:

- anthropic: Anthropic Messages API (chat only)
- openrouter: OpenRouter through the OpenAI SDK (chat and embeddings)
- openai: any OpenAI-compatible endpoint (chat and embeddings)
- local: sentence-transformers on this machine (embeddings only)

SDK exceptions are translated into KBError codes so the task queue can tell
transient failures (timeouts, rate limits, 5xx) from permanent ones (bad key).

Usage:
    client = ProviderClient(settings.providers)
    reply = await client.chat("anthropic", "claude-3.5-haiku", messages)
    vector = await client.embed("local", EMBEDDING_MODEL, "some text")
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .config import ProviderConfig
from .errors import ErrorCode, KBError
from .indexer.embedding_cache import EmbeddingCache, model_key

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

log = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

DEFAULT_KEY_ENV: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "openai": "OPENAI_API_KEY",
}


# =============================================================================
# Model Name Translation
# =============================================================================

# Canonical model names mapped to (anthropic_name, openrouter_name)
MODEL_ALIASES: dict[str, tuple[str, str]] = {
    "claude-3-haiku": ("claude-3-haiku-20240307", "anthropic/claude-3-haiku"),
    "claude-3.5-haiku": ("claude-3-5-haiku-20241022", "anthropic/claude-3-5-haiku"),
    "claude-haiku-4.5": ("claude-haiku-4-5-20251001", "anthropic/claude-haiku-4.5"),
    "claude-3.5-sonnet": ("claude-3-5-sonnet-20241022", "anthropic/claude-3.5-sonnet"),
    "claude-sonnet-4": ("claude-sonnet-4-20250514", "anthropic/claude-sonnet-4"),
    "claude-opus-4": ("claude-opus-4-20250514", "anthropic/claude-opus-4"),
}


def resolve_model(model: str, kind: str) -> str:
    """Resolve a model name to the format a provider kind expects.

    Examples:
        >>> resolve_model("claude-3.5-haiku", "anthropic")
        'claude-3-5-haiku-20241022'
        >>> resolve_model("claude-3.5-haiku", "openrouter")
        'anthropic/claude-3-5-haiku'
        >>> resolve_model("anthropic/claude-3-5-haiku", "anthropic")
        'claude-3-5-haiku'
    """
    if model in MODEL_ALIASES:
        anthropic_name, openrouter_name = MODEL_ALIASES[model]
        if kind == "anthropic":
            return anthropic_name
        if kind == "openrouter":
            return openrouter_name
        return model

    if kind == "anthropic" and model.startswith("anthropic/"):
        return model.removeprefix("anthropic/")

    if kind == "openrouter" and model.startswith("claude-"):
        return f"anthropic/{model}"

    return model


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class ChatResult:
    content: str
    tokens_used: int = 0


@dataclass(frozen=True)
class EmbedResult:
    embedding: list[float]
    tokens_used: int = 0
    cached: bool = False


def _map_sdk_error(exc: Exception, sdk: Any, provider_id: str) -> KBError | None:
    """Translate an anthropic/openai SDK exception. Both SDKs share class names."""
    details = {"provider_id": provider_id}
    if isinstance(exc, sdk.APITimeoutError):
        return KBError(ErrorCode.E201_PROVIDER_TIMEOUT, f"{provider_id} request timed out", details)
    if isinstance(exc, sdk.RateLimitError):
        return KBError(ErrorCode.E202_RATE_LIMITED, f"{provider_id} rate limit hit: {exc}", details)
    if isinstance(exc, (sdk.AuthenticationError, sdk.PermissionDeniedError)):
        return KBError(ErrorCode.E203_INVALID_API_KEY, f"{provider_id} rejected the API key: {exc}", details)
    if isinstance(exc, sdk.APIError):
        return KBError(ErrorCode.E204_PROVIDER_ERROR, f"{provider_id} request failed: {exc}", details)
    return None


# =============================================================================
# Client
# =============================================================================


class ProviderClient:
    """Chat and embedding calls across configured providers."""

    def __init__(
        self,
        providers: dict[str, ProviderConfig],
        cache_root: Path | None = None,
    ) -> None:
        self._providers = providers
        self._cache_root = cache_root
        self._clients: dict[str, Any] = {}
        self._caches: dict[str, EmbeddingCache] = {}
        self._local_models: dict[str, SentenceTransformer] = {}

    def get_provider(self, provider_id: str) -> ProviderConfig:
        """Raises KBError E401 if the id is unknown or disabled."""
        config = self._providers.get(provider_id)
        if config is None or not config.enabled:
            raise KBError(
                ErrorCode.E401_PROVIDER_NOT_CONFIGURED,
                f"Provider '{provider_id}' is not configured",
                {"provider_id": provider_id},
            )
        return config

    def is_configured(self, provider_id: str) -> bool:
        config = self._providers.get(provider_id)
        if config is None or not config.enabled:
            return False
        if config.kind == "local":
            return True
        return bool(os.environ.get(config.api_key_env or DEFAULT_KEY_ENV[config.kind]))

    # -------------------------------------------------------------------------
    # SDK clients
    # -------------------------------------------------------------------------

    def _api_key(self, provider_id: str, config: ProviderConfig) -> str:
        env_name = config.api_key_env or DEFAULT_KEY_ENV.get(config.kind, "")
        api_key = os.environ.get(env_name) if env_name else None
        if not api_key:
            raise KBError(
                ErrorCode.E401_PROVIDER_NOT_CONFIGURED,
                f"{env_name} environment variable is required for provider '{provider_id}'",
                {"provider_id": provider_id, "env": env_name},
            )
        return api_key

    def _get_client(self, provider_id: str, config: ProviderConfig) -> Any:
        if provider_id in self._clients:
            return self._clients[provider_id]

        api_key = self._api_key(provider_id, config)
        if config.kind == "anthropic":
            try:
                import anthropic
            except ImportError as e:
                raise KBError(
                    ErrorCode.E401_PROVIDER_NOT_CONFIGURED,
                    "anthropic package is required for Anthropic providers",
                ) from e
            kwargs: dict[str, Any] = {"api_key": api_key, "timeout": config.timeout}
            if config.base_url:
                kwargs["base_url"] = config.base_url
            client: Any = anthropic.AsyncAnthropic(**kwargs)
        else:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise KBError(
                    ErrorCode.E401_PROVIDER_NOT_CONFIGURED,
                    "openai package is required for OpenAI-compatible providers",
                ) from e
            base_url = config.base_url or (OPENROUTER_BASE_URL if config.kind == "openrouter" else None)
            client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=config.timeout)

        self._clients[provider_id] = client
        return client

    @staticmethod
    def _sdk_for(kind: str) -> Any:
        if kind == "anthropic":
            import anthropic

            return anthropic
        import openai

        return openai

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def chat(
        self,
        provider_id: str,
        model: str,
        messages: list[dict[str, str]],
        temperature: float = 0.3,
        top_p: float | None = None,
        max_tokens: int = 2000,
    ) -> ChatResult:
        """Run one chat completion.

        Raises:
            KBError: E401 when the provider is unusable, E201/E202/E203/E204
                for SDK failures.
        """
        config = self.get_provider(provider_id)
        if config.kind == "local":
            raise KBError(
                ErrorCode.E401_PROVIDER_NOT_CONFIGURED,
                f"Provider '{provider_id}' only supports embeddings",
                {"provider_id": provider_id},
            )

        client = self._get_client(provider_id, config)
        resolved_model = resolve_model(model, config.kind)
        sdk = self._sdk_for(config.kind)

        try:
            if config.kind == "anthropic":
                return await self._anthropic_chat(client, resolved_model, messages, temperature, top_p, max_tokens)
            return await self._openai_chat(client, resolved_model, messages, temperature, top_p, max_tokens)
        except Exception as e:
            mapped = _map_sdk_error(e, sdk, provider_id)
            if mapped is None:
                raise
            log.warning("Chat call to %s (%s) failed: %s", provider_id, resolved_model, mapped.message)
            raise mapped from e

    @staticmethod
    async def _anthropic_chat(
        client: Any,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        top_p: float | None,
        max_tokens: int,
    ) -> ChatResult:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [m for m in messages if m["role"] != "system"],
        }
        if system:
            kwargs["system"] = system
        if top_p is not None:
            kwargs["top_p"] = top_p

        response = await client.messages.create(**kwargs)
        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        usage = getattr(response, "usage", None)
        tokens = (usage.input_tokens + usage.output_tokens) if usage else 0
        return ChatResult(content=text, tokens_used=tokens)

    @staticmethod
    async def _openai_chat(
        client: Any,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        top_p: float | None,
        max_tokens: int,
    ) -> ChatResult:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        if top_p is not None:
            kwargs["top_p"] = top_p

        response = await client.chat.completions.create(**kwargs)
        usage = getattr(response, "usage", None)
        return ChatResult(
            content=response.choices[0].message.content or "",
            tokens_used=usage.total_tokens if usage else 0,
        )

    # -------------------------------------------------------------------------
    # Embeddings
    # -------------------------------------------------------------------------

    def _get_cache(self, provider_id: str, model: str, dimensions: int | None) -> EmbeddingCache | None:
        if self._cache_root is None:
            return None
        key = model_key(provider_id, model, dimensions)
        if key not in self._caches:
            self._caches[key] = EmbeddingCache(self._cache_root, key)
        return self._caches[key]

    async def embed(
        self,
        provider_id: str,
        model: str,
        text: str,
        dimensions: int | None = None,
    ) -> EmbedResult:
        """Embed text, consulting the embedding cache first.

        Raises:
            KBError: E401 when the provider cannot embed, E2xx for SDK failures.
        """
        config = self.get_provider(provider_id)
        if config.kind == "anthropic":
            raise KBError(
                ErrorCode.E401_PROVIDER_NOT_CONFIGURED,
                f"Provider '{provider_id}' does not offer embeddings",
                {"provider_id": provider_id},
            )

        cache = self._get_cache(provider_id, model, dimensions)
        if cache is not None:
            cached = cache.get(text)
            if cached is not None:
                return EmbedResult(embedding=cached, cached=True)

        if config.kind == "local":
            result = await self._local_embed(model, text)
        else:
            result = await self._remote_embed(provider_id, config, model, text, dimensions)

        if cache is not None:
            cache.put(text, result.embedding)
        return result

    async def _local_embed(self, model: str, text: str) -> EmbedResult:
        if model not in self._local_models:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise KBError(
                    ErrorCode.E401_PROVIDER_NOT_CONFIGURED,
                    "sentence-transformers is required for local embeddings. "
                    "Install with: pip install 'kbsmith[semantic]'",
                ) from e
            self._local_models[model] = SentenceTransformer(model)

        encoder = self._local_models[model]
        vector = await asyncio.to_thread(encoder.encode, text, convert_to_numpy=True)
        return EmbedResult(embedding=[float(x) for x in vector.tolist()])

    async def _remote_embed(
        self,
        provider_id: str,
        config: ProviderConfig,
        model: str,
        text: str,
        dimensions: int | None,
    ) -> EmbedResult:
        client = self._get_client(provider_id, config)
        sdk = self._sdk_for(config.kind)
        kwargs: dict[str, Any] = {"model": model, "input": text}
        if dimensions and config.kind == "openai":
            kwargs["dimensions"] = dimensions
        try:
            response = await client.embeddings.create(**kwargs)
        except Exception as e:
            mapped = _map_sdk_error(e, sdk, provider_id)
            if mapped is None:
                raise
            log.warning("Embedding call to %s failed: %s", provider_id, mapped.message)
            raise mapped from e

        usage = getattr(response, "usage", None)
        return EmbedResult(
            embedding=list(response.data[0].embedding),
            tokens_used=usage.total_tokens if usage else 0,
        )

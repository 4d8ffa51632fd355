"""
LLM Provider Implementations

HTTP adapters for OpenAI-compatible chat APIs (OpenAI, OpenRouter) and
Google Gemini, plus the factory that turns an AI mode into a
primary/backup pair.
"""

import time
from typing import Any, Dict, List, Optional, Tuple, Type

import httpx
import structlog

from classpartner_core.config import Settings
from classpartner_core.errors import ConfigurationError, LLMProviderError
from classpartner_core.llm.base import (
    AIMode,
    ChatMessage,
    LLMProvider,
    ProviderConfig,
    ProviderKind,
)

logger = structlog.get_logger(__name__)


DEFAULT_MODELS = {
    ProviderKind.OPENAI: "gpt-4o-mini",
    ProviderKind.OPENROUTER: "meta/llama-3.1-8b-instruct",
    ProviderKind.GEMINI: "gemini-2.5-flash",
}

DEFAULT_BASE_URLS = {
    ProviderKind.OPENAI: "https://api.openai.com/v1",
    ProviderKind.OPENROUTER: "https://openrouter.ai/api/v1",
    ProviderKind.GEMINI: "https://generativelanguage.googleapis.com/v1beta",
}


class HTTPChatProvider(LLMProvider):
    """Shared httpx client lifecycle and error mapping."""

    kind: ProviderKind = ProviderKind.OPENAI

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        if not config.api_key:
            raise ConfigurationError(f"{self.name} API key missing", provider=self.name)

        self.model = config.model or DEFAULT_MODELS[self.kind]
        self.base_url = (config.base_url or DEFAULT_BASE_URLS[self.kind]).rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

        # Statistics
        self._total_requests = 0
        self._total_latency = 0.0

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def connect(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.config.timeout,
        )
        logger.debug("llm_provider_connected", provider=self.name, model=self.model)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self._client:
            await self.connect()

        start_time = time.perf_counter()
        self._total_requests += 1

        try:
            response = await self._client.post(path, json=body)
        except httpx.TimeoutException as e:
            raise LLMProviderError(
                f"{self.name} request timed out (service unavailable): {e}",
                provider=self.name,
            ) from e
        except httpx.TransportError as e:
            raise LLMProviderError(
                f"{self.name} unavailable: {e}",
                provider=self.name,
            ) from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        self._total_latency += latency_ms

        if response.status_code >= 400:
            logger.warning(
                "llm_provider_error",
                provider=self.name,
                status=response.status_code,
                latency_ms=round(latency_ms, 2),
            )
            raise LLMProviderError(
                f"{self.name} chat error {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
                provider=self.name,
            )

        logger.debug(
            "llm_provider_complete",
            provider=self.name,
            model=self.model,
            latency_ms=round(latency_ms, 2),
        )
        return response.json()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "model": self.model,
            "total_requests": self._total_requests,
            "avg_latency_ms": (
                self._total_latency / self._total_requests if self._total_requests else 0.0
            ),
        }


class OpenAIProvider(HTTPChatProvider):
    """OpenAI chat completions API."""

    name = "openai"
    kind = ProviderKind.OPENAI
    supports_json_mode = True

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    async def chat(
        self,
        messages: List[ChatMessage],
        temperature: float = 0.2,
        json_mode: bool = False,
    ) -> str:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_dict() for message in messages],
            "temperature": temperature,
        }
        if json_mode and self.supports_json_mode:
            body["response_format"] = {"type": "json_object"}

        data = await self._post("/chat/completions", body)
        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""


class OpenRouterProvider(OpenAIProvider):
    """OpenRouter, OpenAI-compatible with attribution headers."""

    name = "openrouter"
    kind = ProviderKind.OPENROUTER
    supports_json_mode = False

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self.config.referer
        headers["X-Title"] = self.config.title
        return headers


class GeminiProvider(HTTPChatProvider):
    """Google Gemini `generateContent` REST API."""

    name = "gemini"
    kind = ProviderKind.GEMINI

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self.config.api_key,
            "Content-Type": "application/json",
        }

    async def chat(
        self,
        messages: List[ChatMessage],
        temperature: float = 0.2,
        json_mode: bool = False,
    ) -> str:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in messages
            if m.role != "system"
        ]

        generation_config: Dict[str, Any] = {"temperature": temperature}
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        data = await self._post(f"/models/{self.model}:generateContent", body)
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)


# =============================================================================
# Factory
# =============================================================================


class ChatProviderFactory:
    """Factory for creating chat providers."""

    _providers: Dict[ProviderKind, Type[HTTPChatProvider]] = {
        ProviderKind.OPENAI: OpenAIProvider,
        ProviderKind.OPENROUTER: OpenRouterProvider,
        ProviderKind.GEMINI: GeminiProvider,
    }

    @classmethod
    def register(cls, kind: ProviderKind, provider_class: Type[HTTPChatProvider]) -> None:
        cls._providers[kind] = provider_class

    @classmethod
    def create(cls, config: ProviderConfig) -> LLMProvider:
        provider_class = cls._providers.get(ProviderKind(config.kind))
        if not provider_class:
            raise ConfigurationError(f"Unknown provider: {config.kind}")
        return provider_class(config)

    @classmethod
    def create_optional(cls, config: Optional[ProviderConfig]) -> Optional[LLMProvider]:
        """Create a provider, or None when its credentials are missing."""
        if config is None or not config.has_credentials:
            return None
        return cls.create(config)

    @classmethod
    def list_providers(cls) -> List[str]:
        return [kind.value for kind in cls._providers]


_MODE_PAIRS: Dict[AIMode, Tuple[ProviderKind, Optional[ProviderKind]]] = {
    AIMode.HYBRID_GEMINI: (ProviderKind.GEMINI, ProviderKind.OPENAI),
    AIMode.HYBRID_OPENAI: (ProviderKind.OPENAI, ProviderKind.OPENROUTER),
    AIMode.HYBRID_OPENROUTER: (ProviderKind.OPENROUTER, ProviderKind.OPENAI),
    AIMode.GEMINI: (ProviderKind.GEMINI, None),
    AIMode.OPENAI: (ProviderKind.OPENAI, None),
    AIMode.OPENROUTER: (ProviderKind.OPENROUTER, None),
}


def provider_configs_from_settings(settings: Settings) -> Dict[ProviderKind, ProviderConfig]:
    """Build one ProviderConfig per backend from application settings."""
    return {
        ProviderKind.OPENAI: ProviderConfig(
            kind=ProviderKind.OPENAI,
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout_s,
        ),
        ProviderKind.OPENROUTER: ProviderConfig(
            kind=ProviderKind.OPENROUTER,
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
            base_url=settings.openrouter_base_url,
            timeout=settings.llm_timeout_s,
        ),
        ProviderKind.GEMINI: ProviderConfig(
            kind=ProviderKind.GEMINI,
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout=settings.llm_timeout_s,
        ),
    }


def create_provider_pair(
    mode: str,
    configs: Dict[ProviderKind, ProviderConfig],
) -> Tuple[Optional[LLMProvider], Optional[LLMProvider]]:
    """
    Resolve an AI mode into (primary, backup) providers.

    A side whose credentials are missing is returned as None.
    """
    try:
        primary_kind, backup_kind = _MODE_PAIRS[AIMode(mode)]
    except ValueError:
        raise ConfigurationError(f"Unknown AI mode: {mode}")

    primary = ChatProviderFactory.create_optional(configs.get(primary_kind))
    backup = (
        ChatProviderFactory.create_optional(configs.get(backup_kind))
        if backup_kind is not None
        else None
    )

    logger.info(
        "llm_providers_resolved",
        mode=mode,
        primary=primary.name if primary else None,
        backup=backup.name if backup else None,
    )
    return primary, backup


__all__ = [
    "DEFAULT_MODELS",
    "HTTPChatProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "GeminiProvider",
    "ChatProviderFactory",
    "provider_configs_from_settings",
    "create_provider_pair",
]

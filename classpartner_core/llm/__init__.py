"""
Language Models

Chat providers, prompts and the primary/backup failover wrapper used for
summaries, action items, keywords and question answering.
"""

from classpartner_core.llm.base import (
    AIMode,
    ChatMessage,
    LLMProvider,
    PromptContext,
    PromptSettings,
    ProviderConfig,
    ProviderKind,
)
from classpartner_core.llm.failover import FailoverLLM
from classpartner_core.llm.providers import (
    ChatProviderFactory,
    GeminiProvider,
    OpenAIProvider,
    OpenRouterProvider,
    create_provider_pair,
    provider_configs_from_settings,
)

__all__ = [
    "AIMode",
    "ChatMessage",
    "LLMProvider",
    "PromptContext",
    "PromptSettings",
    "ProviderConfig",
    "ProviderKind",
    "FailoverLLM",
    "ChatProviderFactory",
    "GeminiProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "create_provider_pair",
    "provider_configs_from_settings",
]

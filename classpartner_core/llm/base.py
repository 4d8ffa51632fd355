"""
LLM Base Types

Provider configuration, prompt context and the abstract chat provider
that every language model backend implements.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from classpartner_core.llm import prompts


class ProviderKind(str, Enum):
    """Supported chat backends."""

    OPENAI = "openai"
    OPENROUTER = "openrouter"
    GEMINI = "gemini"


class AIMode(str, Enum):
    """Primary/backup pairings selectable from settings."""

    HYBRID_GEMINI = "hybrid-gemini"
    HYBRID_OPENAI = "hybrid-openai"
    HYBRID_OPENROUTER = "hybrid-openrouter"
    GEMINI = "gemini"
    OPENAI = "openai"
    OPENROUTER = "openrouter"


@dataclass
class ProviderConfig:
    """Connection settings for one chat provider."""

    kind: ProviderKind
    api_key: str = ""
    model: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 30.0

    # OpenRouter attribution headers
    referer: str = "http://localhost"
    title: str = "ClassPartner"

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)


@dataclass
class PromptContext:
    """
    User guidance applied to every summarization and retrieval prompt.

    Global guidelines apply to all classes; class guidelines override or
    extend them for the class being recorded.
    """

    global_guidelines: str = ""
    class_guidelines: str = ""
    include_action_items: bool = True
    emphasise_key_terms: bool = True

    def note(self) -> str:
        parts = [
            part.strip()
            for part in (self.global_guidelines, self.class_guidelines)
            if part and part.strip()
        ]
        return "\n\n".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PromptContext":
        if not data:
            return cls()
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class PromptSettings:
    """Guidance as configured by the user: global text plus per-class overrides."""

    global_guidelines: str = ""
    class_guidelines: Dict[str, str] = field(default_factory=dict)
    include_action_items: bool = True
    emphasise_key_terms: bool = True

    def resolve(self, class_id: Optional[str]) -> PromptContext:
        return PromptContext(
            global_guidelines=self.global_guidelines,
            class_guidelines=self.class_guidelines.get(class_id, "") if class_id else "",
            include_action_items=self.include_action_items,
            emphasise_key_terms=self.emphasise_key_terms,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PromptSettings":
        if not data:
            return cls()
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class LLMProvider(ABC):
    """
    Abstract base class for chat providers.

    Subclasses only implement `chat`; the study-assistant operations are
    built on top of it so every backend shares prompts and parsing.
    """

    name: str = "base"

    def __init__(self, config: ProviderConfig):
        self.config = config

    @abstractmethod
    async def chat(
        self,
        messages: List[ChatMessage],
        temperature: float = 0.2,
        json_mode: bool = False,
    ) -> str:
        """Send messages and return the assistant text."""

    async def close(self) -> None:
        """Release network resources."""

    async def summarize(self, text: str, context: Optional[PromptContext] = None) -> str:
        context = context or PromptContext()
        content = await self.chat(
            [
                ChatMessage("system", prompts.summary_system_prompt(context)),
                ChatMessage("user", prompts.summary_user_prompt(text)),
            ],
            temperature=0.2,
        )
        return content.strip()

    async def extract_actions(
        self,
        text: str,
        context: Optional[PromptContext] = None,
    ) -> List[Dict[str, Any]]:
        context = context or PromptContext()
        if not context.include_action_items:
            return []
        content = await self.chat(
            [
                ChatMessage("system", "Return only JSON action items."),
                ChatMessage("user", prompts.actions_prompt(text, context)),
            ],
            temperature=0.0,
            json_mode=True,
        )
        return prompts.parse_actions(content)

    async def keywords(self, text: str, context: Optional[PromptContext] = None) -> List[str]:
        context = context or PromptContext()
        if not context.emphasise_key_terms:
            return []
        content = await self.chat(
            [
                ChatMessage("system", "Return only JSON keywords."),
                ChatMessage("user", prompts.keywords_prompt(text, context)),
            ],
            temperature=0.0,
            json_mode=True,
        )
        return prompts.parse_keywords(content)

    async def answer(
        self,
        query: str,
        snippets: str,
        context: Optional[PromptContext] = None,
    ) -> str:
        context = context or PromptContext()
        content = await self.chat(
            [
                ChatMessage("system", prompts.answer_system_prompt(context)),
                ChatMessage("user", prompts.answer_user_prompt(query, snippets)),
            ],
            temperature=0.2,
        )
        return content.strip()


__all__ = [
    "ProviderKind",
    "AIMode",
    "ProviderConfig",
    "PromptContext",
    "PromptSettings",
    "ChatMessage",
    "LLMProvider",
]

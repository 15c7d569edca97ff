"""Provider profiles selected by :class:`~Lesson_Pipeline.config.settings.ProviderKind`.

Each profile knows one provider's default endpoint, authentication headers,
request body shape and response schema. OpenRouter, OpenAI and NVIDIA share
the chat-completions wire format; Anthropic uses the messages API.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from Lesson_Pipeline.config.settings import ProviderKind, ProviderSettings

ANTHROPIC_VERSION = "2023-06-01"


class ChatMessage(BaseModel):
    """One conversational turn sent to the provider."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("message content is empty")
    return value


# ==============================================================================
# RESPONSE SCHEMAS
# ==============================================================================


class _ChatMessageBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    content: str

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        return _require_text(value)


class _ChatChoice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: _ChatMessageBody


class _ChatUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total_tokens: int | None = None


class ChatCompletionResponse(BaseModel):
    """``{choices: [{message: {content}}]}`` returned by OpenAI-compatible APIs."""

    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    choices: list[_ChatChoice] = Field(min_length=1)
    usage: _ChatUsage | None = None


class _AnthropicContentBlock(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "text"
    text: str

    @field_validator("text")
    @classmethod
    def validate_text(cls, value: str) -> str:
        return _require_text(value)


class _AnthropicUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input_tokens: int = 0
    output_tokens: int = 0


class AnthropicMessageResponse(BaseModel):
    """``{content: [{type: "text", text}]}`` returned by the messages API."""

    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    content: list[_AnthropicContentBlock] = Field(min_length=1)
    usage: _AnthropicUsage | None = None


@dataclass(frozen=True, slots=True)
class ChatCompletion:
    """Validated reply from any provider."""

    content: str
    provider: ProviderKind
    model: str | None = None
    total_tokens: int | None = None


# ==============================================================================
# PROFILES
# ==============================================================================


class ProviderProfile:
    """Wire format for one provider."""

    kind: ClassVar[ProviderKind]
    default_endpoint: ClassVar[str]

    def endpoint(self, settings: ProviderSettings) -> str:
        return settings.endpoint or self.default_endpoint

    def headers(self, settings: ProviderSettings) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if settings.api_key is not None:
            headers["Authorization"] = f"Bearer {settings.api_key.get_secret_value()}"
        return headers

    def build_body(self, settings: ProviderSettings, messages: Sequence[ChatMessage]) -> dict[str, Any]:
        return {
            "model": settings.model,
            "messages": [message.model_dump() for message in messages],
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
        }

    def parse(self, payload: Any) -> ChatCompletion:
        """Validate a decoded reply body.

        Raises:
            pydantic.ValidationError: If the body does not match the schema.
        """
        parsed = ChatCompletionResponse.model_validate(payload)
        return ChatCompletion(
            content=parsed.choices[0].message.content,
            provider=self.kind,
            model=parsed.model,
            total_tokens=parsed.usage.total_tokens if parsed.usage else None,
        )


class OpenRouterProfile(ProviderProfile):
    kind = ProviderKind.OPENROUTER
    default_endpoint = "https://openrouter.ai/api/v1/chat/completions"

    def headers(self, settings: ProviderSettings) -> dict[str, str]:
        headers = super().headers(settings)
        if settings.referer:
            headers["HTTP-Referer"] = settings.referer
        headers["X-Title"] = settings.title
        return headers


class OpenAIProfile(ProviderProfile):
    kind = ProviderKind.OPENAI
    default_endpoint = "https://api.openai.com/v1/chat/completions"


class NvidiaProfile(ProviderProfile):
    kind = ProviderKind.NVIDIA
    default_endpoint = "https://integrate.api.nvidia.com/v1/chat/completions"

    def headers(self, settings: ProviderSettings) -> dict[str, str]:
        headers = super().headers(settings)
        headers["X-Model-ID"] = settings.model
        return headers


class AnthropicProfile(ProviderProfile):
    kind = ProviderKind.ANTHROPIC
    default_endpoint = "https://api.anthropic.com/v1/messages"

    def headers(self, settings: ProviderSettings) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        if settings.api_key is not None:
            headers["x-api-key"] = settings.api_key.get_secret_value()
        return headers

    def build_body(self, settings: ProviderSettings, messages: Sequence[ChatMessage]) -> dict[str, Any]:
        # System prompts travel in a top-level field.
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        body: dict[str, Any] = {
            "model": settings.model,
            "messages": [m.model_dump() for m in messages if m.role != "system"],
            "temperature": settings.temperature,
            "max_tokens": settings.max_tokens,
        }
        if system:
            body["system"] = system
        return body

    def parse(self, payload: Any) -> ChatCompletion:
        parsed = AnthropicMessageResponse.model_validate(payload)
        usage = parsed.usage
        return ChatCompletion(
            content=parsed.content[0].text,
            provider=self.kind,
            model=parsed.model,
            total_tokens=usage.input_tokens + usage.output_tokens if usage else None,
        )


PROVIDER_PROFILES: Mapping[ProviderKind, ProviderProfile] = {
    ProviderKind.OPENROUTER: OpenRouterProfile(),
    ProviderKind.OPENAI: OpenAIProfile(),
    ProviderKind.NVIDIA: NvidiaProfile(),
    ProviderKind.ANTHROPIC: AnthropicProfile(),
}


def get_profile(kind: ProviderKind | str) -> ProviderProfile:
    return PROVIDER_PROFILES[ProviderKind(kind)]


__all__ = [
    "AnthropicMessageResponse",
    "ChatCompletion",
    "ChatCompletionResponse",
    "ChatMessage",
    "PROVIDER_PROFILES",
    "ProviderProfile",
    "get_profile",
]

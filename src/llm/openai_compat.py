from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.config.load_config import LLMConfig


class LLMConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatCompletionResult:
    content: str
    model: str
    raw: dict[str, Any]


class OpenAICompatibleChatClient:
    """Minimal OpenAI-compatible chat client wrapper.

    Every request is bounded by `timeout_s`; the SDK's own retry loop is
    disabled because job-level retries are owned by the worker.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        base_url: str | None = None,
        timeout_s: float = 60.0,
    ) -> None:
        if not api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        try:
            from openai import OpenAI  # type: ignore
        except ImportError as e:
            raise LLMConfigError("Missing dependency: openai. Install it in the runtime environment.") from e

        self.base_url = base_url or "https://api.openai.com/v1"
        self.model = model
        self.timeout_s = float(timeout_s)
        self._client = OpenAI(base_url=self.base_url, api_key=api_key, timeout=self.timeout_s, max_retries=0)

    @classmethod
    def from_config(cls, cfg: LLMConfig) -> "OpenAICompatibleChatClient":
        return cls(api_key=cfg.api_key, model=cfg.model, base_url=cfg.api_base, timeout_s=cfg.timeout_s)

    def chat_json(self, *, system: str, user: str, temperature: float) -> ChatCompletionResult:
        """Single chat completion constrained to a JSON object response."""
        resp = self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=float(temperature),
            response_format={"type": "json_object"},
        )
        raw = resp.model_dump()
        if not resp.choices:
            return ChatCompletionResult(content="", model=self.model, raw=raw)
        content = (resp.choices[0].message.content or "").strip()
        return ChatCompletionResult(content=content, model=self.model, raw=raw)

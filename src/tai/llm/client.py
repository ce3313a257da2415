"""Thin model client for the Anthropic Messages API and OpenAI-compatible chat endpoints."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http.client import HTTPException
from urllib import request
from urllib.error import HTTPError, URLError

from tai.agent.models import ModelResponse
from tai.config import DEFAULT_PROVIDER, PROVIDER_URLS, Settings
from tai.context import ContextBlock
from tai.errors import GatewayError
from tai.history import ConversationTurn

ANTHROPIC_VERSION = "2023-06-01"
KEYLESS_PROVIDERS = frozenset({"ollama", "lmstudio"})

BASE_SYSTEM_PROMPT_PARTS = [
    "You are tai, an AI assistant running in a terminal on the user's machine.",
    "Your goal is to help the user achieve their task efficiently and safely.",
    "",
    "System rules:",
    (
        "- If the user asks you to perform a terminal task, reply with exactly one fenced"
        " code block tagged with the shell language (for example ```bash) that contains"
        " the single command to run next. Prefer pipes over multiple sequential commands."
    ),
    (
        "- The user confirms every command before it runs. After it runs you receive the"
        " exit code and output; use them to decide the next step."
    ),
    (
        "- When the task is complete, or the request is only a question, answer in prose"
        " without any shell code block. Never propose a command you do not want run."
    ),
    (
        "- Keep commands non-interactive, idempotent, and safe by default. Avoid destructive"
        " operations unless the user explicitly requests them."
    ),
    (
        "- If the user asks about a command, answer concisely with a one-line example"
        " inside inline code and a brief explanation of key flags."
    ),
    "- Do not invent file paths or secrets. Never print sensitive values.",
    "- Keep your answer short and concise and always respond using Markdown.",
]

HISTORY_PREAMBLE = (
    "Here are some of your previous interactions (these may not be related to the current"
    " query and are just for reference):"
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Prompt:
    """System text plus the alternating user/assistant messages of the current task."""

    system: str
    messages: list[dict[str, str]] = field(default_factory=list)


def build_system_prompt(
    context: ContextBlock,
    history: Iterable[ConversationTurn],
    *,
    runtime_context: str | None = None,
    word_budget: int | None = None,
    now: datetime | None = None,
) -> str:
    rules = list(BASE_SYSTEM_PROMPT_PARTS)
    if word_budget:
        rules.append(f"- Keep your answer under {word_budget} words so it fits on one screen.")
    parts = ["\n".join(rules)]
    if runtime_context:
        parts.append(runtime_context)
    if not context.is_empty:
        parts.append(context.render().rstrip())
    history_section = _render_history(history, now=now or datetime.now(timezone.utc))
    if history_section:
        parts.append(history_section)
    return "\n\n".join(parts)


def response_word_budget(terminal_lines: int) -> int:
    """Words that fit a terminal of ``terminal_lines`` rows, leaving room for the prompt."""
    return max(terminal_lines - 6, 4) * 16


def build_user_message(utterance: str, piped_input: str | None = None) -> str:
    if not piped_input:
        return utterance
    return f"{utterance}\n\nInput:\n```\n{piped_input.rstrip()}\n```"


def build_messages(
    utterance: str,
    exchanges: Iterable[tuple[str, str]] = (),
    *,
    piped_input: str | None = None,
) -> list[dict[str, str]]:
    """Alternate the opening request with each (assistant reply, observation) pair."""
    messages = [{"role": "user", "content": build_user_message(utterance, piped_input)}]
    for reply, observation in exchanges:
        messages.append({"role": "assistant", "content": reply})
        messages.append({"role": "user", "content": observation})
    return messages


def _render_history(history: Iterable[ConversationTurn], *, now: datetime) -> str:
    lines: list[str] = []
    for idx, turn in enumerate(history, start=1):
        minutes = max(int((now - turn.created_at).total_seconds() // 60), 0)
        lines.append(f"Interaction {idx} (from {minutes} minutes ago):")
        lines.append(f"User: {turn.utterance}")
        lines.append(f"Assistant: {turn.response}")
        if turn.command:
            status = turn.status if turn.exit_code is None else f"{turn.status}, exit code {turn.exit_code}"
            lines.append(f"Command: {turn.command} ({status})")
        lines.append("")
    if not lines:
        return ""
    return "\n".join([HISTORY_PREAMBLE, "", *lines]).rstrip()


class LLMClient:
    """Small HTTP client for prompt/response model calls."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        provider: str = DEFAULT_PROVIDER,
        temperature: float = 0.0,
        max_tokens: int = 1500,
        api_url: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.provider = provider
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_url = api_url or PROVIDER_URLS[provider]
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> LLMClient:
        return cls(
            api_key=settings.provider_api_key,
            model=settings.model,
            provider=settings.provider,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            api_url=settings.effective_api_url,
            timeout=settings.request_timeout,
        )

    def send(self, prompt: Prompt) -> ModelResponse:
        if not self.api_key and self.provider not in KEYLESS_PROVIDERS:
            raise GatewayError(self._missing_key_message(), kind="auth")
        payload = self._build_payload(prompt)
        body = json.dumps(payload).encode("utf-8")

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "provider": self.provider,
                "model": self.model,
                "payload_bytes": len(body),
                "messages": len(prompt.messages),
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
        )

        req = request.Request(self.api_url, data=body, headers=self._headers(), method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_bytes = resp.read()
        except HTTPError as exc:
            body_excerpt = self._read_error_body_excerpt(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": body_excerpt,
                },
            )
            details = f"Model request failed with HTTP {exc.code}: {exc.reason}"
            if body_excerpt:
                details = f"{details}. Response body: {body_excerpt}"
            kind = "auth" if exc.code in {401, 403} else "provider"
            raise GatewayError(details, kind=kind, status=exc.code) from exc
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "reason": str(exc.reason),
                },
            )
            kind = "timeout" if isinstance(exc.reason, TimeoutError) else "network"
            raise GatewayError(f"Model request transport error: {exc.reason}", kind=kind) from exc
        except TimeoutError as exc:
            LOGGER.error(
                "llm_request_timeout",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "timeout_seconds": self.timeout,
                },
            )
            raise GatewayError(
                f"Model request timed out after {self.timeout:.1f}s", kind="timeout"
            ) from exc
        except (OSError, HTTPException) as exc:
            # Connection reset or short read while the body was streaming.
            LOGGER.error(
                "llm_response_read_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "error": repr(exc),
                },
            )
            raise GatewayError(f"Model response could not be read: {exc!r}", kind="network") from exc

        try:
            raw_response = json.loads(raw_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "error": str(exc),
                },
            )
            raise GatewayError(f"Model response parsing error: {exc}", kind="malformed") from exc

        raw = self._coerce_object_dict(raw_response)
        if raw is None:
            raise GatewayError(
                "Model response parsing error: expected top-level object", kind="malformed"
            )
        if self.provider == "anthropic":
            text = self._extract_text(raw)
            stop_reason = raw.get("stop_reason")
        else:
            text, stop_reason = self._extract_chat_choice(raw)
        response = ModelResponse(
            text=text,
            stop_reason=stop_reason if isinstance(stop_reason, str) else None,
        )
        if response.truncated:
            LOGGER.warning(
                "llm_response_truncated",
                extra={"model": self.model, "max_tokens": self.max_tokens},
            )
        return response

    def _missing_key_message(self) -> str:
        if self.provider == "anthropic":
            return (
                "Missing Anthropic API key. Set ANTHROPIC_API_KEY or run"
                " 'tai config anthropic_api_key <key>'."
            )
        return (
            f"Missing API key for provider '{self.provider}'. Set OPENAI_API_KEY or run"
            " 'tai config openai_api_key <key>'."
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.provider == "anthropic":
            headers["x-api-key"] = self.api_key or ""
            headers["anthropic-version"] = ANTHROPIC_VERSION
        elif self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_payload(self, prompt: Prompt) -> dict[str, object]:
        if self.provider == "anthropic":
            return {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
                "system": prompt.system,
                "messages": [dict(message) for message in prompt.messages],
            }
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": prompt.system},
                *(dict(message) for message in prompt.messages),
            ],
        }

    @staticmethod
    def _coerce_object_dict(value: object) -> dict[str, object] | None:
        if not isinstance(value, dict):
            return None
        return {str(key): raw_value for key, raw_value in value.items()}

    @classmethod
    def _extract_text(cls, payload: dict[str, object]) -> str:
        if payload.get("type") == "error":
            error = cls._coerce_object_dict(payload.get("error")) or {}
            raise GatewayError(
                f"Model provider returned an error: {error.get('message', 'unknown error')}",
                kind="provider",
            )
        content_items = payload.get("content")
        if not isinstance(content_items, list):
            raise GatewayError(
                "Model response parsing error: missing content list", kind="malformed"
            )

        texts: list[str] = []
        for content in content_items:
            content_object = cls._coerce_object_dict(content)
            if content_object is None:
                continue
            content_text = content_object.get("text")
            if content_object.get("type") == "text" and isinstance(content_text, str):
                texts.append(content_text)
        return "".join(texts)

    @classmethod
    def _extract_chat_choice(cls, payload: dict[str, object]) -> tuple[str, str | None]:
        """Read the first choice of a chat-completions reply as (text, stop reason)."""
        error = cls._coerce_object_dict(payload.get("error"))
        if error is not None:
            raise GatewayError(
                f"Model provider returned an error: {error.get('message', 'unknown error')}",
                kind="provider",
            )
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise GatewayError(
                "Model response parsing error: missing choices list", kind="malformed"
            )
        choice = cls._coerce_object_dict(choices[0]) or {}
        message = cls._coerce_object_dict(choice.get("message")) or {}
        content = message.get("content")
        finish_reason = choice.get("finish_reason")
        if finish_reason == "length":
            finish_reason = "max_tokens"
        return (
            content if isinstance(content, str) else "",
            finish_reason if isinstance(finish_reason, str) else None,
        )

    @staticmethod
    def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None

        if not raw:
            return None

        excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt

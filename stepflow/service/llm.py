from __future__ import annotations

import json
import re
from typing import Any, List, Optional, Protocol

import httpx
from openai import APIError, APIStatusError, APITimeoutError, AsyncOpenAI

from stepflow.logging import get_logger
from stepflow.service.errors import NodeExecutionError

logger = get_logger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class ModelProvider(Protocol):
    """Interface for chat completion providers."""

    async def complete(
        self,
        messages: List[dict],
        *,
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> dict: ...


class OpenAICompatibleProvider:
    """Chat completions through the ``openai`` SDK against any compatible endpoint.

    Without an API key no client is built and the provider answers offline by
    echoing the last user message, which keeps local development and tests
    deterministic.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        # retries happen in the scheduler
        self.client = (
            AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout_seconds,
                max_retries=0,
                http_client=http_client,
            )
            if api_key
            else None
        )

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def complete(
        self,
        messages: List[dict],
        *,
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> dict:
        if self.client is None:
            fallback = next(
                (m.get("content", "") for m in reversed(messages) if m.get("role") == "user"),
                "",
            )
            return {
                "content": f"[offline model={model}] {fallback}",
                "usage": {
                    "prompt_tokens": len(fallback.split()),
                    "completion_tokens": max(5, min(20, len(fallback.split()))),
                },
                "model": model,
            }

        options: dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["max_tokens"] = max_tokens
        try:
            completion = await self.client.chat.completions.create(
                model=model, messages=messages, **options
            )
        except APITimeoutError as exc:
            raise NodeExecutionError(
                f"model request timed out after {self.timeout_seconds}s"
            ) from exc
        except APIStatusError as exc:
            logger.warning("model_request_rejected", status=exc.status_code, model=model)
            raise NodeExecutionError(
                f"model provider returned HTTP {exc.status_code}: {exc.message[:500]}"
            ) from exc
        except APIError as exc:
            raise NodeExecutionError(f"model request failed: {exc.message}") from exc

        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("model_completion_no_choices", model=model)
            content = ""
        else:
            content = first_choice.message.content or ""
        usage = completion.usage
        return {
            "content": content,
            "usage": {
                "prompt_tokens": getattr(usage, "prompt_tokens", 0),
                "completion_tokens": getattr(usage, "completion_tokens", 0),
                "total_tokens": getattr(usage, "total_tokens", 0),
            },
            "model": completion.model or model,
        }


class LLMService:
    """Model executor front-end used by model and classifier nodes."""

    def __init__(self, default_model: str, *, provider: ModelProvider) -> None:
        self.default_model = default_model
        self.provider = provider

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> dict:
        messages: List[dict] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        target_model = model or self.default_model
        result = await self.provider.complete(
            messages, model=target_model, temperature=temperature, max_tokens=max_tokens
        )
        logger.debug(
            "model_completion",
            model=target_model,
            prompt_chars=len(prompt),
            completion_chars=len(result.get("content") or ""),
        )
        return result


def extract_json(text: str) -> Any:
    """Parse JSON from a model reply, fenced or bare. Raises ValueError if none is found."""
    if not isinstance(text, str):
        raise ValueError("reply is not text")
    candidates = [match.strip() for match in _FENCED_JSON.findall(text)]
    candidates.append(text.strip())
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = text.find(opener), text.rfind(closer)
        if start != -1 and end > start:
            candidates.append(text[start : end + 1])
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise ValueError("no JSON object found in model reply")

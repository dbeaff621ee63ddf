"""Completion capability used by enrichment, with an OpenAI implementation."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Protocol, Sequence

import structlog

from job_ingest.config import AppConfig
from job_ingest.errors import EnrichmentError

logger = structlog.get_logger(__name__)

Message = dict[str, str]


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class Completion:
    """Text returned by one completion call plus its token usage."""

    content: str
    usage: Usage = field(default_factory=Usage)


class CompletionClient(Protocol):
    """Protocol that any completion backend must implement."""

    def complete(
        self,
        model: str,
        messages: Sequence[Message],
        temperature: float,
        max_tokens: int,
    ) -> Completion: ...


# ── OpenAI ────────────────────────────────────────────────


class OpenAICompletionClient:
    """Chat-completions backend on the official ``openai`` SDK."""

    def __init__(self, config: AppConfig) -> None:
        from openai import OpenAI

        self._timeout = config.openai_timeout_sec
        self._client = OpenAI(
            api_key=config.openai_api_key.get_secret_value(),
            timeout=config.openai_timeout_sec,
            max_retries=0,  # one attempt per row
        )

    def complete(
        self,
        model: str,
        messages: Sequence[Message],
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        resp = self._client.chat.completions.create(
            model=model,
            timeout=self._timeout,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=list(messages),  # type: ignore[arg-type]
        )
        content = (resp.choices[0].message.content or "") if resp.choices else ""

        usage = getattr(resp, "usage", None)
        prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        total_tokens = int(getattr(usage, "total_tokens", 0) or 0) or prompt_tokens + completion_tokens
        logger.debug(
            "openai_completion",
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        return Completion(
            content=content,
            usage=Usage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
            ),
        )


def create_completion_client(config: AppConfig) -> CompletionClient | None:
    """Return the OpenAI client, or None when no API key is configured."""
    if not config.enrichment_enabled:
        return None
    return OpenAICompletionClient(config)


# ── Hard-timeout wrapper ──────────────────────────────────


def complete_with_timeout(
    client: CompletionClient,
    model: str,
    messages: Sequence[Message],
    *,
    temperature: float,
    max_tokens: int,
    timeout_sec: float,
) -> Completion:
    """Call *client* with a hard thread-based timeout.

    Raises:
        EnrichmentError: when the call does not finish within *timeout_sec*.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(client.complete, model, messages, temperature, max_tokens)
    try:
        return future.result(timeout=timeout_sec)
    except FuturesTimeoutError:
        future.cancel()
        raise EnrichmentError(f"completion hard-timeout after {timeout_sec}s")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

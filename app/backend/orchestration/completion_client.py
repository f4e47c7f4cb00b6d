"""
Completion-service client.

Wraps the Groq async SDK behind a single `complete` call with a hard timeout.
Provider errors are mapped onto the service taxonomy (rate limited,
insufficient credit, timeout, generic) so callers never see raw SDK errors.
SDK-level automatic retries are disabled: a generative call is not safe to
repeat silently.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from groq import AsyncGroq, APIConnectionError, APIStatusError, APITimeoutError

from errors import (
    InsufficientCreditError,
    UpstreamError,
    UpstreamRateLimitedError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
            self.total_tokens + other.total_tokens,
        )


@dataclass
class CompletionResult:
    content: str
    usage: TokenUsage
    generation_id: Optional[str]
    model: str


class CompletionClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
    ):
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._api_key = api_key
        self._base_url = base_url
        self._client: Optional[AsyncGroq] = None

    def _get_client(self) -> AsyncGroq:
        # created lazily so the app can boot without credentials
        if self._client is None:
            if not self._api_key:
                raise UpstreamError("GROQ_API_KEY is not configured")
            # transport timeouts must not undercut the wait_for bound (SDK default read is 60s)
            self._client = AsyncGroq(
                api_key=self._api_key,
                base_url=self._base_url,
                max_retries=0,
                timeout=httpx.Timeout(self.timeout_seconds, connect=5.0),
            )
        return self._client

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float = 0.7,
        agent_name: Optional[str] = None,
    ) -> CompletionResult:
        client = self._get_client()
        tag = f"[LLM - {agent_name}]" if agent_name else "[LLM]"
        logger.info("%s Starting API call (model=%s, max_tokens=%d, temperature=%s)",
                    tag, self.model, max_tokens, temperature)
        start = time.monotonic()

        try:
            completion = await asyncio.wait_for(
                client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                    response_format={"type": "json_object"},
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("%s Timed out after %.0fs", tag, self.timeout_seconds)
            raise UpstreamTimeoutError(f"The AI service did not respond within {self.timeout_seconds:.0f}s")
        except APITimeoutError:
            logger.error("%s Transport timeout after %dms", tag, _elapsed_ms(start))
            raise UpstreamTimeoutError()
        except APIStatusError as e:
            logger.error("%s API error (%dms) status=%s body=%s",
                         tag, _elapsed_ms(start), e.status_code, str(e.body)[:500])
            raise classify_status_error(e.status_code, e.body, e.message)
        except APIConnectionError as e:
            logger.error("%s Connection error: %s", tag, e)
            raise UpstreamError("Could not reach the AI service")

        elapsed = _elapsed_ms(start)
        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            logger.error("%s No content in response (%dms)", tag, elapsed)
            raise UpstreamError("No response content from AI")

        usage = _usage_of(completion.usage)
        result = CompletionResult(
            content=content,
            usage=usage,
            generation_id=getattr(completion, "id", None),
            model=getattr(completion, "model", None) or self.model,
        )
        logger.info("%s Success (%dms) model=%s gen_id=%s tokens=%d+%d=%d",
                    tag, elapsed, result.model, result.generation_id,
                    usage.prompt_tokens, usage.completion_tokens, usage.total_tokens)
        return result


def classify_status_error(status_code: int, body: Any, message: Optional[str] = None) -> UpstreamError:
    """Map a non-2xx provider response onto RateLimited / InsufficientCredit / Generic."""
    code = None
    detail = None
    if isinstance(body, dict):
        err = body.get("error", body)
        if isinstance(err, dict):
            code = err.get("code")
            detail = err.get("message")

    detail = detail or message
    if status_code == 429:
        return UpstreamRateLimitedError(detail, upstream_status=status_code)
    if status_code == 402 or str(code) == "402" or code == "insufficient_quota":
        return InsufficientCreditError(upstream_status=status_code)
    return UpstreamError(detail or "API request failed", upstream_status=status_code)


def _usage_of(usage: Any) -> TokenUsage:
    if usage is None:
        return TokenUsage()
    pt = getattr(usage, "prompt_tokens", None) or 0
    ct = getattr(usage, "completion_tokens", None) or 0
    tt = getattr(usage, "total_tokens", None) or (pt + ct)
    return TokenUsage(pt, ct, tt)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)

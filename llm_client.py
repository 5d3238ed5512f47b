"""OpenAI chat client shared by the request pipeline."""

from __future__ import annotations

import logging
import os
import time

import openai as _openai
from openai import OpenAI

from token_tracker import add_usage
from usage_limiter import can_make_call, record_call

logger = logging.getLogger(__name__)
try:
    logger.addHandler(logging.NullHandler())
except Exception:
    pass

NO_RESPONSE = 'No response generated'


class LLMUnavailable(RuntimeError):
    """No OpenAI client is configured, or the process call cap is reached."""


_OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
if _OPENAI_API_KEY:
    try:
        _client = OpenAI()
        _OPENAI_AVAILABLE = True
    except Exception:
        logger.exception("OpenAI client initialisation failed")
        _client = None
        _OPENAI_AVAILABLE = False
else:
    _client = None
    _OPENAI_AVAILABLE = False


def is_available() -> bool:
    return _OPENAI_AVAILABLE and _client is not None


def _supports_temperature(model_name: str) -> bool:
    mn = (model_name or '').lower()
    return not (mn.startswith('gpt-5') or mn.startswith('o1') or mn.startswith('o3'))


def _is_rate_limited(exc: Exception) -> bool:
    if isinstance(exc, _openai.RateLimitError):
        # quota exhaustion is reported as 429 too but never clears on retry
        return getattr(exc, 'code', None) != 'insufficient_quota'
    msg = str(exc).lower()
    return 'rate limit' in msg or 'tokens per min' in msg


def chat_create(messages: list, model: str, max_tokens: int | None = None,
                temperature: float | None = None, max_retries: int = 4):
    """Call chat.completions with backoff on rate limits and record token usage."""
    if not is_available():
        raise LLMUnavailable("OPENAI_API_KEY not set; no model client available")
    if not can_make_call():
        raise LLMUnavailable("OpenAI call cap reached (remaining=0)")

    kwargs = {'model': model, 'messages': messages}
    if max_tokens:
        kwargs['max_tokens'] = int(max_tokens)
    if temperature is not None and _supports_temperature(model):
        kwargs['temperature'] = temperature

    backoff = 0.5
    for attempt in range(max_retries):
        try:
            resp = _client.chat.completions.create(**kwargs)
            break
        except Exception as e:
            if _is_rate_limited(e) and attempt < max_retries - 1:
                wait = backoff * (2 ** attempt)
                logger.warning("Rate limited by OpenAI (model=%s); retrying in %.1fs", model, wait)
                time.sleep(wait)
                continue
            raise

    record_call(1)
    usage = getattr(resp, 'usage', None)
    if usage is not None:
        pt = int(getattr(usage, 'prompt_tokens', 0) or 0)
        ct = int(getattr(usage, 'completion_tokens', 0) or 0)
        logger.info("[tokens] model=%s prompt=%d completion=%d total=%d", model, pt, ct, pt + ct)
        add_usage(model, pt, ct)
    return resp


def completion_text(resp) -> str:
    try:
        content = resp.choices[0].message.content
    except (AttributeError, IndexError):
        return NO_RESPONSE
    return (content or '').strip() or NO_RESPONSE


def tokens_used(resp) -> int:
    usage = getattr(resp, 'usage', None)
    if usage is None:
        return 0
    total = getattr(usage, 'total_tokens', None)
    if total is not None:
        return int(total)
    return int(getattr(usage, 'prompt_tokens', 0) or 0) + int(getattr(usage, 'completion_tokens', 0) or 0)


__all__ = [
    "chat_create",
    "completion_text",
    "tokens_used",
    "is_available",
    "LLMUnavailable",
    "NO_RESPONSE",
    "_supports_temperature",
]

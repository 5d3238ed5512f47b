"""Deterministic OpenAI client stand-in for tests/CI.

Usage patterns:
  from llm_stub import StubClient
  stub = StubClient(reply='hello')
  monkeypatch.setattr(llm_client, '_client', stub)
  monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)

The stub records every chat.completions.create kwargs dict in `stub.calls`
and answers with objects shaped like the SDK's ChatCompletion (choices,
message.content, usage). Pass `errors=[exc, ...]` to raise those exceptions
on the first calls before answering.
"""
from __future__ import annotations
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
import hashlib


def fake_completion(text: str, prompt_tokens: int = 10, completion_tokens: int = 5):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def echo_reply(kwargs: Dict[str, Any]) -> str:
    """Short stable reply derived from the request, handy for cache tests."""
    h = hashlib.sha1(repr(kwargs.get('messages')).encode('utf-8')).hexdigest()[:8]
    return f"stub answer {h} from {kwargs.get('model')}"


class StubClient:
    def __init__(self, reply: Optional[str] = None, errors: Optional[List[Exception]] = None):
        self.reply = reply
        self.errors = list(errors or [])
        self.calls: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.errors:
            raise self.errors.pop(0)
        return fake_completion(self.reply if self.reply is not None else echo_reply(kwargs))


__all__ = ["StubClient", "fake_completion", "echo_reply"]

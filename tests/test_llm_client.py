import sys
from pathlib import Path

import httpx
import openai
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import llm_client
import token_tracker
import usage_limiter
from llm_stub import StubClient, fake_completion


def _rate_limit_error(code=None):
    req = httpx.Request('POST', 'https://api.openai.com/v1/chat/completions')
    body = {'code': code, 'message': 'slow down'} if code else None
    return openai.RateLimitError('Rate limit reached', response=httpx.Response(429, request=req), body=body)


def _install(monkeypatch, stub):
    monkeypatch.setattr(llm_client, '_client', stub)
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    monkeypatch.setattr(llm_client.time, 'sleep', lambda s: None)


def test_unavailable_without_client():
    with pytest.raises(llm_client.LLMUnavailable):
        llm_client.chat_create([{'role': 'user', 'content': 'hi'}], model='gpt-4o-mini')


def test_chat_create_passes_budget_and_tracks_tokens(monkeypatch):
    stub = StubClient(reply='hello')
    _install(monkeypatch, stub)
    resp = llm_client.chat_create([{'role': 'user', 'content': 'hi'}], model='gpt-4o-mini',
                                  max_tokens=300, temperature=0.2)
    assert llm_client.completion_text(resp) == 'hello'
    assert llm_client.tokens_used(resp) == 15
    assert stub.calls[0]['max_tokens'] == 300
    assert stub.calls[0]['temperature'] == 0.2
    assert token_tracker.summary()['models']['gpt-4o-mini']['total'] == 15


def test_temperature_omitted_for_reasoning_models(monkeypatch):
    stub = StubClient(reply='ok')
    _install(monkeypatch, stub)
    llm_client.chat_create([{'role': 'user', 'content': 'hi'}], model='gpt-5', temperature=0.3)
    assert 'temperature' not in stub.calls[0]


def test_rate_limits_are_retried(monkeypatch):
    stub = StubClient(reply='after retry', errors=[_rate_limit_error(), _rate_limit_error()])
    _install(monkeypatch, stub)
    resp = llm_client.chat_create([{'role': 'user', 'content': 'hi'}], model='gpt-4o')
    assert llm_client.completion_text(resp) == 'after retry'
    assert len(stub.calls) == 3


def test_quota_errors_are_not_retried(monkeypatch):
    stub = StubClient(reply='never', errors=[_rate_limit_error('insufficient_quota')])
    _install(monkeypatch, stub)
    with pytest.raises(openai.RateLimitError) as ei:
        llm_client.chat_create([{'role': 'user', 'content': 'hi'}], model='gpt-4o')
    assert ei.value.code == 'insufficient_quota'
    assert len(stub.calls) == 1


def test_call_cap(monkeypatch):
    _install(monkeypatch, StubClient(reply='x'))
    monkeypatch.setattr(usage_limiter, '_CAP', 1)
    llm_client.chat_create([{'role': 'user', 'content': 'hi'}], model='gpt-4o')
    with pytest.raises(llm_client.LLMUnavailable):
        llm_client.chat_create([{'role': 'user', 'content': 'hi'}], model='gpt-4o')


def test_completion_text_handles_empty_responses():
    assert llm_client.completion_text(fake_completion('')) == llm_client.NO_RESPONSE
    assert llm_client.completion_text(object()) == llm_client.NO_RESPONSE
    assert llm_client.tokens_used(object()) == 0

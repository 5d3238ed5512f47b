import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import llm_client
import usage_limiter
import vision_service
from ai_processor import AIProcessor, InvalidImageError, build_messages, should_run_ocr
from config import FALLBACK_MODEL, FREE_MODEL, PREMIUM_MODEL
from image_optimizer import bytes_to_data_url
from llm_stub import StubClient
from response_cache import ResponseCache


class _MemoryRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self.store[key] = value

    def ping(self):
        return True


@pytest.fixture
def stub(monkeypatch):
    s = StubClient(reply='Here is the answer')
    monkeypatch.setattr(llm_client, '_client', s)
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    return s


@pytest.fixture
def processor():
    return AIProcessor(cache=ResponseCache(url=''))


def test_should_run_ocr():
    assert should_run_ocr('code_analysis', 'what color is this') is True
    assert should_run_ocr('general', 'what does the text say') is True
    assert should_run_ocr('general', 'what color is the car') is False
    assert should_run_ocr('general', 'anything interesting here?') is True


def test_build_messages():
    assert build_messages('hi') == [{'role': 'user', 'content': 'hi'}]
    msg = build_messages('hi', 'data:image/png;base64,AAAA')[0]
    assert msg['content'][0] == {'type': 'text', 'text': 'hi'}
    assert msg['content'][1]['image_url']['url'] == 'data:image/png;base64,AAAA'


def test_text_question_free_tier(stub, processor):
    out = processor.process_with_fallback({'message': 'Explain recursion'}, {'id': 'u1', 'tier': 'free'})
    assert out['success'] is True
    assert out['message'] == 'Here is the answer'
    info = out['processing_info']
    assert info['strategy'] == 'intelligent'
    assert info['question_type'] == 'explanation'
    assert info['model_used'] == FREE_MODEL
    assert info['tokens_used'] == 15
    assert out['usage']['request_count'] == 1
    assert out['usage']['remaining_requests'] == 49
    call = stub.calls[0]
    assert call['model'] == FREE_MODEL
    assert call['max_tokens'] == 250
    assert usage_limiter.usage('u1')['tokens'] == 15


def test_free_tier_image_is_withheld(stub, processor, png_bytes):
    out = processor.process_with_fallback({'message': 'What is in this picture?', 'image_bytes': png_bytes},
                                          {'id': 'u1', 'tier': 'free'})
    info = out['processing_info']
    assert info['image_sent'] is False
    assert info['image_optimized'] is False
    content = stub.calls[0]['messages'][0]['content']
    assert isinstance(content, str)
    assert 'not available to you' in content


def test_premium_tier_sends_image(stub, processor, png_bytes):
    out = processor.process_with_fallback(
        {'message': 'What is in this picture?', 'image_data': bytes_to_data_url(png_bytes, 'png')},
        {'id': 'u2', 'tier': 'premium'})
    info = out['processing_info']
    assert info['model_used'] == PREMIUM_MODEL
    assert info['image_sent'] is True
    assert info['image_optimization']['quality'] == 100
    parts = stub.calls[0]['messages'][0]['content']
    assert parts[1]['image_url']['url'].startswith('data:image/png;base64,')


def test_vision_results_reach_the_prompt_for_pro(stub, processor, png_bytes, monkeypatch):
    seen = {}

    def _analyze(data, features=None):
        seen['features'] = tuple(features)
        return {'success': True, 'objects': [], 'logos': [], 'faces': 1, 'text': '',
                'web_entities': ['Jane Actor'], 'best_guess': [], 'features': list(features),
                'confidence': 0.9}

    monkeypatch.setattr(vision_service, 'analyze_image_content', _analyze)
    out = processor.process_with_fallback({'message': 'Who is this person?', 'image_bytes': png_bytes},
                                          {'id': 'p1', 'tier': 'pro'})
    assert seen['features'] == ('web', 'faces')
    assert out['processing_info']['vision_used'] is True
    assert out['processing_info']['vision']['question_type'] == 'IDENTIFY_CELEBRITY'
    prompt = stub.calls[0]['messages'][0]['content'][0]['text']
    assert 'Web matches: Jane Actor' in prompt
    assert 'Faces detected: 1' in prompt


def test_vision_denied_below_required_tier(stub, processor, png_bytes, monkeypatch):
    monkeypatch.setattr(vision_service, 'analyze_image_content',
                        lambda *a, **k: pytest.fail('vision must not run'))
    out = processor.process_with_fallback({'message': 'Who is this person?', 'image_bytes': png_bytes},
                                          {'id': 'p2', 'tier': 'premium'})
    vision = out['processing_info']['vision']
    assert vision['used'] is False
    assert vision['access']['reason'] == 'tier_insufficient'
    assert vision['upgrade_recommendations'][0]['tier'] == 'pro'


def test_rate_limit_blocks_before_model_call(stub, processor):
    for _ in range(10):
        usage_limiter.record('busy')
    with pytest.raises(usage_limiter.RateLimitExceeded):
        processor.process_with_fallback({'message': 'hello'}, {'id': 'busy', 'tier': 'free'})
    assert stub.calls == []


def test_falls_back_to_simple_strategy(monkeypatch, processor):
    s = StubClient(reply='simple answer', errors=[RuntimeError('model exploded')])
    monkeypatch.setattr(llm_client, '_client', s)
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    out = processor.process_with_fallback({'message': 'hello'}, {'id': 'u1', 'tier': 'pro'})
    info = out['processing_info']
    assert info['strategy'] == 'simple'
    assert info['failed_strategies'] == [{'strategy': 'intelligent', 'error': 'model exploded'}]
    assert s.calls[1]['model'] == FALLBACK_MODEL
    assert s.calls[1]['max_tokens'] == 500
    assert usage_limiter.usage('u1')['daily'] == 1


def test_all_strategies_failing_reraises(monkeypatch, processor):
    s = StubClient(errors=[RuntimeError('a'), RuntimeError('b'), RuntimeError('c')])
    monkeypatch.setattr(llm_client, '_client', s)
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    with pytest.raises(RuntimeError, match='c'):
        processor.process_with_fallback({'message': 'hello'}, {'id': 'u1', 'tier': 'free'})
    assert len(s.calls) == 3
    assert s.calls[2]['max_tokens'] == 400
    assert usage_limiter.usage('u1')['daily'] == 0


def test_missing_client_is_not_retried(processor):
    with pytest.raises(llm_client.LLMUnavailable):
        processor.process_with_fallback({'message': 'hello'}, {'id': 'u1', 'tier': 'free'})


def test_invalid_image_rejected(stub, processor):
    with pytest.raises(InvalidImageError):
        processor.process_with_fallback({'message': 'hi', 'image_bytes': b'not an image'},
                                        {'id': 'u1', 'tier': 'premium'})
    with pytest.raises(InvalidImageError):
        processor.process_with_fallback({'message': 'hi', 'image_data': 'data:image/png;base64,%%%'},
                                        {'id': 'u1', 'tier': 'premium'})
    assert stub.calls == []
    assert usage_limiter.usage('u1')['daily'] == 0


def test_cached_responses_skip_the_model(stub):
    processor = AIProcessor(cache=ResponseCache(url='', client=_MemoryRedis()))
    first = processor.process_request({'message': 'Explain recursion'}, {'id': 'u1', 'tier': 'free'})
    second = processor.process_request({'message': 'explain recursion '}, {'id': 'u1', 'tier': 'free'})
    assert len(stub.calls) == 1
    assert 'cached' not in first['processing_info']
    assert second['processing_info']['cached'] is True
    assert second['message'] == first['message']
    assert second['usage']['request_count'] == 2
    # the cache hit costs a request but no model tokens
    assert usage_limiter.usage('u1')['tokens'] == 15


def test_health_check(processor):
    checks = processor.health_check()
    assert checks['image_optimizer'] is True
    assert checks['ocr_service'] is False
    assert checks['llm'] is False
    assert checks['overall'] is True


class _SlowStub(StubClient):
    def _create(self, **kwargs):
        time.sleep(0.05)
        return super()._create(**kwargs)


def test_concurrent_requests_respect_the_hourly_limit(monkeypatch, processor):
    monkeypatch.setattr(llm_client, '_client', _SlowStub(reply='ok'))
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    for _ in range(9):
        usage_limiter.record('racer')
    outcomes = []

    def _ask():
        try:
            processor.process_with_fallback({'message': 'hello'}, {'id': 'racer', 'tier': 'free'})
            outcomes.append('ok')
        except usage_limiter.RateLimitExceeded:
            outcomes.append('limited')

    threads = [threading.Thread(target=_ask) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(outcomes) == ['limited'] * 4 + ['ok']
    assert usage_limiter.usage('racer')['hourly'] == 10


def test_simple_strategy_keeps_png_label(monkeypatch, processor, png_bytes):
    s = StubClient(reply='fallback answer', errors=[RuntimeError('model exploded')])
    monkeypatch.setattr(llm_client, '_client', s)
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    out = processor.process_with_fallback({'message': 'What is in this picture?', 'image_bytes': png_bytes},
                                          {'id': 'u3', 'tier': 'premium'})
    assert out['processing_info']['strategy'] == 'simple'
    url = s.calls[1]['messages'][0]['content'][1]['image_url']['url']
    assert url.startswith('data:image/png;base64,')

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import usage_limiter as ul
import time_utils


def test_record_and_check():
    assert ul.usage('u1') == {'hourly': 0, 'daily': 0, 'monthly': 0, 'tokens': 0}
    ul.record('u1', tokens=120)
    ul.record('u1', tokens=30)
    ul.record('u2')
    assert ul.usage('u1') == {'hourly': 2, 'daily': 2, 'monthly': 2, 'tokens': 150}
    verdict = ul.check('u1', 'free')
    assert verdict['remaining_hourly'] == 8
    assert verdict['remaining_daily'] == 48


def test_reserve_raises_at_hourly_limit():
    for _ in range(10):
        ul.reserve('busy', 'free')
    with pytest.raises(ul.RateLimitExceeded) as ei:
        ul.reserve('busy', 'free')
    assert ei.value.tier == 'free'
    assert ei.value.limits['remaining_hourly'] == 0
    assert ul.usage('busy')['hourly'] == 10
    # same usage is fine on a paid tier
    verdict, _ = ul.reserve('busy', 'premium')
    assert verdict['can_make_request'] is True
    assert ul.usage('busy')['hourly'] == 11


def test_release_gives_the_slot_back():
    ul.record('u1')
    _, keys = ul.reserve('u1', 'free')
    assert ul.usage('u1')['daily'] == 2
    ul.release('u1', keys)
    assert ul.usage('u1') == {'hourly': 1, 'daily': 1, 'monthly': 1, 'tokens': 0}
    # releasing an unknown user is a no-op
    ul.release('ghost', keys)
    assert ul.usage('ghost')['daily'] == 0


def test_add_tokens():
    ul.add_tokens('u1', 40)
    ul.add_tokens('u1', 0)
    assert ul.usage('u1')['tokens'] == 40
    assert ul.usage('u1')['daily'] == 0


def test_old_buckets_do_not_count(monkeypatch):
    past = datetime(2020, 1, 1, 10, tzinfo=timezone.utc)
    monkeypatch.setattr(ul, 'bucket_keys', lambda: time_utils.bucket_keys(past))
    for _ in range(5):
        ul.record('u1')
    monkeypatch.setattr(ul, 'bucket_keys', time_utils.bucket_keys)
    assert ul.usage('u1')['hourly'] == 0
    state = json.loads(ul._PATH.read_text(encoding='utf-8'))
    assert state['users']['u1']['total'] == 5


def test_corrupt_state_starts_fresh():
    ul._PATH.write_text('{not json', encoding='utf-8')
    assert ul.usage('u1')['daily'] == 0
    ul.record('u1')
    assert ul.usage('u1')['daily'] == 1


def test_call_cap_enforcement(monkeypatch):
    monkeypatch.setattr(ul, '_CAP', 2)
    assert ul.can_make_call() is True
    ul.record_call(1)
    assert ul.can_make_call() is True
    ul.record_call(1)
    # Now at cap
    assert ul.can_make_call() is False
    assert ul.remaining() == 0

    monkeypatch.setattr(ul, '_CAP', 0)
    assert ul.can_make_call() is True
    assert ul.remaining() is None

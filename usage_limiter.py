"""Persistent per-user request counters for rate limiting.

State lives in a single JSON file keyed by user id, with one counter per
hour, day and month bucket. Old buckets are dropped on write.

Env:
  MAX_OPENAI_CALLS: process-wide cap on model calls (0 or unset = unlimited)
  USAGE_STATE_PATH: path to persist JSON state (default: <DATA_DIR>/usage.json)

Functions:
  usage(user_id) -> {'hourly', 'daily', 'monthly', 'tokens'}
  check(user_id, tier) -> model_selector.check_rate_limit result
  reserve(user_id, tier) -> (verdict, keys); raises RateLimitExceeded
  release(user_id, keys) / add_tokens(user_id, tokens)
  record(user_id, tokens=0) -> None
  can_make_call() / record_call() / remaining() for the global cap
"""
import os
import json
import logging
from pathlib import Path
from threading import Lock

from config import DATA_DIR
from model_selector import check_rate_limit
from time_utils import bucket_keys

logger = logging.getLogger(__name__)

_LOCK = Lock()
_PATH = Path(os.getenv('USAGE_STATE_PATH', str(DATA_DIR / 'usage.json')))
try:
    _CAP = int(os.getenv('MAX_OPENAI_CALLS', '0'))
except ValueError:
    _CAP = 0


class RateLimitExceeded(Exception):
    """Raised when a user is over their hourly or daily request allowance."""

    def __init__(self, tier: str, limits: dict):
        self.tier = tier
        self.limits = limits
        super().__init__(
            f"Rate limit exceeded for {tier} tier "
            f"(remaining hourly={limits.get('remaining_hourly')}, daily={limits.get('remaining_daily')})"
        )


def _read_state() -> dict:
    if not _PATH.exists():
        return {'users': {}, 'calls': 0}
    try:
        with _PATH.open('r', encoding='utf-8') as f:
            st = json.load(f)
        st.setdefault('users', {})
        st.setdefault('calls', 0)
        return st
    except (OSError, ValueError):
        logger.warning("Usage state at %s unreadable; starting fresh", _PATH)
        return {'users': {}, 'calls': 0}


def _write_state(state: dict):
    _PATH.parent.mkdir(parents=True, exist_ok=True)
    tmp = _PATH.with_suffix('.tmp')
    with tmp.open('w', encoding='utf-8') as f:
        json.dump(state, f)
    tmp.replace(_PATH)


def _current(row: dict, keys: dict) -> dict:
    out = {}
    for period, key in keys.items():
        bucket = row.get(period) or {}
        out[period] = int(bucket.get('count', 0)) if bucket.get('key') == key else 0
    return out


def usage(user_id: str) -> dict:
    keys = bucket_keys()
    with _LOCK:
        row = _read_state()['users'].get(user_id) or {}
    out = _current(row, keys)
    out['tokens'] = int(row.get('tokens', 0))
    return out


def check(user_id: str, tier: str) -> dict:
    """Return the rate limit verdict for `user_id` at `tier` without recording anything."""
    return check_rate_limit(tier, usage(user_id))


def _bump(row: dict, keys: dict, delta: int) -> None:
    counts = _current(row, keys)
    for period, key in keys.items():
        row[period] = {'key': key, 'count': max(0, counts[period] + delta)}
    row['total'] = max(0, int(row.get('total', 0)) + delta)


def reserve(user_id: str, tier: str) -> tuple:
    """Check the limits and count one request for `user_id` under a single lock.

    Returns (verdict, keys); pass `keys` to release() if the request fails.
    Raises RateLimitExceeded without counting anything when over the limit.
    """
    keys = bucket_keys()
    with _LOCK:
        st = _read_state()
        row = st['users'].setdefault(user_id, {})
        verdict = check_rate_limit(tier, _current(row, keys))
        if not verdict['can_make_request']:
            raise RateLimitExceeded(tier, verdict)
        _bump(row, keys, 1)
        _write_state(st)
    return verdict, keys


def release(user_id: str, keys: dict) -> None:
    """Give back a slot taken by reserve() for a request that produced no answer."""
    with _LOCK:
        st = _read_state()
        row = st['users'].get(user_id)
        if row is None:
            return
        for period, key in keys.items():
            bucket = row.get(period) or {}
            if bucket.get('key') == key:
                bucket['count'] = max(0, int(bucket.get('count', 0)) - 1)
        row['total'] = max(0, int(row.get('total', 0)) - 1)
        _write_state(st)


def add_tokens(user_id: str, tokens: int) -> None:
    if not tokens:
        return
    with _LOCK:
        st = _read_state()
        row = st['users'].setdefault(user_id, {})
        row['tokens'] = int(row.get('tokens', 0)) + int(tokens)
        _write_state(st)


def record(user_id: str, tokens: int = 0) -> None:
    """Count one request for `user_id` in every bucket."""
    keys = bucket_keys()
    with _LOCK:
        st = _read_state()
        row = st['users'].setdefault(user_id, {})
        _bump(row, keys, 1)
        row['tokens'] = int(row.get('tokens', 0)) + int(tokens or 0)
        _write_state(st)


def can_make_call() -> bool:
    """Return True if a model call may be made under the global cap. If cap==0, unlimited."""
    if _CAP <= 0:
        return True
    with _LOCK:
        return int(_read_state().get('calls', 0)) < _CAP


def remaining() -> int | None:
    if _CAP <= 0:
        return None
    with _LOCK:
        return max(0, _CAP - int(_read_state().get('calls', 0)))


def record_call(n: int = 1) -> None:
    if _CAP <= 0:
        return
    with _LOCK:
        st = _read_state()
        st['calls'] = int(st.get('calls', 0)) + int(n)
        _write_state(st)

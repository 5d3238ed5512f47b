"""Redis response cache.

Identical questions about the identical image at the same tier get the same
answer, so finished pipeline responses are cached for CACHE_TTL_SECONDS.
Redis is optional: with no REDIS_URL, or while the server is unreachable,
lookups miss and stores are dropped.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional

import redis

from config import CACHE_TTL_SECONDS, REDIS_URL

logger = logging.getLogger(__name__)

KEY_PREFIX = 'framesense:response:'
# after a connection failure, wait this long before trying again
RETRY_AFTER_SECONDS = 30


def cache_key(tier: str, question_type: str, message: str, image: Optional[bytes] = None) -> str:
    h = hashlib.sha256()
    h.update(f"{tier}|{question_type}|{(message or '').strip().lower()}|".encode('utf-8'))
    if image:
        h.update(hashlib.sha256(image).digest())
    return KEY_PREFIX + h.hexdigest()


class ResponseCache:
    def __init__(self, url: str = REDIS_URL, ttl: int = CACHE_TTL_SECONDS, client=None):
        self.url = url
        self.ttl = ttl
        self._client = client
        self._down_until = 0.0
        self.metrics = {'hits': 0, 'misses': 0, 'stores': 0, 'errors': 0, 'last_error': None}

    @property
    def enabled(self) -> bool:
        return self._client is not None or bool(self.url)

    def _get_client(self):
        if self._client is None and self.url:
            self._client = redis.Redis.from_url(self.url, socket_connect_timeout=2, socket_timeout=2,
                                                decode_responses=True)
            logger.info("Redis cache configured at %s", self.url.split('@')[-1])
        return self._client

    def _failed(self, op: str, e: Exception):
        self.metrics['errors'] += 1
        self.metrics['last_error'] = str(e)
        self._down_until = time.monotonic() + RETRY_AFTER_SECONDS
        # only the first few to avoid log spam while redis is down
        if self.metrics['errors'] <= 3:
            logger.warning("Redis %s failed (running without cache): %s", op, e)

    def _usable(self) -> bool:
        return self.enabled and time.monotonic() >= self._down_until

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        if not self._usable():
            return None
        try:
            raw = self._get_client().get(key)
        except redis.RedisError as e:
            self._failed('get', e)
            return None
        if raw is None:
            self.metrics['misses'] += 1
            return None
        self.metrics['hits'] += 1
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding corrupt cache entry %s", key)
            return None

    def set(self, key: str, value: Dict[str, Any]) -> bool:
        if not self._usable():
            return False
        try:
            self._get_client().set(key, json.dumps(value), ex=self.ttl)
        except redis.RedisError as e:
            self._failed('set', e)
            return False
        self.metrics['stores'] += 1
        return True

    def ping(self) -> bool:
        if not self.enabled:
            return False
        try:
            return bool(self._get_client().ping())
        except redis.RedisError as e:
            self._failed('ping', e)
            return False

    def stats(self) -> Dict[str, Any]:
        lookups = self.metrics['hits'] + self.metrics['misses']
        return dict(self.metrics, enabled=self.enabled,
                    hit_rate=(self.metrics['hits'] / lookups) if lookups else 0.0)

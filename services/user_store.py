#!/usr/bin/env python3
"""JSON-file user store.

users.json layout: {"users": {email: user}}. Lookups by id or Stripe customer
scan the map; the file is small and rewritten whole on every change.
"""
from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import sys
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import DATA_DIR
from model_selector import normalize_tier
from time_utils import now_iso

logger = logging.getLogger(__name__)

_LOCK = Lock()
USERS_PATH = Path(os.getenv('USERS_PATH', str(DATA_DIR / 'users.json')))

# never returned to callers
_PRIVATE_FIELDS = ('password',)


class UserNotFound(KeyError):
    pass


def _read() -> Dict[str, Any]:
    if not USERS_PATH.exists():
        return {'users': {}}
    try:
        with USERS_PATH.open('r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error("Could not read user store %s: %s", USERS_PATH, e)
        raise
    data.setdefault('users', {})
    return data


def _write(data: Dict[str, Any]):
    USERS_PATH.parent.mkdir(parents=True, exist_ok=True)
    tmp = USERS_PATH.with_suffix('.tmp')
    with tmp.open('w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
    tmp.replace(USERS_PATH)


def _key(email: str) -> str:
    return (email or '').strip().lower()


def sanitize_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {k: v for k, v in user.items() if k not in _PRIVATE_FIELDS}


def create_user(email: str, password_hash: str, name: str) -> Dict[str, Any]:
    """Insert a new free-tier user; raises ValueError if the email is taken."""
    key = _key(email)
    with _LOCK:
        data = _read()
        if key in data['users']:
            raise ValueError('User already exists')
        user = {
            'id': f'user_{int(time.time() * 1000)}',
            'email': key,
            'name': name.strip(),
            'password': password_hash,
            'tier': 'free',
            'subscription_status': 'none',
            'usage': {'daily': 0, 'total': 0},
            'createdAt': now_iso(),
            'updatedAt': now_iso(),
            'stripeCustomerId': None,
        }
        # ids are millisecond timestamps; bump on collision
        ids = {u['id'] for u in data['users'].values()}
        while user['id'] in ids:
            user['id'] = f"user_{int(user['id'][5:]) + 1}"
        data['users'][key] = user
        _write(data)
    logger.info("Created user %s (%s)", key, user['id'])
    return dict(user)


def get_user_record(email: str) -> Optional[Dict[str, Any]]:
    """Full record including the password hash, for authentication only."""
    with _LOCK:
        user = _read()['users'].get(_key(email))
    return dict(user) if user else None


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    return sanitize_user(get_user_record(email))


def _find(field: str, value: Any) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    with _LOCK:
        users = _read()['users']
    for user in users.values():
        if user.get(field) == value:
            return sanitize_user(user)
    return None


def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    return _find('id', user_id)


def get_user_by_stripe_customer(customer_id: str) -> Optional[Dict[str, Any]]:
    return _find('stripeCustomerId', customer_id)


def update_user(email: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    key = _key(email)
    with _LOCK:
        data = _read()
        user = data['users'].get(key)
        if user is None:
            raise UserNotFound(key)
        for field, value in updates.items():
            if field in ('id', 'email', 'password'):
                continue
            user[field] = value
        user['updatedAt'] = now_iso()
        _write(data)
    return sanitize_user(user)


def update_user_tier(email: str, tier: str, subscription_status: Optional[str] = None) -> Dict[str, Any]:
    updates: Dict[str, Any] = {'tier': normalize_tier(tier)}
    if subscription_status:
        updates['subscription_status'] = subscription_status
    user = update_user(email, updates)
    logger.info("User %s tier -> %s (%s)", user['email'], user['tier'], user.get('subscription_status'))
    return user


def set_stripe_customer(email: str, customer_id: str) -> Dict[str, Any]:
    return update_user(email, {'stripeCustomerId': customer_id})


def increment_usage(email: str) -> Dict[str, Any]:
    """Bump the lifetime/daily counters shown on the profile."""
    key = _key(email)
    with _LOCK:
        data = _read()
        user = data['users'].get(key)
        if user is None:
            raise UserNotFound(key)
        today = now_iso()[:10]
        usage = user.setdefault('usage', {'daily': 0, 'total': 0})
        if usage.get('day') != today:
            usage['daily'] = 0
            usage['day'] = today
        usage['daily'] = int(usage.get('daily', 0)) + 1
        usage['total'] = int(usage.get('total', 0)) + 1
        _write(data)
    return sanitize_user(user)

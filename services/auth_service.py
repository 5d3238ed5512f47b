#!/usr/bin/env python3
"""Password auth and JWT session tokens (bcrypt + PyJWT, HS256)."""
from __future__ import annotations

import logging
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict

import bcrypt
import jwt

import sys
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import BCRYPT_ROUNDS, JWT_EXPIRY_DAYS, JWT_SECRET
from services import user_store
from time_utils import utc_now

logger = logging.getLogger(__name__)

ALGORITHM = 'HS256'
EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
MIN_PASSWORD_LENGTH = 6
PAYMENT_TOKEN_TTL = timedelta(hours=1)


class AuthError(Exception):
    """Bad credentials, bad input or an invalid token."""


class UserExistsError(AuthError):
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        # malformed hash in the store
        return False


def create_token(user: Dict[str, Any]) -> str:
    now = utc_now()
    payload = {
        'userId': user['id'],
        'email': user['email'],
        'iat': now,
        'exp': now + timedelta(days=JWT_EXPIRY_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)


def create_payment_token(user: Dict[str, Any], plan: str) -> str:
    """Short-lived token carried on the checkout success URL."""
    payload = {
        'userId': user['id'],
        'email': user['email'],
        'plan': plan,
        'exp': utc_now() + PAYMENT_TOKEN_TTL,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)


def validate_registration(email: str, password: str, name: str):
    if not email or not password or not name:
        raise AuthError('Email, password, and name are required')
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')
    if not EMAIL_RE.match(email.strip()):
        raise AuthError('Invalid email format')


def register(email: str, password: str, name: str) -> Dict[str, Any]:
    validate_registration(email, password, name)
    try:
        user = user_store.create_user(email, hash_password(password), name)
    except ValueError as e:
        raise UserExistsError(str(e)) from e
    return {'user': user_store.sanitize_user(user), 'token': create_token(user)}


def login(email: str, password: str) -> Dict[str, Any]:
    if not email or not password:
        raise AuthError('Email and password are required')
    record = user_store.get_user_record(email)
    if record is None or not verify_password(password, record.get('password', '')):
        logger.info("Failed login for %s", email)
        raise AuthError('Invalid credentials')
    return {'user': user_store.sanitize_user(record), 'token': create_token(record)}


def verify_token(token: str) -> Dict[str, Any]:
    """Decode a session token and return the current (sanitized) user."""
    if not token:
        raise AuthError('No token provided')
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError as e:
        raise AuthError('Token expired') from e
    except jwt.PyJWTError as e:
        raise AuthError('Invalid token') from e
    user = user_store.get_user_by_email(payload.get('email', ''))
    if user is None:
        raise AuthError('Invalid token')
    return user

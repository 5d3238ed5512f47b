"""Model, token budget and rate limits per subscription tier."""

from __future__ import annotations

from typing import Any, Dict

from config import FREE_MODEL, PREMIUM_MODEL, PRO_MODEL
from time_utils import next_hour, next_midnight

TIERS = ('free', 'premium', 'pro')
TIER_LEVELS = {'free': 0, 'premium': 1, 'pro': 2}

_TOKEN_LIMITS = {
    'text_extraction': {'free': 200, 'premium': 400, 'pro': 600},
    'code_analysis': {'free': 400, 'premium': 800, 'pro': 1200},
    'ui_analysis': {'free': 300, 'premium': 600, 'pro': 900},
    'data_analysis': {'free': 350, 'premium': 700, 'pro': 1000},
    'explanation': {'free': 250, 'premium': 500, 'pro': 750},
    'problem_solving': {'free': 300, 'premium': 600, 'pro': 900},
    'general': {'free': 250, 'premium': 500, 'pro': 750},
}

# Temperatures are keyed by tier so a model override in config keeps the tuning.
_TEMPERATURES = {
    'free': {
        'text_extraction': 0.1,
        'code_analysis': 0.2,
        'data_analysis': 0.2,
        'ui_analysis': 0.3,
        'explanation': 0.4,
        'problem_solving': 0.3,
        'general': 0.3,
    },
    'premium': {
        'text_extraction': 0.1,
        'code_analysis': 0.3,
        'data_analysis': 0.2,
        'ui_analysis': 0.4,
        'explanation': 0.5,
        'problem_solving': 0.3,
        'general': 0.4,
    },
}
_TEMPERATURES['pro'] = dict(_TEMPERATURES['premium'])

_RATE_LIMITS = {
    'free': {'requests_per_hour': 10, 'requests_per_day': 50},
    'premium': {'requests_per_hour': 100, 'requests_per_day': 1000},
    'pro': {'requests_per_hour': 500, 'requests_per_day': 5000},
}

_FEATURES = {
    'free': {'image_analysis': False, 'ocr_processing': True, 'image_optimization': True},
    'premium': {'image_analysis': True, 'ocr_processing': True, 'image_optimization': True},
    'pro': {'image_analysis': True, 'ocr_processing': True, 'image_optimization': True,
            'priority_processing': True},
}

_MODELS = {'free': FREE_MODEL, 'premium': PREMIUM_MODEL, 'pro': PRO_MODEL}


def normalize_tier(tier: str | None) -> str:
    return tier if tier in TIER_LEVELS else 'free'


def tier_at_least(user_tier: str | None, required_tier: str | None) -> bool:
    return TIER_LEVELS[normalize_tier(user_tier)] >= TIER_LEVELS[normalize_tier(required_tier)]


def get_token_limit(tier: str, question_type: str) -> int:
    tier = normalize_tier(tier)
    return (_TOKEN_LIMITS.get(question_type) or _TOKEN_LIMITS['general'])[tier]


def get_temperature(tier: str, question_type: str) -> float:
    return _TEMPERATURES[normalize_tier(tier)].get(question_type, 0.4)


def get_model_config(tier: str, question_type: str = 'general') -> Dict[str, Any]:
    """Model, max tokens, temperature, rate limits and feature flags for a tier.

    Unknown tiers are treated as free.
    """
    tier = normalize_tier(tier)
    return {
        'tier': tier,
        'model': _MODELS[tier],
        'max_tokens': get_token_limit(tier, question_type),
        'temperature': get_temperature(tier, question_type),
        'rate_limits': dict(_RATE_LIMITS[tier]),
        'features': dict(_FEATURES[tier]),
    }


def can_access_feature(tier: str, feature: str) -> bool:
    return bool(_FEATURES[normalize_tier(tier)].get(feature, False))


def check_rate_limit(tier: str, usage: Dict[str, int]) -> Dict[str, Any]:
    limits = _RATE_LIMITS[normalize_tier(tier)]
    hourly = int(usage.get('hourly', 0) or 0)
    daily = int(usage.get('daily', 0) or 0)
    return {
        'can_make_request': hourly < limits['requests_per_hour'] and daily < limits['requests_per_day'],
        'remaining_hourly': max(0, limits['requests_per_hour'] - hourly),
        'remaining_daily': max(0, limits['requests_per_day'] - daily),
        'tier_limits': dict(limits),
        'reset_time': {
            'hourly': next_hour().isoformat(),
            'daily': next_midnight().isoformat(),
        },
    }


def get_pricing_tiers() -> Dict[str, Any]:
    return {
        'free': {
            'name': 'Free',
            'price': 0,
            'currency': 'SEK',
            'features': [
                'GPT-3.5 AI responses',
                'OCR text extraction',
                'Image optimization',
                '50 requests/day',
                'Basic support',
            ],
            'limitations': [
                'No image analysis',
                'Limited tokens per response',
                'Rate limited',
            ],
        },
        'premium': {
            'name': 'Premium',
            'price': 99,
            'currency': 'SEK',
            'interval': 'month',
            'features': [
                'GPT-4o-mini AI responses',
                'Full image analysis',
                'Object, logo and scene detection',
                'Advanced image optimization',
                '1000 requests/day',
                'Priority support',
            ],
        },
        'pro': {
            'name': 'Pro',
            'price': 299,
            'currency': 'SEK',
            'interval': 'month',
            'features': [
                'GPT-4o AI responses (highest quality)',
                'Celebrity identification',
                'Advanced OCR processing',
                'Priority processing',
                '5000 requests/day',
                'Premium support',
                'API access',
            ],
        },
    }

"""Subscription gating for the image-analysis (Google Vision) path."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from model_selector import TIER_LEVELS, normalize_tier, tier_at_least
from question_classifier import VISION_QUESTION_TYPES

logger = logging.getLogger(__name__)

TIER_PERMISSIONS = {
    'free': {
        'question_types': ['PURE_TEXT'],
        'daily_limit': 10,
        'monthly_limit': 200,
        'max_image_size': 2 * 1024 * 1024,
    },
    'premium': {
        'question_types': ['PURE_TEXT', 'COUNT_OBJECTS', 'DESCRIBE_SCENE', 'DETECT_OBJECTS',
                           'DETECT_LOGOS', 'ANALYZE_DOCUMENT'],
        'daily_limit': 100,
        'monthly_limit': 2000,
        'max_image_size': 10 * 1024 * 1024,
    },
    'pro': {
        'question_types': ['all'],
        'daily_limit': 1000,
        'monthly_limit': 20000,
        'max_image_size': 50 * 1024 * 1024,
    },
}

_UPGRADES = [
    {
        'tier': 'premium',
        'benefits': ['100 image analyses/day', 'Object detection & counting', 'Logo recognition',
                     'Document analysis'],
        'enabled_question_types': ['COUNT_OBJECTS', 'DETECT_OBJECTS', 'DETECT_LOGOS',
                                   'DESCRIBE_SCENE', 'ANALYZE_DOCUMENT'],
        'monthly_cost': 99,
    },
    {
        'tier': 'pro',
        'benefits': ['1000 image analyses/day', 'Celebrity identification', 'Web entity search',
                     'Priority processing'],
        'enabled_question_types': ['IDENTIFY_CELEBRITY'],
        'monthly_cost': 299,
    },
]


@dataclass
class AccessResult:
    allowed: bool
    tier: str
    reason: Optional[str] = None
    suggested_tier: Optional[str] = None
    message: Optional[str] = None
    upgrade_url: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _next_tier(tier: str) -> str:
    order = sorted(TIER_LEVELS, key=TIER_LEVELS.get)
    idx = order.index(tier)
    return order[min(idx + 1, len(order) - 1)]


def _denied(tier: str, reason: str, suggested: str, message: str, usage: Dict[str, int]) -> AccessResult:
    logger.info("Vision access denied (%s): %s", reason, message)
    return AccessResult(
        allowed=False,
        tier=tier,
        reason=reason,
        suggested_tier=suggested,
        message=message,
        upgrade_url=f'/upgrade?tier={suggested}&reason={reason}',
        usage=usage,
    )


def validate_access(question_type: Dict[str, Any], user_tier: str, usage: Optional[Dict[str, int]] = None,
                    image_size: int = 0) -> AccessResult:
    """Check tier, image size and daily/monthly allowance for a vision question type."""
    tier = normalize_tier(user_tier)
    usage = dict(usage or {})
    perms = TIER_PERMISSIONS[tier]
    required = question_type.get('tier', 'free')
    type_id = question_type.get('id')

    if not tier_at_least(tier, required):
        return _denied(tier, 'tier_insufficient', required,
                       f'{type_id} requires {required} tier or higher', usage)
    if 'all' not in perms['question_types'] and type_id not in perms['question_types']:
        return _denied(tier, 'tier_insufficient', _next_tier(tier),
                       f'{type_id} is not included in the {tier} tier', usage)
    if image_size and image_size > perms['max_image_size']:
        return _denied(tier, 'image_too_large', _next_tier(tier),
                       f"Image exceeds {perms['max_image_size'] // (1024 * 1024)}MB limit for {tier} tier", usage)
    if int(usage.get('daily', 0)) >= perms['daily_limit']:
        return _denied(tier, 'daily_limit_exceeded', _next_tier(tier),
                       f"Daily limit of {perms['daily_limit']} requests exceeded", usage)
    if int(usage.get('monthly', 0)) >= perms['monthly_limit']:
        return _denied(tier, 'monthly_limit_exceeded', _next_tier(tier),
                       f"Monthly limit of {perms['monthly_limit']} requests exceeded", usage)
    return AccessResult(allowed=True, tier=tier, usage=usage)


def get_available_question_types(user_tier: str) -> List[str]:
    perms = TIER_PERMISSIONS[normalize_tier(user_tier)]
    allowed = perms['question_types']
    return [t for t, qt in VISION_QUESTION_TYPES.items()
            if tier_at_least(user_tier, qt['tier']) and ('all' in allowed or t in allowed)]


def get_upgrade_recommendations(user_tier: str, denied_question_types: List[str]) -> List[Dict[str, Any]]:
    tier = normalize_tier(user_tier)
    recs = [dict(u) for u in _UPGRADES if TIER_LEVELS[u['tier']] > TIER_LEVELS[tier]]
    return [r for r in recs if any(q in r['enabled_question_types'] for q in denied_question_types)]

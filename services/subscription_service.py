#!/usr/bin/env python3
"""Stripe billing: customers, checkout, webhooks, portal.

Tiers are derived from the subscribed price id via STRIPE_PRICE_TIERS
(config.json "stripe_price_tiers" or STRIPE_PRICE_PREMIUM / STRIPE_PRICE_PRO).
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import stripe

import sys
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import STRIPE_PRICE_TIERS, STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET
from model_selector import normalize_tier
from services import user_store

logger = logging.getLogger(__name__)

stripe.api_key = STRIPE_SECRET_KEY or None

ACTIVE_STATUSES = ('active', 'trialing')


class SubscriptionError(Exception):
    """Stripe is not configured, rejected a request, or sent a bad webhook."""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


def is_configured() -> bool:
    return bool(stripe.api_key)


def _require_stripe():
    if not is_configured():
        raise SubscriptionError('Stripe is not configured', status_code=503)


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Index a Stripe object or plain dict without tripping over missing keys."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _ts(value: Optional[int]) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


def tier_for_price(price_id: Optional[str], default: str = 'premium') -> str:
    return STRIPE_PRICE_TIERS.get(price_id or '', default)


def _subscription_price(subscription: Any) -> Optional[str]:
    items = _field(_field(subscription, 'items'), 'data', [])
    return _field(_field(items[0], 'price'), 'id') if items else None


def determine_tier(subscription: Any) -> str:
    if _field(subscription, 'status') not in ACTIVE_STATUSES:
        return 'free'
    return tier_for_price(_subscription_price(subscription))


def create_customer(email: str, user_id: str) -> Dict[str, Any]:
    _require_stripe()
    try:
        customer = stripe.Customer.create(email=email, metadata={'user_id': user_id})
    except stripe.StripeError as e:
        raise SubscriptionError(f'Failed to create customer: {e}') from e
    logger.info("Created Stripe customer %s for %s", customer['id'], email)
    return {'customerId': customer['id'], 'email': _field(customer, 'email')}


def create_checkout_session(customer_id: str, price_id: str, success_url: str, cancel_url: str,
                            user_id: Optional[str] = None, plan_name: Optional[str] = None) -> Dict[str, Any]:
    _require_stripe()
    params: Dict[str, Any] = {
        'customer': customer_id,
        'mode': 'subscription',
        'payment_method_types': ['card'],
        'line_items': [{'price': price_id, 'quantity': 1}],
        'success_url': success_url,
        'cancel_url': cancel_url,
        'metadata': {'user_id': user_id or '', 'plan': plan_name or ''},
    }
    if user_id:
        params['client_reference_id'] = user_id
    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        raise SubscriptionError(f'Failed to create checkout session: {e}') from e
    return {'sessionId': session['id'], 'url': _field(session, 'url')}


def _checkout_completed(session: Any) -> Dict[str, Any]:
    user_id = _field(session, 'client_reference_id') or _field(_field(session, 'metadata'), 'user_id')
    customer_id = _field(session, 'customer')
    user = user_store.get_user_by_id(user_id) if user_id else None
    if user is None and customer_id:
        user = user_store.get_user_by_stripe_customer(customer_id)
    if user is None:
        logger.warning("Checkout %s completed for unknown user %s", _field(session, 'id'), user_id)
        return {'processed': False}

    price_id = None
    try:
        full = stripe.checkout.Session.retrieve(session['id'], expand=['line_items'])
        items = _field(_field(full, 'line_items'), 'data', [])
        price_id = _field(_field(items[0], 'price'), 'id') if items else None
    except stripe.StripeError as e:
        logger.warning("Could not expand line items for %s: %s", _field(session, 'id'), e)
    plan = _field(_field(session, 'metadata'), 'plan') or 'premium'
    tier = tier_for_price(price_id, default=normalize_tier(plan))

    user_store.update_user_tier(user['email'], tier, 'active')
    if customer_id:
        user_store.set_stripe_customer(user['email'], customer_id)
    logger.info("User %s upgraded to %s via checkout (price=%s)", user['email'], tier, price_id)
    return {'processed': True, 'tier': tier, 'userId': user['id']}


def _subscription_changed(subscription: Any) -> Dict[str, Any]:
    user = user_store.get_user_by_stripe_customer(_field(subscription, 'customer'))
    if user is None:
        return {'processed': False}
    tier = determine_tier(subscription)
    status = _field(subscription, 'status', 'unknown')
    user_store.update_user_tier(user['email'], tier, status)
    return {'processed': True, 'tier': tier, 'status': status}


def _subscription_deleted(subscription: Any) -> Dict[str, Any]:
    user = user_store.get_user_by_stripe_customer(_field(subscription, 'customer'))
    if user is None:
        return {'processed': False}
    user_store.update_user_tier(user['email'], 'free', 'canceled')
    return {'processed': True, 'tier': 'free'}


def _payment_failed(invoice: Any) -> Dict[str, Any]:
    user = user_store.get_user_by_stripe_customer(_field(invoice, 'customer'))
    if user is None:
        return {'processed': False}
    user_store.update_user(user['email'], {'subscription_status': 'past_due'})
    logger.warning("Payment failed for %s", user['email'])
    return {'processed': True}


_HANDLERS = {
    'checkout.session.completed': _checkout_completed,
    'customer.subscription.created': _subscription_changed,
    'customer.subscription.updated': _subscription_changed,
    'customer.subscription.deleted': _subscription_deleted,
    'invoice.payment_failed': _payment_failed,
}


def handle_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    if not signature:
        raise SubscriptionError('Missing stripe-signature header', status_code=400)
    if not STRIPE_WEBHOOK_SECRET:
        raise SubscriptionError('Webhook secret is not configured', status_code=503)
    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        raise SubscriptionError('Invalid payload', status_code=400) from e
    except stripe.SignatureVerificationError as e:
        raise SubscriptionError('Invalid signature', status_code=400) from e

    etype = event['type']
    handler = _HANDLERS.get(etype)
    logger.info("Stripe webhook %s", etype)
    result = handler(event['data']['object']) if handler else {'processed': False}
    return dict(result, received=True, type=etype)


def get_customer_subscription(customer_id: Optional[str]) -> Dict[str, Any]:
    if not customer_id:
        return {'status': 'none', 'tier': 'free', 'currentPeriodEnd': None}
    _require_stripe()
    try:
        subs = stripe.Subscription.list(customer=customer_id, status='all', limit=1)
    except stripe.StripeError as e:
        raise SubscriptionError(f'Failed to fetch subscription: {e}') from e
    data = _field(subs, 'data', [])
    if not data:
        return {'status': 'none', 'tier': 'free', 'currentPeriodEnd': None}
    sub = data[0]
    return {
        'tier': determine_tier(sub),
        'status': _field(sub, 'status'),
        'currentPeriodEnd': _ts(_field(sub, 'current_period_end')),
        'subscriptionId': sub['id'],
    }


def cancel_subscription(subscription_id: str) -> Dict[str, Any]:
    """Cancel at period end; the tier drops when Stripe sends subscription.deleted."""
    _require_stripe()
    try:
        sub = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as e:
        raise SubscriptionError(f'Failed to cancel subscription: {e}') from e
    return {'success': True, 'cancelAt': _ts(_field(sub, 'cancel_at') or _field(sub, 'current_period_end'))}


def create_portal_session(customer_id: str, return_url: str) -> Dict[str, Any]:
    _require_stripe()
    try:
        session = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)
    except stripe.StripeError as e:
        raise SubscriptionError(f'Failed to create portal session: {e}') from e
    return {'url': session['url']}

"""
FrameSense HTTP API (FastAPI)

Serves:
- GET  /health, /api/ai/health
- GET  /api/ai/question-types, /api/ai/capabilities : vision question types and limits for the tier
- POST /api/auth/register, /api/auth/login; GET /api/auth/verify, /api/auth/profile
- POST /api/analyze      : multipart question + image (file or data URL)
- POST /api/ai/chat      : JSON {message, imageData}
- /api/subscription/*    : pricing, checkout, status, cancel, portal, tier info
- POST /api/webhooks/stripe
- /api/admin/*           : manual tier changes (X-Admin-Secret)

Anonymous callers are served at the free tier, rate limited per client address.
"""

import logging
import re
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import openai
from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ai_processor import AIProcessor, InvalidImageError
from config import ADMIN_SECRET, FRONTEND_URL, MAX_UPLOAD_BYTES
from llm_client import LLMUnavailable
from logging_config import configure_logging
from model_selector import (TIERS, can_access_feature, check_rate_limit, get_model_config, get_pricing_tiers,
                            normalize_tier)
from question_classifier import (VISION_QUESTION_TYPES, find_by_capabilities, get_cost_estimate,
                                 get_vision_question_type)
from services import auth_service, subscription_service, user_store
from services.auth_service import AuthError
from services.subscription_service import SubscriptionError
from schemas import (AdminTierBody, CancelBody, ChatBody, CheckoutBody, LoginBody, PortalBody,
                     RegisterBody)
from tier_access import TIER_PERMISSIONS, get_available_question_types
import usage_limiter
from token_tracker import summary as token_summary
from time_utils import now_iso
from usage_limiter import RateLimitExceeded

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title='FrameSense API')
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL, 'http://localhost:5173', 'http://localhost:1420', 'tauri://localhost'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

processor = AIProcessor()


# --- Errors ---

def _fail(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=dict({'success': False, 'message': message}, **extra))


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    return _fail(exc.status_code, str(exc.detail))


@app.exception_handler(RateLimitExceeded)
async def _rate_limited(request: Request, exc: RateLimitExceeded):
    return _fail(429, 'Rate limit exceeded', tier=exc.tier, rate_limits=exc.limits,
                 upgrade_url=f'{FRONTEND_URL}/payments')


@app.exception_handler(SubscriptionError)
async def _subscription_error(request: Request, exc: SubscriptionError):
    return _fail(exc.status_code, str(exc))


def _model_error(exc: Exception, started: float) -> JSONResponse:
    code = getattr(exc, 'code', None)
    if code == 'insufficient_quota':
        status_code, message = 429, 'OpenAI API quota exceeded'
    elif code == 'invalid_api_key' or isinstance(exc, openai.AuthenticationError):
        status_code, message = 401, 'Invalid OpenAI API key'
    elif isinstance(exc, LLMUnavailable):
        status_code, message = 503, str(exc)
    else:
        status_code, message = 500, str(exc) or 'Failed to process AI request'
    logger.error("AI processing error (%s): %s", status_code, exc)
    return _fail(status_code, message, processing_info={
        'question_type': 'unknown',
        'optimization_strategy': 'failed',
        'ocr_used': False,
        'image_optimized': False,
        'processing_time': {'ocr': 0, 'total': int((time.monotonic() - started) * 1000)},
    })


# --- Auth dependencies ---

def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        return ''
    return authorization[7:].strip() if authorization.lower().startswith('bearer ') else authorization.strip()


def current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    try:
        return auth_service.verify_token(_bearer(authorization))
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


def optional_user(request: Request, authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """The logged-in user, or an anonymous free-tier caller keyed by client address."""
    token = _bearer(authorization)
    if token:
        try:
            return auth_service.verify_token(token)
        except AuthError as e:
            raise HTTPException(status_code=401, detail=str(e))
    host = request.client.host if request.client else 'unknown'
    return {'id': f'anon:{host}', 'tier': 'free', 'anonymous': True}


def require_admin(x_admin_secret: Optional[str] = Header(None)):
    if not ADMIN_SECRET or x_admin_secret != ADMIN_SECRET:
        raise HTTPException(status_code=403, detail='Forbidden')


# --- Health ---

@app.get('/health')
def health():
    return {'status': 'healthy', 'service': 'FrameSense Backend', 'timestamp': now_iso()}


@app.get('/api/ai/health')
def ai_health():
    checks = processor.health_check()
    return {'success': checks['overall'], 'services': checks, 'cache': processor.cache.stats(),
            'tokens': token_summary(), 'timestamp': now_iso()}


FEATURE_FLAGS = ('image_analysis', 'ocr_processing', 'image_optimization', 'priority_processing')


def _question_type_view(type_id: str) -> Dict[str, Any]:
    qt = get_vision_question_type(type_id)
    raw = VISION_QUESTION_TYPES[type_id]['patterns'][:3]
    return {
        'id': type_id,
        'description': qt['description'],
        'tier': qt['tier'],
        'estimatedCost': get_cost_estimate(qt, qt['default_model']),
        'capabilities': qt['capabilities'],
        'examples': [re.sub(r'[\\^$*+?.()|\[\]{}]', '', p) for p in raw],
    }


@app.get('/api/ai/question-types')
def question_types(capability: Optional[List[str]] = Query(None),
                   user: Dict[str, Any] = Depends(current_user)):
    tier = normalize_tier(user.get('tier'))
    available = get_available_question_types(tier)
    if capability:
        matching = {qt['id'] for qt in find_by_capabilities(capability)}
        available = [t for t in available if t in matching]
    return {
        'success': True,
        'userTier': tier,
        'questionTypes': [_question_type_view(t) for t in available],
        'metadata': {'timestamp': now_iso(), 'totalTypes': len(available)},
    }


@app.get('/api/ai/capabilities')
def capabilities(user: Dict[str, Any] = Depends(current_user)):
    tier = normalize_tier(user.get('tier'))
    perms = TIER_PERMISSIONS[tier]
    usage = usage_limiter.usage(user['id'])
    return {
        'success': True,
        'tier': tier,
        'questionTypes': [_question_type_view(t) for t in get_available_question_types(tier)],
        'limits': {
            'dailyLimit': perms['daily_limit'],
            'monthlyLimit': perms['monthly_limit'],
            'dailyUsed': usage['daily'],
            'monthlyUsed': usage['monthly'],
            'dailyRemaining': max(0, perms['daily_limit'] - usage['daily']),
            'monthlyRemaining': max(0, perms['monthly_limit'] - usage['monthly']),
        },
        'features': {f: can_access_feature(tier, f) for f in FEATURE_FLAGS},
        'restrictions': {'maxImageSize': perms['max_image_size']},
        'metadata': {'timestamp': now_iso()},
    }


# --- Auth ---

@app.post('/api/auth/register')
def register(body: RegisterBody):
    try:
        result = auth_service.register(body.email, body.password, body.name)
    except AuthError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return dict({'success': True}, **result)


@app.post('/api/auth/login')
def login(body: LoginBody):
    if not body.email or not body.password:
        raise HTTPException(status_code=400, detail='Email and password are required')
    try:
        result = auth_service.login(body.email, body.password)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return dict({'success': True}, **result)


@app.get('/api/auth/verify')
def verify(user: Dict[str, Any] = Depends(current_user)):
    return {'success': True, 'user': user}


@app.get('/api/auth/profile')
def profile(user: Dict[str, Any] = Depends(current_user)):
    return {'success': True, 'user': user}


# --- AI ---

def _run(message: Optional[str], image_data: Optional[str], image_bytes: Optional[bytes],
         user: Dict[str, Any], started: float):
    if not (message or '').strip():
        raise HTTPException(status_code=400, detail='Message is required')
    request = {'message': message, 'image_data': image_data, 'image_bytes': image_bytes, 'start_time': started}
    try:
        response = processor.process_with_fallback(request, user)
    except (RateLimitExceeded, HTTPException):
        raise
    except InvalidImageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        return _model_error(e, started)
    if not user.get('anonymous'):
        try:
            user_store.increment_usage(user['email'])
        except user_store.UserNotFound:
            logger.warning("Usage not recorded: user %s vanished", user.get('email'))
    return response


@app.post('/api/analyze')
def analyze(
    message: Optional[str] = Form(None),
    question: Optional[str] = Form(None),
    imageData: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    user: Dict[str, Any] = Depends(optional_user),
):
    started = time.monotonic()
    image_bytes = None
    if image is not None:
        image_bytes = image.file.read(MAX_UPLOAD_BYTES + 1)
        if len(image_bytes) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=413, detail='Image too large')
    elif imageData and len(imageData) * 3 // 4 > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail='Image too large')
    text = message or question
    if not text and (image_bytes or imageData):
        text = 'What do you see in this image?'
    return _run(text, imageData, image_bytes or None, user, started)


@app.post('/api/ai/chat')
def chat(body: ChatBody, user: Dict[str, Any] = Depends(optional_user)):
    started = time.monotonic()
    if body.image_data and len(body.image_data) * 3 // 4 > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail='Image too large')
    return _run(body.message, body.image_data, None, user, started)


# --- Subscription ---

@app.get('/api/subscription/pricing-tiers')
def pricing_tiers():
    return {'success': True, 'tiers': get_pricing_tiers()}


@app.post('/api/subscription/create-checkout-session')
def create_checkout_session(body: CheckoutBody, user: Dict[str, Any] = Depends(current_user)):
    if not body.price_id or not body.plan_name:
        raise HTTPException(status_code=400, detail='Missing required fields: priceId, planName')
    customer_id = user.get('stripeCustomerId')
    if not customer_id:
        customer_id = subscription_service.create_customer(user['email'], user['id'])['customerId']
        user_store.set_stripe_customer(user['email'], customer_id)

    token = auth_service.create_payment_token(user, body.plan_name)
    success_url = (f'{FRONTEND_URL}/success?token={token}&email={quote(user["email"])}'
                   f'&plan={quote(body.plan_name)}')
    cancel_url = f'{FRONTEND_URL}/payments?canceled=true'
    session = subscription_service.create_checkout_session(
        customer_id, body.price_id, success_url, cancel_url, user['id'], body.plan_name)
    logger.info("Checkout session created for %s plan=%s", user['email'], body.plan_name)
    return {'success': True, 'sessionId': session['sessionId'], 'sessionUrl': session['url']}


@app.get('/api/subscription/subscription-status')
def subscription_status(user: Dict[str, Any] = Depends(current_user)):
    return {'success': True,
            'subscription': subscription_service.get_customer_subscription(user.get('stripeCustomerId'))}


@app.get('/api/subscription/check-status')
def check_status(user: Dict[str, Any] = Depends(current_user)):
    fresh = user_store.get_user_by_id(user['id'])
    if fresh is None:
        raise HTTPException(status_code=404, detail='User not found')
    return {'success': True, 'user': fresh}


@app.post('/api/subscription/cancel-subscription')
def cancel_subscription(body: CancelBody, user: Dict[str, Any] = Depends(current_user)):
    if not body.subscription_id:
        raise HTTPException(status_code=400, detail='Missing subscriptionId')
    result = subscription_service.cancel_subscription(body.subscription_id)
    # paid features stay until the period ends; the deletion webhook drops the tier
    user_store.update_user(user['email'], {'subscription_status': 'canceling'})
    return {'success': True, 'result': result}


@app.post('/api/subscription/create-portal-session')
def create_portal_session(body: PortalBody, user: Dict[str, Any] = Depends(current_user)):
    if not body.return_url:
        raise HTTPException(status_code=400, detail='Missing returnUrl')
    if not user.get('stripeCustomerId'):
        raise HTTPException(status_code=400, detail='User has no Stripe customer ID')
    session = subscription_service.create_portal_session(user['stripeCustomerId'], body.return_url)
    return {'success': True, 'session': session}


@app.get('/api/subscription/user-tier-info')
def user_tier_info(user: Dict[str, Any] = Depends(current_user)):
    usage = usage_limiter.usage(user['id'])
    return {
        'success': True,
        'user': dict(user,
                     tierConfig=get_model_config(user.get('tier'), 'general'),
                     rateLimits=check_rate_limit(user.get('tier'), usage),
                     requestUsage=usage),
    }


@app.post('/api/webhooks/stripe')
async def stripe_webhook(request: Request):
    payload = await request.body()
    result = subscription_service.handle_webhook(payload, request.headers.get('stripe-signature'))
    return dict({'success': True}, **result)


# --- Admin ---

@app.post('/api/admin/upgrade-tier', dependencies=[Depends(require_admin)])
def admin_upgrade_tier(body: AdminTierBody):
    if body.tier not in TIERS:
        raise HTTPException(status_code=400, detail=f'Invalid tier: {body.tier}')
    try:
        user = user_store.update_user_tier(body.email, body.tier, body.subscription_status or 'manual')
    except user_store.UserNotFound:
        raise HTTPException(status_code=404, detail='User not found')
    return {'success': True, 'user': user}


@app.get('/api/admin/user-tier/{email}', dependencies=[Depends(require_admin)])
def admin_user_tier(email: str):
    user = user_store.get_user_by_email(email)
    if user is None:
        raise HTTPException(status_code=404, detail='User not found')
    return {'success': True, 'email': user['email'], 'tier': user['tier'],
            'subscription_status': user.get('subscription_status')}

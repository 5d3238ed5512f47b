#!/usr/bin/env python3
"""
ai_processor.py
Request pipeline: question + optional image -> tiered model answer.

Steps for the full ("intelligent") strategy:
1. Rate limit slot reserved for the user's tier (usage_limiter); released
   again if every strategy fails
2. Question type detection (question_classifier)
3. Response cache lookup (response_cache)
4. OCR when the question benefits from it (ocr_service)
5. Google Vision detections when the vision catalogue routes the question
   there and the tier allows it (vision_service, tier_access)
6. Image optimization for the question type (image_optimizer), only when the
   tier may send images to the model
7. Prompt, model and token budget by tier (prompt_optimizer, model_selector)
8. OpenAI call (llm_client), usage recording, cache store

process_with_fallback() runs intelligent -> simple -> minimal and re-raises
the last error when all three fail.
"""

from __future__ import annotations

import copy
import io
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from PIL import Image, UnidentifiedImageError

import image_optimizer
import llm_client
import ocr_service
import usage_limiter
import vision_service
from config import FALLBACK_MODEL
from llm_client import LLMUnavailable
from model_selector import get_model_config, normalize_tier
from prompt_optimizer import optimize_prompt
from question_classifier import classify_vision_question, detect_question_type
from response_cache import ResponseCache, cache_key
from tier_access import get_upgrade_recommendations, validate_access
from time_utils import now_iso
from usage_limiter import RateLimitExceeded

logger = logging.getLogger(__name__)

TEXT_KEYWORDS = ['text', 'read', 'say', 'written', 'words', 'type']
VISUAL_KEYWORDS = ['color', 'shape', 'design', 'layout', 'appearance']

STRATEGIES = ('intelligent', 'simple', 'minimal')


class InvalidImageError(ValueError):
    """The uploaded image could not be decoded."""


@dataclass
class PreparedRequest:
    message: str
    user_id: str
    tier: str
    limits: Dict[str, Any]
    start: float
    image: Optional[bytes] = None
    image_format: str = 'jpeg'
    slot: Optional[Dict[str, str]] = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start) * 1000)


def should_run_ocr(question_type: str, message: str) -> bool:
    low = (message or '').lower()
    if question_type in ('text_extraction', 'code_analysis'):
        return True
    if any(k in low for k in TEXT_KEYWORDS):
        return True
    if any(k in low for k in VISUAL_KEYWORDS):
        return False
    # cheap and usually helpful
    return True


def build_messages(prompt: str, image_data_url: Optional[str] = None) -> List[Dict[str, Any]]:
    if image_data_url:
        return [{
            'role': 'user',
            'content': [
                {'type': 'text', 'text': prompt},
                {'type': 'image_url', 'image_url': {'url': image_data_url}},
            ],
        }]
    return [{'role': 'user', 'content': prompt}]


def load_image(image_data: Optional[str] = None, image_bytes: Optional[bytes] = None):
    """Return (bytes, format) for an uploaded image, or (None, None) without one."""
    if image_bytes is None and image_data:
        try:
            image_bytes = image_optimizer.data_url_to_bytes(image_data)
        except ValueError as e:
            raise InvalidImageError(str(e)) from e
    if not image_bytes:
        return None, None
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            fmt = (im.format or 'jpeg').lower()
            im.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidImageError(f'Unsupported or corrupt image: {e}') from e
    return image_bytes, fmt


class AIProcessor:
    def __init__(self, cache: Optional[ResponseCache] = None):
        self.cache = cache if cache is not None else ResponseCache()

    # ------------------------------------------------------------------ #
    def prepare(self, request: Dict[str, Any], user: Dict[str, Any]) -> PreparedRequest:
        message = (request.get('message') or '').strip()
        if not message:
            raise ValueError('Message is required')
        tier = normalize_tier(user.get('tier'))
        user_id = user.get('id') or 'anonymous'
        limits, slot = usage_limiter.reserve(user_id, tier)
        try:
            image, fmt = load_image(request.get('image_data'), request.get('image_bytes'))
        except InvalidImageError:
            usage_limiter.release(user_id, slot)
            raise
        return PreparedRequest(
            message=message,
            user_id=user_id,
            tier=tier,
            limits=limits,
            start=request.get('start_time') or time.monotonic(),
            image=image,
            image_format=fmt or 'jpeg',
            slot=slot,
        )

    def process_request(self, request: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        prepared = self.prepare(request, user)
        try:
            response = self._intelligent(prepared)
        except Exception:
            self._release(prepared)
            raise
        return self._finish(prepared, response)

    def process_with_fallback(self, request: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        prepared = self.prepare(request, user)
        runners: Dict[str, Callable[[PreparedRequest], Dict[str, Any]]] = {
            'intelligent': self._intelligent,
            'simple': self._simple,
            'minimal': self._minimal,
        }
        failures = []
        for strategy in STRATEGIES:
            try:
                logger.info("Trying strategy: %s", strategy)
                response = runners[strategy](prepared)
            except (RateLimitExceeded, InvalidImageError, LLMUnavailable):
                self._release(prepared)
                raise
            except Exception as e:
                logger.warning("Strategy %s failed: %s", strategy, e)
                failures.append({'strategy': strategy, 'error': str(e)})
                if strategy == STRATEGIES[-1]:
                    self._release(prepared)
                    raise
                continue
            if failures:
                response['processing_info']['failed_strategies'] = failures
            return self._finish(prepared, response)

    # ------------------------------------------------------------------ #
    def _release(self, prepared: PreparedRequest) -> None:
        # failed requests do not count against the allowance
        if prepared.slot:
            usage_limiter.release(prepared.user_id, prepared.slot)

    def _finish(self, prepared: PreparedRequest, response: Dict[str, Any]) -> Dict[str, Any]:
        info = response['processing_info']
        if not info.get('cached'):
            usage_limiter.add_tokens(prepared.user_id, info.get('tokens_used', 0))
        after = usage_limiter.check(prepared.user_id, prepared.tier)
        info['rate_limits'] = {
            'remaining_hourly': after['remaining_hourly'],
            'remaining_daily': after['remaining_daily'],
            'tier_limits': after['tier_limits'],
        }
        info.setdefault('processing_time', {})['total'] = prepared.elapsed_ms
        response['usage'] = {
            'request_count': after['tier_limits']['requests_per_day'] - after['remaining_daily'],
            'remaining_requests': after['remaining_daily'],
            'timestamp': now_iso(),
        }
        return response

    def _call_model(self, messages, model: str, max_tokens: int, temperature: float):
        resp = llm_client.chat_create(messages, model=model, max_tokens=max_tokens, temperature=temperature)
        return llm_client.completion_text(resp), llm_client.tokens_used(resp)

    def _run_vision(self, prepared: PreparedRequest) -> Dict[str, Any]:
        """Classify against the vision catalogue and run Google Vision when routed and allowed."""
        vq = classify_vision_question(prepared.message)
        features = vision_service.features_for_services(vq['services'])
        out: Dict[str, Any] = {'question_type': vq['id'], 'confidence': vq['confidence'], 'used': False}
        if not features:
            return out
        access = validate_access(vq, prepared.tier, usage_limiter.usage(prepared.user_id),
                                 image_size=len(prepared.image or b''))
        if not access.allowed:
            out['access'] = access.to_dict()
            out['upgrade_recommendations'] = get_upgrade_recommendations(prepared.tier, [vq['id']])
            return out
        logger.info("Running Google Vision %s for %s", ','.join(features), vq['id'])
        result = vision_service.analyze_image_content(prepared.image, features)
        out['result'] = result
        out['used'] = bool(result.get('success'))
        return out

    def _intelligent(self, prepared: PreparedRequest) -> Dict[str, Any]:
        logger.info("Starting intelligent AI processing pipeline")
        qtype = detect_question_type(prepared.message)
        config = get_model_config(prepared.tier, qtype)
        logger.info("Detected question type: %s (tier=%s, model=%s)", qtype, prepared.tier, config['model'])

        key = cache_key(prepared.tier, qtype, prepared.message, prepared.image)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info("Serving cached response")
            cached['processing_info']['cached'] = True
            return cached

        ocr = None
        vision = None
        image_url = None
        optimization = None
        image_size_kb = 0.0
        if prepared.image:
            image_size_kb = image_optimizer.size_kb(prepared.image)
            if config['features']['ocr_processing'] and should_run_ocr(qtype, prepared.message):
                logger.info("Running OCR analysis")
                ocr = ocr_service.extract_text_intelligent(prepared.image, qtype,
                                                           force_ocr=(qtype == 'text_extraction'))
            vision = self._run_vision(prepared)
            if config['features']['image_analysis']:
                optimized = image_optimizer.optimize_for_question_type(prepared.image, qtype)
                optimization = optimized.summary()
                fmt = 'jpeg' if optimized.data is not prepared.image else prepared.image_format
                image_url = image_optimizer.bytes_to_data_url(optimized.data, fmt)

        has_ocr = bool(ocr and ocr.has_text)
        prompt = optimize_prompt({
            'message': prepared.message,
            'question_type': qtype,
            'tier': prepared.tier,
            'has_image': image_url is not None,
            'image_withheld': bool(prepared.image) and image_url is None,
            'has_ocr': has_ocr,
            'ocr_text': ocr.text if ocr else None,
            'ocr_confidence': ocr.confidence if ocr else None,
            'image_size_kb': image_size_kb,
            'vision': (vision or {}).get('result'),
        })
        logger.info("Prompt optimization: %s", prompt.reasoning)

        text, tokens = self._call_model(build_messages(prompt.prompt, image_url), config['model'],
                                        prompt.max_tokens, prompt.temperature)
        info: Dict[str, Any] = {
            'strategy': 'intelligent',
            'question_type': qtype,
            'model_used': config['model'],
            'user_tier': prepared.tier,
            'optimization_strategy': prompt.reasoning,
            'ocr_used': has_ocr,
            'vision_used': bool(vision and vision['used']),
            'image_optimized': optimization is not None,
            'image_sent': image_url is not None,
            'processing_time': {'ocr': ocr.processing_time if ocr else 0},
            'tokens_used': tokens,
        }
        if optimization:
            info['image_optimization'] = optimization
        if vision:
            info['vision'] = {k: v for k, v in vision.items() if k != 'result'}
        response = {'message': text, 'success': True, 'processing_info': info}
        self.cache.set(key, copy.deepcopy(response))
        return response

    def _simple(self, prepared: PreparedRequest) -> Dict[str, Any]:
        logger.info("Using simple processing pipeline")
        image_url = None
        if prepared.image and get_model_config(prepared.tier)['features']['image_analysis']:
            optimized = image_optimizer.optimize_for_ai(prepared.image)
            fmt = 'jpeg' if optimized.data is not prepared.image else prepared.image_format
            image_url = image_optimizer.bytes_to_data_url(optimized.data, fmt)
        text, tokens = self._call_model(build_messages(prepared.message, image_url), FALLBACK_MODEL, 500, 0.4)
        return {
            'message': text,
            'success': True,
            'processing_info': {
                'strategy': 'simple',
                'model_used': FALLBACK_MODEL,
                'user_tier': prepared.tier,
                'ocr_used': False,
                'image_optimized': image_url is not None,
                'tokens_used': tokens,
            },
        }

    def _minimal(self, prepared: PreparedRequest) -> Dict[str, Any]:
        logger.info("Using minimal processing pipeline")
        image_url = None
        if prepared.image and get_model_config(prepared.tier)['features']['image_analysis']:
            image_url = image_optimizer.bytes_to_data_url(prepared.image, prepared.image_format)
        text, tokens = self._call_model(build_messages(prepared.message, image_url), FALLBACK_MODEL, 400, 0.3)
        return {
            'message': text,
            'success': True,
            'processing_info': {
                'strategy': 'minimal',
                'model_used': FALLBACK_MODEL,
                'user_tier': prepared.tier,
                'ocr_used': False,
                'image_optimized': False,
                'tokens_used': tokens,
            },
        }

    # ------------------------------------------------------------------ #
    def health_check(self) -> Dict[str, Any]:
        results = {
            'prompt_optimizer': True,
            'image_optimizer': False,
            'ocr_service': False,
            'vision_service': vision_service.get_client() is not None,
            'llm': llm_client.is_available(),
            'cache': self.cache.ping() if self.cache.enabled else False,
        }
        try:
            probe = io.BytesIO()
            Image.new('RGB', (4, 4), color='white').save(probe, format='PNG')
            image_optimizer.get_image_info(probe.getvalue())
            results['image_optimizer'] = True
        except Exception as e:
            logger.warning("Image optimizer test failed: %s", e)
        results['ocr_service'] = ocr_service.test_ocr()['available']
        results['overall'] = results['prompt_optimizer'] and results['image_optimizer']
        return results

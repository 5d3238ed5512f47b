"""Google Cloud Vision detections used by the image-analysis path.

Credentials come from the usual Google application-default lookup
(GOOGLE_APPLICATION_CREDENTIALS etc.). When the client cannot be created, or
GOOGLE_VISION_ENABLED is false, every detector returns success=False and the
pipeline carries on with OCR and the language model only.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from google.cloud import vision

from config import GOOGLE_VISION_ENABLED

logger = logging.getLogger(__name__)

_client = None
_initialized = False

# Question catalogue services -> detectors to run
SERVICE_FEATURES = {
    'google-vision-objects': ('objects',),
    'google-vision-logos': ('logos',),
    'google-vision-web': ('web', 'faces'),
    'google-vision-text': ('text',),
}
ALL_FEATURES = ('objects', 'logos', 'faces', 'text')


def get_client():
    """Create the ImageAnnotatorClient once; None when unavailable."""
    global _client, _initialized
    if _initialized:
        return _client
    _initialized = True
    if not GOOGLE_VISION_ENABLED:
        logger.info("Google Vision disabled by configuration")
        return None
    try:
        _client = vision.ImageAnnotatorClient()
        logger.info("Google Vision client initialized")
    except Exception as e:
        logger.warning("Google Vision not available: %s", e)
        _client = None
    return _client


def _check(resp):
    if resp.error and resp.error.message:
        raise RuntimeError(resp.error.message)
    return resp


def _mean(values: Iterable[float]) -> float:
    vals = list(values)
    return sum(vals) / len(vals) if vals else 0.0


def detect_objects(data: bytes) -> Dict[str, Any]:
    client = get_client()
    if client is None:
        return {'objects': [], 'confidence': 0.0, 'success': False}
    try:
        resp = _check(client.label_detection(image=vision.Image(content=data)))
        labels = list(resp.label_annotations)
        objects = [l.description.lower() for l in labels if l.score > 0.6][:10]
        conf = _mean(l.score for l in labels)
        logger.info("Objects detected: %d items (confidence %d%%)", len(objects), round(conf * 100))
        return {'objects': objects, 'confidence': conf, 'success': True}
    except Exception as e:
        logger.error("Object detection failed: %s", e)
        return {'objects': [], 'confidence': 0.0, 'success': False}


def detect_logos(data: bytes) -> Dict[str, Any]:
    client = get_client()
    if client is None:
        return {'logos': [], 'confidence': 0.0, 'success': False}
    try:
        resp = _check(client.logo_detection(image=vision.Image(content=data)))
        logos = list(resp.logo_annotations)
        names = [l.description for l in logos if l.score > 0.5]
        conf = _mean(l.score for l in logos)
        logger.info("Logos detected: %d (confidence %d%%)", len(names), round(conf * 100))
        return {'logos': names, 'confidence': conf, 'success': True}
    except Exception as e:
        logger.error("Logo detection failed: %s", e)
        return {'logos': [], 'confidence': 0.0, 'success': False}


def detect_faces(data: bytes) -> Dict[str, Any]:
    client = get_client()
    if client is None:
        return {'faces': 0, 'confidence': 0.0, 'success': False}
    try:
        resp = _check(client.face_detection(image=vision.Image(content=data)))
        faces = list(resp.face_annotations)
        conf = _mean(f.detection_confidence for f in faces)
        logger.info("Faces detected: %d (confidence %d%%)", len(faces), round(conf * 100))
        return {'faces': len(faces), 'confidence': conf, 'success': True}
    except Exception as e:
        logger.error("Face detection failed: %s", e)
        return {'faces': 0, 'confidence': 0.0, 'success': False}


def detect_text(data: bytes) -> Dict[str, Any]:
    client = get_client()
    if client is None:
        return {'text': '', 'confidence': 0.0, 'success': False}
    try:
        resp = _check(client.text_detection(image=vision.Image(content=data)))
        annotations = list(resp.text_annotations)
        text = annotations[0].description.strip() if annotations else ''
        # text_detection does not report confidence on the full-text annotation
        conf = (annotations[0].confidence or 0.8) if annotations else 0.0
        return {'text': text, 'confidence': conf, 'success': True,
                'word_count': max(0, len(annotations) - 1)}
    except Exception as e:
        logger.error("Text detection failed: %s", e)
        return {'text': '', 'confidence': 0.0, 'success': False}


def detect_web_entities(data: bytes) -> Dict[str, Any]:
    """Web detection: best-guess labels and named entities (celebrity identification)."""
    client = get_client()
    if client is None:
        return {'web_entities': [], 'best_guess': [], 'confidence': 0.0, 'success': False}
    try:
        resp = _check(client.web_detection(image=vision.Image(content=data)))
        web = resp.web_detection
        entities = [e for e in web.web_entities if e.description and e.score > 0.5][:5]
        best_guess = [g.label for g in web.best_guess_labels if g.label]
        # web entity scores are not bounded by 1
        conf = min(_mean(e.score for e in entities), 1.0)
        logger.info("Web entities: %s", ', '.join(e.description for e in entities) or 'none')
        return {
            'web_entities': [e.description for e in entities],
            'best_guess': best_guess,
            'confidence': conf,
            'success': True,
        }
    except Exception as e:
        logger.error("Web detection failed: %s", e)
        return {'web_entities': [], 'best_guess': [], 'confidence': 0.0, 'success': False}


_DETECTORS = {
    'objects': detect_objects,
    'logos': detect_logos,
    'faces': detect_faces,
    'text': detect_text,
    'web': detect_web_entities,
}


def features_for_services(services: Iterable[str]) -> tuple:
    out = []
    for s in services or ():
        for f in SERVICE_FEATURES.get(s, ()):
            if f not in out:
                out.append(f)
    return tuple(out)


def analyze_image_content(data: bytes, features: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """Run the requested detectors and merge their results.

    success is True when at least one detector succeeded; confidence is the
    mean over the successful ones.
    """
    features = tuple(features or ALL_FEATURES)
    results = {f: _DETECTORS[f](data) for f in features if f in _DETECTORS}
    ok = [r for r in results.values() if r['success']]

    merged: Dict[str, Any] = {
        'objects': results.get('objects', {}).get('objects', []),
        'logos': results.get('logos', {}).get('logos', []),
        'faces': results.get('faces', {}).get('faces', 0),
        'text': results.get('text', {}).get('text', ''),
        'web_entities': results.get('web', {}).get('web_entities', []),
        'best_guess': results.get('web', {}).get('best_guess', []),
        'features': list(results),
        'confidence': _mean(r['confidence'] for r in ok),
        'success': bool(ok),
    }
    if not ok:
        logger.warning("Google Vision analysis failed - falling back to OCR and language model only")
    return merged

#!/usr/bin/env python3
"""
ocr_service.py
Local Tesseract OCR for uploaded images (pytesseract + Pillow).

The pipeline runs OCR before the model call so recognised text can be put in
the prompt. OCR is best-effort: a missing Tesseract binary, an unreadable
image or an engine error all produce an empty OCRResult instead of raising.

Public functions:
- extract_text(data, language, confidence_threshold, preprocess) -> OCRResult
- extract_text_intelligent(data, question_type, force_ocr) -> OCRResult
- analyze_image_for_text(data) -> dict
- clean_ocr_text(raw) -> str
- test_ocr() -> dict
"""

from __future__ import annotations

import io
import logging
import re
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import pytesseract
from PIL import Image, ImageFilter, ImageOps, ImageStat

logger = logging.getLogger(__name__)

_OCR_OPTIONS = {
    'text_extraction': {'language': 'eng', 'confidence_threshold': 0.3, 'preprocess': True},
    'code_analysis': {'language': 'eng', 'confidence_threshold': 0.6, 'preprocess': True},
    'data_analysis': {'language': 'eng', 'confidence_threshold': 0.5, 'preprocess': True},
    'general': {'language': 'eng', 'confidence_threshold': 0.5, 'preprocess': True},
}

_TESSERACT_AVAILABLE: Optional[bool] = None


@dataclass
class OCRResult:
    text: str = ''
    confidence: float = 0.0
    has_text: bool = False
    processing_time: int = 0
    error: Optional[str] = None
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def tesseract_available() -> bool:
    global _TESSERACT_AVAILABLE
    if _TESSERACT_AVAILABLE is None:
        try:
            pytesseract.get_tesseract_version()
            _TESSERACT_AVAILABLE = True
        except (pytesseract.TesseractNotFoundError, OSError):
            logger.warning("Tesseract binary not found - OCR disabled")
            _TESSERACT_AVAILABLE = False
    return _TESSERACT_AVAILABLE


def get_ocr_options(question_type: str) -> Dict[str, Any]:
    return dict(_OCR_OPTIONS.get(question_type, _OCR_OPTIONS['general']))


def clean_ocr_text(raw: str) -> str:
    if not raw:
        return ''
    t = raw.strip()
    t = re.sub(r'\n\s*\n', '\n', t)
    t = re.sub(r'[^\x20-\x7E\n]', '', t)
    t = re.sub(r' {3,}', '  ', t)
    return t.strip()


def preprocess_for_ocr(im: Image.Image) -> Image.Image:
    """Grayscale, auto-contrast and sharpen; small images are upscaled."""
    im = ImageOps.grayscale(im)
    w, h = im.size
    if max(w, h) < 1000:
        scale = min(3, max(1, int(1600 / max(w, h))))
        im = im.resize((w * scale, h * scale), Image.Resampling.LANCZOS)
    im = ImageOps.autocontrast(im)
    return im.filter(ImageFilter.SHARPEN)


def _mean_confidence(data: Dict[str, list]) -> float:
    confs = []
    for txt, conf in zip(data.get('text', []), data.get('conf', [])):
        try:
            c = float(conf)
        except (TypeError, ValueError):
            continue
        if c >= 0 and str(txt).strip():
            confs.append(c)
    return (sum(confs) / len(confs) / 100) if confs else 0.0


def extract_text(data: bytes, language: str = 'eng', confidence_threshold: float = 0.5,
                 preprocess: bool = True) -> OCRResult:
    if not tesseract_available():
        return OCRResult(error='tesseract unavailable')

    start = time.monotonic()
    try:
        with Image.open(io.BytesIO(data)) as im:
            im.load()
            work = preprocess_for_ocr(im) if preprocess else im.convert('RGB')
        # psm 6 = single uniform block, works well for screenshots
        raw = pytesseract.image_to_string(work, lang=language, config='--psm 6')
        words = pytesseract.image_to_data(work, lang=language, config='--psm 6',
                                          output_type=pytesseract.Output.DICT)
    except Exception as e:
        elapsed = int((time.monotonic() - start) * 1000)
        logger.warning("OCR extraction failed: %s", e)
        return OCRResult(processing_time=elapsed, error=str(e))

    elapsed = int((time.monotonic() - start) * 1000)
    confidence = _mean_confidence(words)
    text = clean_ocr_text(raw)
    has_text = bool(text) and confidence > confidence_threshold
    logger.info("OCR completed in %dms - confidence %d%%", elapsed, round(confidence * 100))
    return OCRResult(text=text, confidence=confidence, has_text=has_text, processing_time=elapsed)


def analyze_image_for_text(data: bytes) -> Dict[str, Any]:
    """Cheap contrast/size heuristic for whether an image is worth OCRing."""
    try:
        with Image.open(io.BytesIO(data)) as im:
            w, h = im.size
            stats = ImageStat.Stat(im.convert('RGB'))
        contrast = max(stats.stddev)
        return {
            'likely_contains_text': contrast > 30 and w > 50 and h > 20,
            'image_stats': {'dimensions': {'width': w, 'height': h}, 'contrast_score': contrast},
        }
    except Exception as e:
        logger.warning("Image analysis failed: %s", e)
        return {'likely_contains_text': True, 'image_stats': None}


def extract_text_intelligent(data: bytes, question_type: str = 'general', force_ocr: bool = False) -> OCRResult:
    analysis = analyze_image_for_text(data)
    if not analysis['likely_contains_text'] and not force_ocr:
        logger.info("Image unlikely to contain text, skipping OCR")
        return OCRResult(skipped_reason='Image analysis suggests no text content')
    return extract_text(data, **get_ocr_options(question_type))


def test_ocr() -> Dict[str, Any]:
    if not tesseract_available():
        return {'available': False, 'message': 'Tesseract not installed - OCR functionality disabled'}
    try:
        pytesseract.image_to_string(Image.new('L', (32, 32), color=255))
        return {'available': True, 'message': 'OCR service is working correctly'}
    except Exception as e:
        return {'available': False, 'message': f'OCR test failed: {e}'}

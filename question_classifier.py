"""Question type detection.

Two classifiers live here:

- `detect_question_type` picks the prompt strategy (token budget,
  temperature, OCR and image handling) from plain keyword matches.
- `classify_vision_question` scores a question against the image-analysis
  catalogue to decide whether a Google Vision detection (objects, logos,
  celebrities, text) should run before the language model is called.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional

# Checked in order; first hit wins.
QUESTION_KEYWORDS = [
    ('code_analysis', ['code', 'function', 'bug', 'debug', 'error', 'exception', 'stack trace',
                       'syntax', 'compile', 'programming', 'script', 'variable', 'python',
                       'javascript', 'typescript', 'sql']),
    ('text_extraction', ['what does it say', 'what does this say', 'read this', 'read the',
                         'extract text', 'extract the text', 'transcribe', 'what is written',
                         'ocr', 'copy the text']),
    ('ui_analysis', ['ui', 'ux', 'interface', 'button', 'layout', 'screen', 'website',
                     'webpage', 'menu', 'design', 'app']),
    ('data_analysis', ['chart', 'graph', 'data', 'table', 'statistics', 'trend', 'numbers',
                       'spreadsheet', 'plot', 'percentage']),
    ('explanation', ['explain', 'what is', "what's", 'why', 'how does', 'meaning', 'describe',
                     'tell me about']),
    ('problem_solving', ['solve', 'fix', 'how to', 'how do i', 'how can i', 'help me',
                         'solution', 'calculate', 'answer']),
]

QUESTION_TYPES = [name for name, _ in QUESTION_KEYWORDS] + ['general']


def matches_keywords(text: str, keywords: Iterable[str]) -> bool:
    low = (text or '').lower()
    for kw in keywords:
        if re.search(r'(?<!\w)' + re.escape(kw) + r'(?!\w)', low):
            return True
    return False


def detect_question_type(message: str) -> str:
    if not message:
        return 'general'
    for name, keywords in QUESTION_KEYWORDS:
        if matches_keywords(message, keywords):
            return name
    return 'general'


# -------------------- Vision question catalogue --------------------
VISION_QUESTION_TYPES: Dict[str, Dict[str, Any]] = {
    'PURE_TEXT': {
        'patterns': [r'what does (this|it) say', r'read (the )?text', r'transcribe', r'extract text',
                     r'what is written', r'what text', r'can you read'],
        'services': ['enhanced-ocr'],
        'default_model': 'tesseract',
        'fallback': 'google-vision-text',
        'tier': 'free',
        'estimated_cost': 0.001,
        'description': 'Text extraction and reading',
        'capabilities': ['text-extraction', 'ocr'],
    },
    'COUNT_OBJECTS': {
        'patterns': [r'how many', r'count', r'number of', r'quantity',
                     r'total.*(?:cars|people|objects|items)', r'count.*(?:cars|people|objects|items)'],
        'services': ['google-vision-objects'],
        'default_model': 'google-vision',
        'fallback': 'openai-vision',
        'tier': 'premium',
        'estimated_cost': 0.02,
        'description': 'Object counting and quantification',
        'capabilities': ['object-detection', 'counting'],
    },
    'IDENTIFY_CELEBRITY': {
        'patterns': [r'who is (this|that)', r'identify (person|actor|celebrity)', r'name of (this )?person',
                     r'recognize (person|face)', r'famous person', r'celebrity', r'actor', r'actress'],
        'services': ['google-vision-web'],
        'default_model': 'google-vision',
        'fallback': 'openai-vision',
        'tier': 'pro',
        'estimated_cost': 0.05,
        'description': 'Celebrity and public figure identification',
        'capabilities': ['face-recognition', 'celebrity-id', 'web-search'],
    },
    'DESCRIBE_SCENE': {
        'patterns': [r'what is happening', r'describe (this )?image', r'explain (what|this)', r'what do you see',
                     r'analyze (this )?image', r'tell me about', r"what's in", r'scene'],
        'services': ['openai-vision'],
        'default_model': 'openai-vision',
        'fallback': None,
        'tier': 'premium',
        'estimated_cost': 0.03,
        'description': 'Comprehensive scene analysis and description',
        'capabilities': ['scene-understanding', 'reasoning', 'description'],
    },
    'DETECT_OBJECTS': {
        'patterns': [r'what objects', r'find', r'detect', r'locate', r'identify objects', r'what items',
                     r'objects in', r'spot'],
        'services': ['google-vision-objects'],
        'default_model': 'google-vision',
        'fallback': 'openai-vision',
        'tier': 'premium',
        'estimated_cost': 0.02,
        'description': 'Object detection and identification',
        'capabilities': ['object-detection', 'localization'],
    },
    'DETECT_LOGOS': {
        'patterns': [r'logo', r'brand', r'company', r'trademark', r'what brand', r'identify brand'],
        'services': ['google-vision-logos'],
        'default_model': 'google-vision',
        'fallback': 'openai-vision',
        'tier': 'premium',
        'estimated_cost': 0.025,
        'description': 'Brand and logo identification',
        'capabilities': ['logo-detection', 'brand-recognition'],
    },
    'ANALYZE_DOCUMENT': {
        'patterns': [r'document', r'form', r'invoice', r'receipt', r'paper', r'analyze.*document',
                     r'extract.*information'],
        'services': ['enhanced-ocr', 'google-vision-text'],
        'default_model': 'google-vision',
        'fallback': 'tesseract',
        'tier': 'premium',
        'estimated_cost': 0.015,
        'description': 'Document analysis and information extraction',
        'capabilities': ['document-analysis', 'text-extraction', 'form-processing'],
    },
}
for _type_id, _qt in VISION_QUESTION_TYPES.items():
    _qt['id'] = _type_id
    _qt['compiled'] = [re.compile(p, re.I) for p in _qt['patterns']]

FALLBACK_VISION_TYPE = 'DESCRIBE_SCENE'

_MODEL_COST_MULTIPLIERS = {
    'gpt-4o': 2.0,
    'gpt-4o-mini': 1.0,
    'gpt-3.5-turbo': 0.5,
    'google-vision': 1.2,
    'tesseract': 0.1,
}


MIN_MATCH_SCORE = 1.0


def _score(question: str, qt: Dict[str, Any]) -> float:
    score = 0.0
    for pat in qt['compiled']:
        if pat.search(question):
            # longer patterns are more specific
            score += 1 + min(len(pat.pattern) / 20, 0.5)
    return score


def _public(qt: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in qt.items() if k not in ('compiled', 'patterns')}


def classify_vision_question(question_text: str) -> Dict[str, Any]:
    """Return the best matching vision question type with confidence and reasoning.

    Each matching pattern adds 1 plus a specificity bonus of up to 0.5. Ties
    keep the earlier catalogue entry. No match falls back to scene
    description at confidence 0.3.
    """
    if not question_text or not isinstance(question_text, str):
        raise ValueError('Invalid question text provided')
    q = question_text.lower().strip()

    best_id, best_score = None, 0.0
    for type_id, qt in VISION_QUESTION_TYPES.items():
        s = _score(q, qt)
        if s > best_score:
            best_id, best_score = type_id, s

    if best_id is None or best_score < MIN_MATCH_SCORE:
        out = _public(VISION_QUESTION_TYPES[FALLBACK_VISION_TYPE])
        out['confidence'] = 0.3
        out['reasoning'] = 'No clear pattern match, using scene description fallback'
        return out

    out = _public(VISION_QUESTION_TYPES[best_id])
    out['confidence'] = round(min(best_score / 2, 1.0), 3)
    out['reasoning'] = f"Matched patterns for {out['description'].lower()}"
    return out


def get_vision_question_type(type_id: str) -> Optional[Dict[str, Any]]:
    qt = VISION_QUESTION_TYPES.get(type_id)
    return _public(qt) if qt else None


def get_cost_estimate(question_type: Dict[str, Any], selected_model: str | None = None) -> float:
    cost = float(question_type.get('estimated_cost', 0.0))
    if selected_model:
        cost *= _MODEL_COST_MULTIPLIERS.get(selected_model, 1.0)
    return round(cost, 3)


def find_by_capabilities(required: List[str]) -> List[Dict[str, Any]]:
    return [_public(qt) for qt in VISION_QUESTION_TYPES.values()
            if all(c in qt['capabilities'] for c in required)]

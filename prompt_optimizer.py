"""Build the user prompt sent to the language model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from model_selector import get_temperature, get_token_limit

# Style and per-type instructions. Kept short: every word is billed.
_STYLES = {
    'code_analysis': ('technical', 'Identify the language, point out errors and suggest concrete fixes. '
                                   'Use code blocks for code.'),
    'text_extraction': ('precise', 'Return the text exactly as it appears, preserving line breaks. '
                                   'Do not add commentary unless asked.'),
    'ui_analysis': ('structured', 'Describe the layout and interactive elements, then answer the question.'),
    'data_analysis': ('analytical', 'Read values carefully, name the trend and give the key numbers.'),
    'explanation': ('conversational', 'Explain clearly in a few short paragraphs.'),
    'problem_solving': ('step_by_step', 'Work through the problem step by step and state the final answer.'),
    'general': ('conversational', 'Give a natural, confident answer in a friendly, flowing way.'),
}

MAX_OCR_CHARS = 4000


@dataclass
class OptimizedPrompt:
    prompt: str
    max_tokens: int
    temperature: float
    reasoning: str


def _vision_lines(vision: Dict[str, Any] | None) -> List[str]:
    if not vision or not vision.get('success'):
        return []
    lines = []
    if vision.get('web_entities') or vision.get('best_guess'):
        guesses = list(vision.get('best_guess') or []) + list(vision.get('web_entities') or [])
        lines.append('Web matches: ' + ', '.join(dict.fromkeys(guesses)))
    if vision.get('objects'):
        lines.append('Detected objects: ' + ', '.join(vision['objects']))
    if vision.get('logos'):
        lines.append('Detected logos: ' + ', '.join(vision['logos']))
    if vision.get('faces'):
        lines.append(f"Faces detected: {vision['faces']}")
    return lines


def build_prompt(context: Dict[str, Any], style: str, instructions: str) -> str:
    parts = [context.get('message', '').strip()]
    if context.get('has_ocr') and context.get('ocr_text'):
        conf = int(round(float(context.get('ocr_confidence') or 0) * 100))
        text = context['ocr_text'][:MAX_OCR_CHARS]
        parts.append(f'OCR detected text ({conf}% confidence):\n"""\n{text}\n"""')
    vision = _vision_lines(context.get('vision'))
    if vision:
        parts.append('Image analysis results:\n' + '\n'.join(f'- {line}' for line in vision))
    if context.get('has_image'):
        parts.append('An image is attached. Base your answer on what is visible.')
    elif context.get('image_withheld'):
        parts.append('The user attached an image that is not available to you; rely on the extracted text.')
    parts.append(instructions)
    if style == 'conversational':
        parts.append('Avoid bullet points and special formatting.')
    return '\n\n'.join(p for p in parts if p)


def optimize_prompt(context: Dict[str, Any]) -> OptimizedPrompt:
    """Pick style, token budget and temperature for the request.

    Context keys: message, question_type, tier, has_image, has_ocr, ocr_text,
    ocr_confidence, image_size_kb, vision, image_withheld.
    """
    qtype = context.get('question_type') or 'general'
    tier = context.get('tier') or 'free'
    style, instructions = _STYLES.get(qtype, _STYLES['general'])
    max_tokens = get_token_limit(tier, qtype)
    if context.get('has_ocr') and qtype == 'text_extraction':
        # transcripts can be long
        max_tokens = max(max_tokens, min(len(context.get('ocr_text') or '') // 3, 1500))
    temperature = get_temperature(tier, qtype)

    reasons = [f'{style} style for {qtype}']
    if context.get('has_ocr'):
        reasons.append('OCR text included')
    if _vision_lines(context.get('vision')):
        reasons.append('vision hints included')
    if context.get('has_image'):
        reasons.append(f"image attached ({int(context.get('image_size_kb') or 0)}KB)")
    reasons.append(f'{max_tokens} tokens @ {temperature}')

    return OptimizedPrompt(
        prompt=build_prompt(context, style, instructions),
        max_tokens=max_tokens,
        temperature=temperature,
        reasoning=', '.join(reasons),
    )

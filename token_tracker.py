"""Simple in-memory token usage tracker for the running server.

The LLM client reports usage here per model so `/api/ai/health` and the CLI
can print a single summary.
"""
from threading import Lock

_LOCK = Lock()
_BY_MODEL = {}

def add_usage(model: str, prompt_tokens: int, completion_tokens: int):
    with _LOCK:
        row = _BY_MODEL.setdefault(model or 'unknown', {'prompt': 0, 'completion': 0, 'calls': 0})
        row['prompt'] += int(prompt_tokens or 0)
        row['completion'] += int(completion_tokens or 0)
        row['calls'] += 1

def summary() -> dict:
    with _LOCK:
        models = {m: dict(r, total=r['prompt'] + r['completion']) for m, r in _BY_MODEL.items()}
    p = sum(r['prompt'] for r in models.values())
    c = sum(r['completion'] for r in models.values())
    return {'prompt': p, 'completion': c, 'total': p + c, 'models': models}

def reset():
    with _LOCK:
        _BY_MODEL.clear()

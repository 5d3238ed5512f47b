#!/usr/bin/env python3
"""
main.py
FrameSense command line:
1. serve : run the HTTP API with uvicorn
2. ask   : run one question (optionally about a local image) through the
           pipeline and print the answer
3. health: print the pipeline health check
"""

import sys
import os
import argparse
import json
import logging
from pathlib import Path

from logging_config import configure_logging
from model_selector import TIERS
from token_tracker import summary as token_summary

# configure module-level logger; the __main__ block configures root logging
logger = logging.getLogger(__name__)


def ts_print(*args, level: str = 'info', **kwargs):
    """Forward CLI messages to logging so verbosity is controlled centrally."""
    msg = " ".join(str(a) for a in args)
    lvl = level.lower()
    if lvl == 'debug':
        logger.debug(msg, **kwargs)
    elif lvl == 'warning' or lvl == 'warn':
        logger.warning(msg, **kwargs)
    elif lvl == 'error':
        logger.error(msg, **kwargs)
    else:
        logger.info(msg, **kwargs)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='FrameSense backend: HTTP API and one-off pipeline runs')
    sub = parser.add_subparsers(dest='command')

    sp = sub.add_parser('serve', help='Run the HTTP API')
    sp.add_argument('--host', default=os.getenv('HOST', '0.0.0.0'))
    sp.add_argument('--port', type=int, default=int(os.getenv('PORT', '3001')))
    sp.add_argument('--reload', action='store_true', help='Auto-reload on code changes (development)')

    ap = sub.add_parser('ask', help='Run one question through the pipeline')
    ap.add_argument('message', help='Question text')
    ap.add_argument('--image', type=str, default=None, help='Path to an image file to ask about')
    ap.add_argument('--tier', choices=list(TIERS), default='free', help='Subscription tier to run as (default: free)')
    ap.add_argument('--user-id', type=str, default='cli', help='Usage bucket to count the request against')
    ap.add_argument('--no-fallback', action='store_true', help='Only run the full pipeline, no simple/minimal retries')
    ap.add_argument('--json', action='store_true', help='Print the full response as JSON')

    sub.add_parser('health', help='Print the pipeline health check')
    return parser


def print_token_summary():
    s = token_summary()
    ts_print(f"[tokens] prompt={s['prompt']}, completion={s['completion']}, total={s['total']}")


def run_ask(args) -> int:
    import openai
    from ai_processor import AIProcessor, InvalidImageError
    from llm_client import LLMUnavailable
    from usage_limiter import RateLimitExceeded

    request = {'message': args.message}
    if args.image:
        p = Path(args.image)
        if not p.exists():
            ts_print(f'Image not found: {args.image}', level='error')
            return 1
        request['image_bytes'] = p.read_bytes()

    user = {'id': args.user_id, 'tier': args.tier}
    processor = AIProcessor()
    try:
        if args.no_fallback:
            response = processor.process_request(request, user)
        else:
            response = processor.process_with_fallback(request, user)
    except RateLimitExceeded as e:
        ts_print(f'[limit] {e}', level='error')
        return 2
    except InvalidImageError as e:
        ts_print(f'[image] {e}', level='error')
        return 1
    except LLMUnavailable as e:
        ts_print(f'[model] {e}', level='error')
        return 3
    except openai.OpenAIError as e:
        ts_print(f'[model] OpenAI request failed: {e}', level='error')
        return 3

    if args.json:
        print(json.dumps(response, indent=2, ensure_ascii=False))
    else:
        info = response.get('processing_info', {})
        ts_print(f"[INFO] strategy={info.get('strategy')} type={info.get('question_type', '-')} "
                 f"model={info.get('model_used')} tokens={info.get('tokens_used', 0)}")
        print(response['message'])
    print_token_summary()
    return 0


def run_health() -> int:
    from ai_processor import AIProcessor
    checks = AIProcessor().health_check()
    checks['tokens'] = token_summary()
    print(json.dumps(checks, indent=2))
    return 0 if checks.get('overall') else 1


if __name__ == "__main__":
    configure_logging()
    parser = build_parser()
    args = parser.parse_args()

    if args.command == 'serve':
        import uvicorn
        ts_print(f'[INFO] FrameSense API listening on {args.host}:{args.port}')
        uvicorn.run('app:app', host=args.host, port=args.port, reload=args.reload)
        sys.exit(0)
    elif args.command == 'ask':
        sys.exit(run_ask(args))
    elif args.command == 'health':
        sys.exit(run_health())
    else:
        parser.print_help()
        sys.exit(1)

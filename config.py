"""Runtime configuration for the FrameSense backend.

This module supports a visible, file-based configuration with environment
overrides.

Files (repo root):
- config.json (committed): default settings
- config.local.json (optional, gitignored): developer/local overrides

Precedence (highest first):
1) Env vars (FREE_MODEL, PREMIUM_MODEL, PRO_MODEL, FALLBACK_MODEL, DATA_DIR,
   JWT_SECRET, REDIS_URL, STRIPE_SECRET_KEY, ...)
2) config.local.json
3) config.json
4) Built-in defaults

Keys:
- models.free / models.premium / models.pro: OpenAI chat model per tier
- models.fallback: model used by the simple and minimal strategies
- data_dir: directory holding users.json and usage.json
- jwt_expiry_days: lifetime of login tokens
- bcrypt_rounds: cost factor for password hashes
- redis_url: response cache location (empty disables the cache)
- cache_ttl_seconds: lifetime of cached responses
- stripe_price_tiers: Stripe price id -> tier name
- frontend_url: base URL for checkout success/cancel redirects
- max_upload_bytes: largest accepted image upload
- google_vision_enabled: bool
"""

import os
import json
from pathlib import Path

# Load .env if available (best-effort)
try:
	from dotenv import load_dotenv
	_env_path = Path(__file__).parent / '.env'
	if _env_path.exists():
		load_dotenv(dotenv_path=str(_env_path), override=False)
	else:
		load_dotenv(override=False)
except Exception:
	pass

# Built-in defaults
_DEFAULTS = {
	"data_dir": "data",
	"jwt_expiry_days": 30,
	"bcrypt_rounds": 12,
	"redis_url": "",
	"cache_ttl_seconds": 3600,
	"frontend_url": "https://framesense.vercel.app",
	"max_upload_bytes": 10 * 1024 * 1024,
	"google_vision_enabled": True,
	"stripe_price_tiers": {},
	"models": {
		"free": "gpt-3.5-turbo",
		"premium": "gpt-4o-mini",
		"pro": "gpt-4o",
		"fallback": "gpt-4o-mini",
	},
}

def _load_json_safe(p: Path) -> dict:
	try:
		if p.exists():
			with p.open('r', encoding='utf-8') as f:
				return json.load(f)
	except Exception:
		pass
	return {}

def _as_bool(v: str) -> bool:
	return (v or '').lower() in ('1', 'true', 'yes')

_ROOT = Path(__file__).parent
_CFG = json.loads(json.dumps(_DEFAULTS))
for _name in ('config.json', 'config.local.json'):
	_layer = _load_json_safe(_ROOT / _name)
	# deep merge: only one level deep needed for 'models' and the price map
	_CFG.update({k: v for k, v in _layer.items() if k not in ('models', 'stripe_price_tiers')})
	if 'models' in _layer:
		_CFG['models'].update(_layer['models'])
	if 'stripe_price_tiers' in _layer:
		_CFG['stripe_price_tiers'].update(_layer['stripe_price_tiers'])

# Env overrides (highest precedence)
for _tier in ('free', 'premium', 'pro', 'fallback'):
	_env = os.getenv(f'{_tier.upper()}_MODEL')
	if _env:
		_CFG['models'][_tier] = _env
if os.getenv('DATA_DIR'):
	_CFG['data_dir'] = os.getenv('DATA_DIR')
if os.getenv('REDIS_URL'):
	_CFG['redis_url'] = os.getenv('REDIS_URL')
if os.getenv('FRONTEND_URL'):
	_CFG['frontend_url'] = os.getenv('FRONTEND_URL')
if os.getenv('GOOGLE_VISION_ENABLED'):
	_CFG['google_vision_enabled'] = _as_bool(os.getenv('GOOGLE_VISION_ENABLED'))
for _key in ('jwt_expiry_days', 'bcrypt_rounds', 'cache_ttl_seconds', 'max_upload_bytes'):
	try:
		if os.getenv(_key.upper()):
			_CFG[_key] = int(os.getenv(_key.upper()))
	except ValueError:
		pass
if os.getenv('STRIPE_PRICE_PRO'):
	_CFG['stripe_price_tiers'][os.getenv('STRIPE_PRICE_PRO')] = 'pro'
if os.getenv('STRIPE_PRICE_PREMIUM'):
	_CFG['stripe_price_tiers'][os.getenv('STRIPE_PRICE_PREMIUM')] = 'premium'

# Exported constants
FREE_MODEL = _CFG['models']['free']
PREMIUM_MODEL = _CFG['models']['premium']
PRO_MODEL = _CFG['models']['pro']
FALLBACK_MODEL = _CFG['models']['fallback']
DATA_DIR = Path(_CFG['data_dir'])
JWT_EXPIRY_DAYS = int(_CFG['jwt_expiry_days'])
BCRYPT_ROUNDS = int(_CFG['bcrypt_rounds'])
REDIS_URL = _CFG['redis_url'] or ''
CACHE_TTL_SECONDS = int(_CFG['cache_ttl_seconds'])
FRONTEND_URL = _CFG['frontend_url'].rstrip('/')
MAX_UPLOAD_BYTES = int(_CFG['max_upload_bytes'])
GOOGLE_VISION_ENABLED = bool(_CFG['google_vision_enabled'])
STRIPE_PRICE_TIERS = dict(_CFG['stripe_price_tiers'])

# Secrets are env-only
JWT_SECRET = os.getenv('JWT_SECRET', 'your-super-secret-key-change-this')
ADMIN_SECRET = os.getenv('ADMIN_SECRET', '')
STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET', '')

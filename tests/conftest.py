import io
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    """Keep every test off the real data dir and off external services."""
    import llm_client
    import ocr_service
    import token_tracker
    import usage_limiter
    import vision_service
    from services import user_store

    monkeypatch.setattr(usage_limiter, '_PATH', tmp_path / 'usage.json')
    monkeypatch.setattr(usage_limiter, '_CAP', 0)
    monkeypatch.setattr(user_store, 'USERS_PATH', tmp_path / 'users.json')
    monkeypatch.setattr(llm_client, '_client', None)
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', False)
    monkeypatch.setattr(ocr_service, '_TESSERACT_AVAILABLE', False)
    monkeypatch.setattr(vision_service, '_client', None)
    monkeypatch.setattr(vision_service, '_initialized', True)
    token_tracker.reset()
    yield


def make_png(width=64, height=48, color=(200, 30, 30)) -> bytes:
    from PIL import Image
    buf = io.BytesIO()
    Image.new('RGB', (width, height), color=color).save(buf, format='PNG')
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_png()

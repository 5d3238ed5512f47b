import json
import logging
import sys
from pathlib import Path
import runpy

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import httpx
import openai

import llm_client
from llm_stub import StubClient


def _run_main(monkeypatch, argv):
    exit_codes = {'code': None}

    def fake_exit(code=0):
        exit_codes['code'] = code
        raise SystemExit(code)

    monkeypatch.setattr(sys, 'argv', ['main.py'] + argv)
    monkeypatch.setattr(sys, 'exit', fake_exit)
    try:
        runpy.run_module('main', run_name='__main__')
    except SystemExit:
        pass
    return exit_codes['code']


def test_ask_with_image(monkeypatch, tmp_path, capsys, png_bytes):
    stub = StubClient(reply='A red rectangle.')
    monkeypatch.setattr(llm_client, '_client', stub)
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    img = tmp_path / 'shot.png'
    img.write_bytes(png_bytes)

    code = _run_main(monkeypatch, ['ask', 'What is in this picture?', '--image', str(img),
                                   '--tier', 'premium', '--json'])
    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out['message'] == 'A red rectangle.'
    assert out['processing_info']['image_sent'] is True


def test_ask_missing_image(monkeypatch, tmp_path):
    assert _run_main(monkeypatch, ['ask', 'hi', '--image', str(tmp_path / 'nope.png')]) == 1


def test_no_command_prints_help(monkeypatch, capsys):
    assert _run_main(monkeypatch, []) == 1
    assert 'serve' in capsys.readouterr().out


def test_ask_without_model_client_exits_cleanly(monkeypatch, caplog):
    with caplog.at_level(logging.ERROR):
        assert _run_main(monkeypatch, ['ask', 'hello']) == 3
    assert 'OPENAI_API_KEY not set' in caplog.text


def test_ask_reports_openai_errors(monkeypatch, caplog):
    req = httpx.Request('POST', 'https://api.openai.com/v1/chat/completions')
    stub = StubClient(errors=[openai.APIConnectionError(request=req) for _ in range(3)])
    monkeypatch.setattr(llm_client, '_client', stub)
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    with caplog.at_level(logging.ERROR):
        assert _run_main(monkeypatch, ['ask', 'hello']) == 3
    assert len(stub.calls) == 3
    assert 'OpenAI request failed' in caplog.text


def test_ask_logs_token_summary(monkeypatch, caplog, capsys):
    monkeypatch.setattr(llm_client, '_client', StubClient(reply='hi there'))
    monkeypatch.setattr(llm_client, '_OPENAI_AVAILABLE', True)
    with caplog.at_level(logging.INFO):
        assert _run_main(monkeypatch, ['ask', 'hello']) == 0
    assert 'hi there' in capsys.readouterr().out
    assert '[tokens] prompt=10, completion=5, total=15' in caplog.text


def test_health_includes_token_summary(monkeypatch, capsys):
    assert _run_main(monkeypatch, ['health']) == 0
    out = json.loads(capsys.readouterr().out)
    assert out['tokens'] == {'prompt': 0, 'completion': 0, 'total': 0, 'models': {}}
    assert out['image_optimizer'] is True

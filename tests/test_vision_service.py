import sys
from pathlib import Path
from types import SimpleNamespace as NS

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import vision_service as vs


def _resp(**fields):
    base = {'error': NS(message='')}
    base.update(fields)
    return NS(**base)


class _FakeVisionClient:
    def label_detection(self, image):
        return _resp(label_annotations=[NS(description='Car', score=0.95), NS(description='Wheel', score=0.9),
                                        NS(description='Blur', score=0.3)])

    def logo_detection(self, image):
        return _resp(logo_annotations=[NS(description='Volvo', score=0.8)])

    def face_detection(self, image):
        return _resp(face_annotations=[NS(detection_confidence=0.9), NS(detection_confidence=0.7)])

    def text_detection(self, image):
        return _resp(text_annotations=[NS(description='STOP\n', confidence=0.0), NS(description='STOP')])

    def web_detection(self, image):
        web = NS(web_entities=[NS(description='Jane Actor', score=1.4), NS(description='', score=0.9)],
                 best_guess_labels=[NS(label='jane actor')])
        return _resp(web_detection=web)


class _ErrorClient(_FakeVisionClient):
    def logo_detection(self, image):
        return _resp(error=NS(message='quota exceeded'))


def test_detectors_without_client_fail_softly():
    out = vs.analyze_image_content(b'img', ('objects', 'logos'))
    assert out['success'] is False
    assert out['objects'] == [] and out['logos'] == []


def test_detectors_with_client(monkeypatch):
    monkeypatch.setattr(vs, '_client', _FakeVisionClient())
    objects = vs.detect_objects(b'img')
    assert objects['objects'] == ['car', 'wheel']
    assert vs.detect_logos(b'img')['logos'] == ['Volvo']
    assert vs.detect_faces(b'img')['faces'] == 2
    text = vs.detect_text(b'img')
    assert text['text'] == 'STOP' and text['word_count'] == 1
    web = vs.detect_web_entities(b'img')
    assert web['web_entities'] == ['Jane Actor']
    assert web['best_guess'] == ['jane actor']
    assert web['confidence'] == 1.0


def test_analyze_merges_successful_detectors(monkeypatch):
    monkeypatch.setattr(vs, '_client', _ErrorClient())
    out = vs.analyze_image_content(b'img', vs.features_for_services(['google-vision-objects', 'google-vision-logos']))
    assert out['features'] == ['objects', 'logos']
    assert out['success'] is True
    assert out['objects'] == ['car', 'wheel']
    assert out['logos'] == []


def test_features_for_services():
    assert vs.features_for_services(['google-vision-web']) == ('web', 'faces')
    assert vs.features_for_services(['openai-vision']) == ()
    assert vs.features_for_services(['enhanced-ocr', 'google-vision-text']) == ('text',)

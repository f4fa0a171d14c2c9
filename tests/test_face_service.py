"""Tests for the DeepFace detector adapter, with the model itself stubbed."""
import base64
from io import BytesIO

import numpy as np
import pytest
from PIL import Image

pytest.importorskip("deepface")

from face_organizer import face_service as face_service_module
from face_organizer.face_service import FaceDetectionService


def png_bytes(size=(64, 48), mode="RGBA"):
    buffer = BytesIO()
    Image.new(mode, size, color=(200, 100, 50, 255) if mode == "RGBA" else 128).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def service():
    service = FaceDetectionService()
    service._model_loaded = True
    return service


class TestPreprocess:

    def test_converts_to_rgb(self, service):
        array = service.preprocess_image(png_bytes())
        assert array.shape == (48, 64, 3)

    def test_downscales_large_images(self, service):
        array = service.preprocess_image(png_bytes(size=(2048, 512), mode="L"))
        assert array.shape[1] <= 1024 and array.shape[0] <= 1024

    def test_rejects_garbage(self, service):
        with pytest.raises(ValueError):
            service.preprocess_image(b"not an image")


class TestDetect:

    def test_one_face_per_representation(self, service, monkeypatch):
        def represent(**kwargs):
            return [
                {"embedding": [3.0, 4.0], "facial_area": {"x": 0, "y": 0, "w": 10, "h": 10}, "face_confidence": 0.99},
                {"embedding": [0.0, 2.0], "facial_area": {"x": 5, "y": 5, "w": 0, "h": 0}, "face_confidence": 0.9},
            ]

        monkeypatch.setattr(face_service_module.DeepFace, "represent", represent)
        image = np.full((20, 20, 3), 120, dtype=np.uint8)

        faces = service.detect(image)

        assert len(faces) == 2
        assert faces[0].vector == pytest.approx((0.6, 0.8))
        assert faces[1].vector == pytest.approx((0.0, 1.0))
        assert faces[0].thumbnail.startswith("data:image/jpeg;base64,")
        base64.b64decode(faces[0].thumbnail.split(",", 1)[1])
        assert faces[1].thumbnail is None

    def test_no_face_returns_empty(self, service, monkeypatch):
        def represent(**kwargs):
            raise ValueError("Face could not be detected")

        monkeypatch.setattr(face_service_module.DeepFace, "represent", represent)

        assert service.detect(np.zeros((20, 20, 3), dtype=np.uint8)) == []

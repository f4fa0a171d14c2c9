"""
Face Detection Service using DeepFace

The detector collaborator for image uploads:
- Image preprocessing (decode, RGB, downscale)
- Detection of every face in the image
- One descriptor and one thumbnail crop per face

The clustering core never calls this module; it only receives the vectors.
"""
import base64
import numpy as np
import cv2
from dataclasses import dataclass
from PIL import Image
from io import BytesIO
from typing import List, Optional
import logging

from deepface import DeepFace

from face_organizer.config import (
    FACE_RECOGNITION_MODEL,
    FACE_DETECTOR_BACKEND,
    MAX_IMAGE_SIZE,
    THUMBNAIL_SIZE
)
from face_organizer.records import Vector, as_vector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectedFace:
    """One face found in an image: its descriptor and a JPEG data URL crop."""
    vector: Vector
    thumbnail: Optional[str]


class FaceDetectionService:
    """
    Service class for face detection and descriptor extraction.

    Uses DeepFace with the configured recognition model; the default,
    Facenet, yields 128-dimensional descriptors.
    """

    def __init__(self):
        """Initialize the face detection service."""
        self.model_name = FACE_RECOGNITION_MODEL
        self.detector_backend = FACE_DETECTOR_BACKEND
        self._model_loaded = False

    def _ensure_model_loaded(self):
        """Lazy load the model on first use."""
        if not self._model_loaded:
            logger.info(f"Loading {self.model_name} model...")
            try:
                dummy_img = np.zeros((160, 160, 3), dtype=np.uint8)
                DeepFace.represent(
                    img_path=dummy_img,
                    model_name=self.model_name,
                    detector_backend="skip",
                    enforce_detection=False
                )
                logger.info(f"{self.model_name} model loaded successfully")
            except Exception as e:
                logger.warning(f"Model warmup warning: {e}")
            self._model_loaded = True

    @property
    def model_loaded(self) -> bool:
        return self._model_loaded

    def preprocess_image(self, image_bytes: bytes) -> np.ndarray:
        """
        Decode image bytes into an RGB numpy array, downscaled if too large.

        Raises:
            ValueError: If image cannot be processed
        """
        try:
            image = Image.open(BytesIO(image_bytes))

            # Convert to RGB (handles PNG with alpha, grayscale, etc.)
            if image.mode != "RGB":
                image = image.convert("RGB")

            if image.size[0] > MAX_IMAGE_SIZE[0] or image.size[1] > MAX_IMAGE_SIZE[1]:
                image.thumbnail(MAX_IMAGE_SIZE, Image.Resampling.LANCZOS)
                logger.debug(f"Image resized to {image.size}")

            return np.array(image)

        except Exception as e:
            logger.error(f"Image preprocessing failed: {e}")
            raise ValueError(f"Failed to process image: {str(e)}")

    def crop_thumbnail(self, img_array: np.ndarray, facial_area: dict) -> Optional[str]:
        """Crop a detected face and encode it as a JPEG data URL."""
        x = max(0, int(facial_area.get("x", 0)))
        y = max(0, int(facial_area.get("y", 0)))
        w = int(facial_area.get("w", 0))
        h = int(facial_area.get("h", 0))

        crop = img_array[y:y + h, x:x + w]
        if crop.size == 0:
            return None

        crop = cv2.resize(crop, THUMBNAIL_SIZE, interpolation=cv2.INTER_AREA)
        # OpenCV encodes BGR
        ok, buffer = cv2.imencode(".jpg", cv2.cvtColor(crop, cv2.COLOR_RGB2BGR))
        if not ok:
            return None
        return "data:image/jpeg;base64," + base64.b64encode(buffer.tobytes()).decode("ascii")

    def detect(self, img_array: np.ndarray) -> List[DetectedFace]:
        """
        Detect every face in an image and describe each one.

        Args:
            img_array: Input image as RGB numpy array

        Returns:
            One DetectedFace per face; empty when no face is found
        """
        self._ensure_model_loaded()

        try:
            representations = DeepFace.represent(
                img_path=img_array,
                model_name=self.model_name,
                detector_backend=self.detector_backend,
                enforce_detection=True,
                align=True
            )
        except ValueError as e:
            # DeepFace raises ValueError when enforce_detection finds no face
            logger.info(f"No face detected: {e}")
            return []

        faces = []
        for representation in representations:
            embedding = representation.get("embedding")
            if embedding is None:
                continue

            # Normalize so the Euclidean thresholds apply regardless of model scale
            embedding_array = np.array(embedding, dtype=np.float32)
            norm = np.linalg.norm(embedding_array)
            if norm > 0:
                embedding_array = embedding_array / norm

            faces.append(DetectedFace(
                vector=as_vector(embedding_array),
                thumbnail=self.crop_thumbnail(img_array, representation.get("facial_area", {}))
            ))

        logger.debug(f"Detected {len(faces)} faces")
        return faces

    def detect_from_bytes(self, image_bytes: bytes) -> List[DetectedFace]:
        """
        Complete pipeline: bytes -> faces.

        Raises:
            ValueError: If the bytes are not a readable image
        """
        img_array = self.preprocess_image(image_bytes)
        return self.detect(img_array)


# Singleton instance
face_service = FaceDetectionService()

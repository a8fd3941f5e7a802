"""
Enrollment photo checks before a photo is pushed to face terminals.

Matching happens on the devices; the server only makes sure an upload is a
decodable image with exactly one face, then stores it where devices can
download it.
"""
import logging
import os
from typing import List, Tuple

import cv2
import numpy as np

from .errors import ValidationError
from .models import new_id
from .settings import MEDIA_DIR, MEDIA_URL

logger = logging.getLogger(__name__)

Box = Tuple[int, int, int, int]


class PhotoInspector:
    """
    OpenCV Haar-cascade face detector plus JPEG storage.

    Args:
        media_dir: Directory the accepted photos are written to
        media_url: URL prefix the directory is served under
        min_face_size: Smallest face (pixels) that counts as a detection
    """

    def __init__(self, media_dir: str = MEDIA_DIR, media_url: str = MEDIA_URL, min_face_size: int = 60):
        self.media_dir = media_dir
        self.media_url = media_url.rstrip("/")
        self.min_face_size = min_face_size
        cascade_path = os.path.join(cv2.data.haarcascades, "haarcascade_frontalface_default.xml")
        self.detector = cv2.CascadeClassifier(cascade_path)
        if self.detector.empty():
            raise RuntimeError(f"Could not load face cascade from {cascade_path}")

    @staticmethod
    def decode(contents: bytes) -> np.ndarray:
        if not contents:
            raise ValidationError("Empty image upload")
        nparr = np.frombuffer(contents, np.uint8)
        img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
        if img is None:
            raise ValidationError("Invalid image format")
        return img

    def detect_faces(self, image: np.ndarray) -> List[Box]:
        """Bounding boxes as [x, y, w, h]."""
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        gray = cv2.equalizeHist(gray)
        faces = self.detector.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=(self.min_face_size, self.min_face_size),
        )
        return [tuple(int(v) for v in box) for box in faces]

    def inspect(self, contents: bytes) -> np.ndarray:
        """Decode and require a single face; returns the decoded image."""
        img = self.decode(contents)
        faces = self.detect_faces(img)
        if not faces:
            raise ValidationError("No face detected in image")
        if len(faces) > 1:
            raise ValidationError("Multiple faces detected. Please upload image with single face.")
        return img

    def save(self, image: np.ndarray, prefix: str) -> str:
        os.makedirs(self.media_dir, exist_ok=True)
        filename = f"{prefix}-{new_id()}.jpg"
        ok, buffer = cv2.imencode(".jpg", image)
        if not ok:
            raise ValidationError("Could not encode image")
        with open(os.path.join(self.media_dir, filename), "wb") as f:
            f.write(buffer.tobytes())
        return f"{self.media_url}/{filename}"

    def accept_upload(self, contents: bytes, prefix: str) -> str:
        """Inspect an uploaded photo and store it; returns its public URL."""
        img = self.inspect(contents)
        url = self.save(img, prefix)
        logger.info("Stored enrollment photo %s", url)
        return url

    def discard(self, url: str) -> None:
        """Delete a photo stored by save(), e.g. when it could not be queued."""
        path = os.path.join(self.media_dir, url.rsplit("/", 1)[-1])
        if os.path.exists(path):
            os.remove(path)
            logger.info("Discarded enrollment photo %s", url)

"""AI-generated image classifier (independent of the PRNU pipeline).

Any binary real/fake ONNX classifier exported with a single NCHW float
input can be plugged in through the settings.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from PIL import Image

from prnuauth.errors import ProcessingError
from prnuauth.ml.model_manager import AI_DETECTION_MODEL
from prnuauth.prnu.preprocessing import decode_image

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from prnuauth.config import Settings
    from prnuauth.prnu.preprocessing import ImageInput

logger = logging.getLogger(__name__)

FAKE_LABELS = frozenset({"fake", "0"})
REAL_LABELS = frozenset({"real", "1"})


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class AIDetectionResult:
    """Verdict of the AI-image classifier."""

    is_ai_generated: bool
    confidence: float
    processing_time: float
    details: dict[str, Any] = field(default_factory=dict)


class SessionSource(Protocol):
    """Anything that hands out the detector's InferenceSession."""

    def session(self) -> InferenceSession: ...


class AIImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: ImageInput) -> list[ClassificationResult]:
        """Classify an image.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


def verdict(results: list[ClassificationResult], processing_time: float = 0.0) -> AIDetectionResult:
    """AI-generated when the fake score beats the real score."""
    fake = next((r.confidence for r in results if r.label.lower() in FAKE_LABELS), 0.0)
    real = next((r.confidence for r in results if r.label.lower() in REAL_LABELS), 0.0)
    return AIDetectionResult(
        is_ai_generated=fake > real,
        confidence=max(fake, real),
        processing_time=processing_time,
        details={
            "fake_score": fake,
            "real_score": real,
            "all_results": {r.label: round(r.confidence, 3) for r in results},
        },
    )


def _softmax(logits: NDArray[np.float32]) -> NDArray[np.float64]:
    shifted = logits.astype(np.float64) - logits.max()
    exp = np.exp(shifted)
    return exp / exp.sum()


class OnnxAIImageClassifier:
    """Runs a binary real/fake classifier on the detector session."""

    def __init__(self, model: SessionSource, settings: Settings) -> None:
        self._model = model
        self._labels = list(settings.ai_model_labels)
        self._input_size = settings.ai_model_input_size
        self._max_pixels = settings.max_image_pixels

    @property
    def model_name(self) -> str:
        return AI_DETECTION_MODEL

    def classify(self, image: ImageInput) -> list[ClassificationResult]:
        session = self._model.session()
        tensor = self._prepare(image)
        input_name = session.get_inputs()[0].name
        logits = np.asarray(session.run(None, {input_name: tensor})[0], dtype=np.float32).reshape(-1)
        if logits.size != len(self._labels):
            raise ProcessingError(f"model returned {logits.size} scores for {len(self._labels)} labels")

        probabilities = _softmax(logits)
        results = [
            ClassificationResult(label=label, confidence=float(p)) for label, p in zip(self._labels, probabilities)
        ]
        return sorted(results, key=lambda r: r.confidence, reverse=True)

    def detect(self, image: ImageInput) -> AIDetectionResult:
        start = time.perf_counter()
        results = self.classify(image)
        result = verdict(results, time.perf_counter() - start)
        logger.info("AI detection: ai_generated=%s confidence=%.3f", result.is_ai_generated, result.confidence)
        return result

    def _prepare(self, image: ImageInput) -> NDArray[np.float32]:
        """Center-crop, resize and scale to a 1x3xSxS tensor in [-1, 1]."""
        if isinstance(image, (bytes, bytearray)):
            image = decode_image(image, self._max_pixels)
        if isinstance(image, np.ndarray):
            array = image if image.dtype == np.uint8 else np.clip(image * 255.0, 0, 255).astype(np.uint8)
            image = Image.fromarray(array)
        rgb = image.convert("RGB")

        side = min(rgb.size)
        left = (rgb.width - side) // 2
        top = (rgb.height - side) // 2
        cropped = rgb.crop((left, top, left + side, top + side))
        resized = cropped.resize((self._input_size, self._input_size), resample=Image.Resampling.BICUBIC)

        pixels = np.asarray(resized, dtype=np.float32) / 255.0
        pixels = (pixels - 0.5) / 0.5
        return pixels.transpose(2, 0, 1)[np.newaxis, ...]

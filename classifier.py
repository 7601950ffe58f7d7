# classifier.py
# -----------------------------
# Ingredient photo classifier (pre-trained ultralytics model)
# -----------------------------

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from PIL import Image, UnidentifiedImageError

if TYPE_CHECKING:
    from config import ClassifierConfig

logger = logging.getLogger(__name__)

# COCO / ImageNet labels that are ingredients or dishes.
FOOD_LABELS = frozenset({
    "apple", "banana", "orange", "broccoli", "carrot", "hot dog", "pizza",
    "donut", "cake", "sandwich", "lemon", "pineapple", "strawberry", "fig",
    "pomegranate", "mushroom", "cucumber", "zucchini", "bell pepper",
    "cauliflower", "cabbage", "head cabbage", "artichoke", "corn", "acorn squash",
    "butternut squash", "spaghetti squash", "granny smith", "jackfruit",
    "custard apple", "guacamole", "bagel", "pretzel", "french loaf", "burrito",
    "cheeseburger", "meat loaf", "potpie", "trifle", "ice cream", "chocolate sauce",
    "dough", "egg", "milk", "cheese", "tomato", "potato", "onion", "garlic",
    "lettuce", "rice", "bread", "butter", "chicken", "beef", "pork", "fish",
})

_model = None
_model_path: str | None = None
_model_lock = threading.Lock()


class ClassificationError(Exception):
    """The image couldn't be decoded or the model couldn't run."""


@dataclass
class Prediction:
    label: str
    confidence: float  # 0.0 - 1.0


def _load_yolo(model_path: str):
    try:
        from ultralytics import YOLO
    except ImportError:
        raise ImportError(
            "ultralytics is required for photo classification: pip install ultralytics"
        ) from None
    return YOLO(model_path)


def get_model(model_path: str, loader: Callable[[str], Any] = _load_yolo):
    """Load the model once per process and hand back the cached instance."""
    global _model, _model_path
    with _model_lock:
        if _model is None:
            logger.info("Loading classifier model %s", model_path)
            _model = loader(model_path)
            _model_path = model_path
        elif model_path != _model_path:
            logger.warning(
                "Classifier already loaded from %s; ignoring %s", _model_path, model_path
            )
        return _model


def reset_model() -> None:
    """Forget the cached model (tests only; the app never unloads it)."""
    global _model, _model_path
    with _model_lock:
        _model = None
        _model_path = None


def decode_image(image_data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(image_data))
        return img.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ClassificationError("Could not read the image. Please upload a JPG or PNG photo.") from e


def parse_results(results) -> list[Prediction]:
    """Turn ultralytics results into one prediction per label, best first.

    Detection results carry ``boxes``; classification results carry ``probs``.
    """
    seen: dict[str, float] = {}
    for result in results:
        names = result.names
        boxes = getattr(result, "boxes", None)
        probs = getattr(result, "probs", None)

        pairs: list[tuple[int, float]] = []
        if boxes is not None and len(boxes):
            pairs = list(zip(boxes.cls.tolist(), boxes.conf.tolist()))
        elif probs is not None:
            pairs = list(zip(probs.top5, probs.top5conf.tolist()))

        for class_id, conf in pairs:
            label = str(names[int(class_id)])
            conf = float(conf)
            if conf > seen.get(label, -1.0):
                seen[label] = conf

    predictions = [Prediction(label=label, confidence=conf) for label, conf in seen.items()]
    return sorted(predictions, key=lambda p: p.confidence, reverse=True)


class Classifier:
    """Runs the shared model; inference is serialized behind one lock."""

    def __init__(
        self,
        model_path: str = "yolov8n.pt",
        min_confidence: float = 0.25,
        food_only: bool = False,
        loader: Callable[[str], Any] = _load_yolo,
    ) -> None:
        self._model_path = model_path
        self._min_confidence = min_confidence
        self._food_only = food_only
        self._loader = loader
        self._inference_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ClassifierConfig) -> Classifier:
        return cls(
            model_path=config.model_path,
            min_confidence=config.min_confidence,
            food_only=config.food_only,
        )

    def classify(self, image_data: bytes) -> list[Prediction]:
        img = decode_image(image_data)

        try:
            model = get_model(self._model_path, self._loader)
        except Exception as e:
            logger.error("Classifier model failed to load: %s", e)
            raise ClassificationError(f"Could not load the classifier model: {e}") from e

        with self._inference_lock:
            results = model(img, verbose=False)

        predictions = [
            p for p in parse_results(results) if p.confidence >= self._min_confidence
        ]
        if self._food_only:
            predictions = [p for p in predictions if p.label.lower() in FOOD_LABELS]
        return predictions

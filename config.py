# config.py
# -----------------------------
# Environment-driven settings
# -----------------------------

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

BACKENDS = ("local", "firebase")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class FirebaseConfig:
    credentials_path: str = ""  # empty -> application default credentials
    storage_bucket: str = ""
    web_api_key: str = ""


@dataclass
class RecipeConfig:
    provider: str = "openrouter"
    openrouter_api_key: str = ""
    openrouter_model: str = "meta-llama/llama-3.1-8b-instruct:free"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"


@dataclass
class ClassifierConfig:
    model_path: str = "yolov8n.pt"
    min_confidence: float = 0.25
    food_only: bool = False


@dataclass
class Settings:
    secret_key: str = "supersecretkey"
    backend: str = "local"
    upload_dir: str = "uploads"
    search_debounce_ms: int = 300
    log_level: str = "INFO"
    port: int = 5000
    firebase: FirebaseConfig = field(default_factory=FirebaseConfig)
    recipes: RecipeConfig = field(default_factory=RecipeConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)


def load_settings() -> Settings:
    """Build settings from the environment (and .env, loaded at import).

    Unknown backends are rejected here so a typo fails at startup rather than
    on the first request.
    """
    backend = os.getenv("PANTRY_BACKEND", "local").strip().lower()
    if backend not in BACKENDS:
        raise ValueError(
            f"Unknown PANTRY_BACKEND {backend!r} (choose from {', '.join(BACKENDS)})"
        )

    return Settings(
        secret_key=os.getenv("SECRET_KEY", "supersecretkey"),
        backend=backend,
        upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
        search_debounce_ms=int(os.getenv("SEARCH_DEBOUNCE_MS", "300")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=int(os.getenv("PORT", "5000")),
        firebase=FirebaseConfig(
            credentials_path=os.getenv("FIREBASE_CREDENTIALS", ""),
            storage_bucket=os.getenv("FIREBASE_STORAGE_BUCKET", ""),
            web_api_key=os.getenv("FIREBASE_WEB_API_KEY", ""),
        ),
        recipes=RecipeConfig(
            provider=os.getenv("RECIPE_PROVIDER", "openrouter").strip().lower(),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY", ""),
            openrouter_model=os.getenv(
                "OPENROUTER_MODEL", "meta-llama/llama-3.1-8b-instruct:free"
            ),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        ),
        classifier=ClassifierConfig(
            model_path=os.getenv("CLASSIFIER_MODEL", "yolov8n.pt"),
            min_confidence=float(os.getenv("CLASSIFIER_MIN_CONFIDENCE", "0.25")),
            food_only=_env_bool("CLASSIFIER_FOOD_ONLY"),
        ),
    )

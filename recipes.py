# recipes.py
# -----------------------------
# Recipe suggestions from a hosted language model
# -----------------------------

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from config import RecipeConfig

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = "Suggest a recipe using the following ingredients: {ingredients}."

_EMPHASIS = re.compile(r"\*+")
_HEADING = re.compile(r"^[ \t]*#{1,6}[ \t]*", re.MULTILINE)


class RecipeError(Exception):
    """The provider call failed; the message is the provider's error text."""


def build_prompt(ingredients: list[str]) -> str:
    return PROMPT_TEMPLATE.format(ingredients=", ".join(ingredients))


def normalize_recipes(payload) -> list[str]:
    """Coerce a provider/endpoint payload into a list of recipe strings."""
    if payload is None:
        return []
    if isinstance(payload, str):
        return [payload] if payload.strip() else []
    return [r for r in payload if isinstance(r, str) and r.strip()]


def clean_recipe_text(text: str) -> str:
    """Strip markdown emphasis markers and heading hashes for display."""
    text = _EMPHASIS.sub("", text or "")
    text = _HEADING.sub("", text)
    return text.strip()


class RecipeProvider(ABC):
    """Single-turn prompt in, generated text out."""

    @abstractmethod
    def generate(self, prompt: str) -> str | list[str]:
        ...


class OpenRouterProvider(RecipeProvider):
    """OpenAI-compatible chat completions served by OpenRouter."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "meta-llama/llama-3.1-8b-instruct:free",
        base_url: str = "https://openrouter.ai/api/v1",
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError:
                raise ImportError("openai SDK is required: pip install openai") from None
            self._client = OpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    def generate(self, prompt: str) -> str:
        if not self._api_key:
            raise RecipeError(
                "OpenRouter API key is not set. Check the OPENROUTER_API_KEY environment variable."
            )

        response = self._get_client().chat.completions.create(
            model=self._model,
            messages=[{"role": "user", "content": prompt}],
        )
        if not response or not response.choices:
            raise RecipeError("Invalid response from the OpenRouter API.")
        return response.choices[0].message.content or ""


class GeminiProvider(RecipeProvider):
    """Google Gemini through google-generativeai."""

    def __init__(self, api_key: str = "", model: str = "gemini-2.5-flash") -> None:
        self._api_key = api_key
        self._model = model

    def generate(self, prompt: str) -> str:
        if not self._api_key:
            raise RecipeError(
                "Gemini API key is not set. Check the GEMINI_API_KEY environment variable."
            )

        try:
            import google.generativeai as genai
        except ImportError:
            raise ImportError(
                "google-generativeai SDK is required: pip install google-generativeai"
            ) from None

        genai.configure(api_key=self._api_key)
        model = genai.GenerativeModel(self._model)
        response = model.generate_content(prompt)
        return response.text


def create_provider(config: RecipeConfig) -> RecipeProvider:
    match config.provider:
        case "openrouter":
            return OpenRouterProvider(
                api_key=config.openrouter_api_key,
                model=config.openrouter_model,
                base_url=config.openrouter_base_url,
            )
        case "gemini":
            return GeminiProvider(api_key=config.gemini_api_key, model=config.gemini_model)
        case _:
            raise ValueError(
                f"Unknown recipe provider: {config.provider!r} (choose openrouter or gemini)"
            )


def provider_key_missing(config: RecipeConfig) -> bool:
    if config.provider == "gemini":
        return not config.gemini_api_key
    return not config.openrouter_api_key


class RecipeService:
    """Builds the prompt, calls the provider once, normalizes the reply."""

    def __init__(self, provider: RecipeProvider) -> None:
        self._provider = provider

    def suggest(self, ingredients: list[str]) -> list[str]:
        prompt = build_prompt(ingredients)
        logger.info("Recipe prompt: %s", prompt)
        try:
            payload = self._provider.generate(prompt)
        except RecipeError:
            raise
        except Exception as e:
            logger.error("Error fetching recipes from provider: %s", e)
            raise RecipeError(str(e)) from e

        recipes = normalize_recipes(payload)
        if not recipes:
            raise RecipeError("The recipe provider returned an empty response.")
        return recipes

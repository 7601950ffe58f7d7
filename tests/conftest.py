"""Shared fixtures: an app wired to the local backends and fake providers."""

import io

import pytest
from PIL import Image

from app import create_app
from auth import LocalAuthProvider
from classifier import ClassificationError, Prediction
from config import Settings
from db import MemoryInventoryStore
from recipes import RecipeProvider
from storage import LocalImageStore


class FakeRecipeProvider(RecipeProvider):
    """Records prompts and replies with a canned recipe (or raises ``error``)."""

    def __init__(self, reply="## Pancakes\n\nWhisk the **egg** into the *flour*."):
        self.reply = reply
        self.error = None
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeClassifier:
    def __init__(self, predictions=None, error=None):
        self.predictions = predictions if predictions is not None else [
            Prediction(label="banana", confidence=0.92),
            Prediction(label="apple", confidence=0.61),
        ]
        self.error = error
        self.calls = 0

    def classify(self, image_data):
        self.calls += 1
        if self.error is not None:
            raise ClassificationError(self.error)
        return self.predictions


@pytest.fixture
def settings(tmp_path):
    return Settings(secret_key="test-secret", upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def images(settings):
    return LocalImageStore(settings.upload_dir)


@pytest.fixture
def store(images):
    return MemoryInventoryStore(images=images)


@pytest.fixture
def recipe_provider():
    return FakeRecipeProvider()


@pytest.fixture
def fake_classifier():
    return FakeClassifier()


@pytest.fixture
def app(settings, store, images, recipe_provider, fake_classifier):
    app = create_app(
        settings,
        auth_provider=LocalAuthProvider(),
        store=store,
        images=images,
        classifier=fake_classifier,
        recipe_provider=recipe_provider,
    )
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def signed_in(client):
    """A client signed up (and therefore signed in) as cook@example.com."""
    client.post(
        "/sign-up",
        data={"email": "cook@example.com", "password": "secret", "confirm_password": "secret"},
    )
    return client


@pytest.fixture
def uid(signed_in):
    with signed_in.session_transaction() as sess:
        return sess["user"]["uid"]


@pytest.fixture
def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), "red").save(buf, format="PNG")
    return buf.getvalue()

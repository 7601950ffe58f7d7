"""Tests for inventory search: the filter and what the search box is given."""

from pathlib import Path

import pytest

from app import create_app
from auth import LocalAuthProvider
from config import Settings
from db import InventoryItem, MemoryInventoryStore
from search import filter_inventory
from storage import LocalImageStore

PANTRY = ["Flour", "Milk", "Egg"]


class TestFilterInventory:
    def test_substring_case_insensitive(self):
        assert filter_inventory(PANTRY, "fl") == ["Flour"]
        assert filter_inventory(PANTRY, "MI") == ["Milk"]

    def test_blank_query_keeps_everything(self):
        assert filter_inventory(PANTRY, "") == PANTRY
        assert filter_inventory(PANTRY, "   ") == PANTRY
        assert filter_inventory(PANTRY, None) == PANTRY

    def test_items(self):
        items = [InventoryItem("Flour", 2), InventoryItem("Milk", 1)]
        assert filter_inventory(items, "ilk") == [InventoryItem("Milk", 1)]

    def test_no_match(self):
        assert filter_inventory(PANTRY, "zz") == []


@pytest.fixture
def search_client(tmp_path, recipe_provider, fake_classifier):
    """Signed-in client on an app whose search box waits 150 ms."""
    images = LocalImageStore(tmp_path / "uploads")
    store = MemoryInventoryStore(images=images)
    app = create_app(
        Settings(secret_key="test", upload_dir=str(tmp_path / "uploads"), search_debounce_ms=150),
        auth_provider=LocalAuthProvider(),
        store=store,
        images=images,
        classifier=fake_classifier,
        recipe_provider=recipe_provider,
    )
    client = app.test_client()
    client.post(
        "/sign-up",
        data={"email": "cook@example.com", "password": "secret", "confirm_password": "secret"},
    )
    with client.session_transaction() as sess:
        uid = sess["user"]["uid"]
    for name in PANTRY:
        store.add(uid, name)
    return client


class TestSearchBox:
    def test_debounce_window_from_settings(self, search_client):
        resp = search_client.get("/")
        assert b'id="search"' in resp.data
        assert b'data-debounce-ms="150"' in resp.data

    def test_initial_query_filters_list(self, search_client):
        resp = search_client.get("/?q=fl")

        assert b'data-name="Flour"' in resp.data
        assert b'data-name="Milk"' not in resp.data
        assert b'data-name="Egg"' not in resp.data
        assert b'value="fl"' in resp.data

    def test_blank_query_lists_everything(self, search_client):
        resp = search_client.get("/?q=")
        for name in PANTRY:
            assert f'data-name="{name}"'.encode() in resp.data

    def test_script_debounces_input(self):
        """The search box only filters once typing has paused."""
        script = (Path(__file__).parent.parent / "static" / "pantry.js").read_text(encoding="utf-8")
        assert 'search.addEventListener("input", debounce(applyFilter, wait))' in script
        assert "clearTimeout(timer)" in script

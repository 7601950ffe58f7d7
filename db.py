# db.py
# -----------------------------
# Inventory store: per-user item documents with live snapshots
# -----------------------------

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from config import FirebaseConfig, Settings
    from storage import ImageStore

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[list["InventoryItem"]], None]

_firebase_app = None
_firebase_lock = threading.Lock()


def init_firebase(config: FirebaseConfig):
    """Initialize the default Firebase app once per process and return it."""
    global _firebase_app
    with _firebase_lock:
        if _firebase_app is not None:
            return _firebase_app

        try:
            import firebase_admin
            from firebase_admin import credentials
        except ImportError:
            raise ImportError(
                "firebase-admin is required for the firebase backend: pip install firebase-admin"
            ) from None

        try:
            _firebase_app = firebase_admin.get_app()
        except ValueError:
            if config.credentials_path:
                cred = credentials.Certificate(config.credentials_path)
            else:
                cred = credentials.ApplicationDefault()
            options = {"storageBucket": config.storage_bucket} if config.storage_bucket else None
            _firebase_app = firebase_admin.initialize_app(cred, options)
            logger.info("Firebase app initialized")
        return _firebase_app


def validate_item_name(name: str) -> str:
    """Return the trimmed name, or raise ValueError if it can't be a document key."""
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Item name is required.")
    if "/" in cleaned:
        raise ValueError("Item name cannot contain '/'.")
    if cleaned in (".", ".."):
        raise ValueError("Item name cannot be '.' or '..'.")
    return cleaned


@dataclass
class InventoryItem:
    name: str
    quantity: int = 1
    image_url: str | None = None

    @classmethod
    def from_document(cls, name: str, data: dict | None) -> InventoryItem:
        data = data or {}
        return cls(
            name=name,
            quantity=int(data.get("quantity", 0)),
            image_url=data.get("imageUrl") or None,
        )

    def to_document(self) -> dict:
        return {"quantity": self.quantity, "imageUrl": self.image_url}

    def to_dict(self) -> dict:
        return {"name": self.name, "quantity": self.quantity, "imageUrl": self.image_url}


def _sorted(items: list[InventoryItem]) -> list[InventoryItem]:
    return sorted(items, key=lambda i: i.name.lower())


class Subscription:
    """Handle for a standing inventory query. ``unsubscribe()`` is idempotent."""

    def __init__(self, user_id: str, close: Callable[[], None], tag: str | None = None) -> None:
        self.user_id = user_id
        self.tag = tag  # owning browser session, if any
        self._close = close
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._close()


class InventoryStore(ABC):
    """CRUD and live snapshots over ``users/<uid>/inventory``.

    Items are keyed by name. Quantity never drops below 1: removing the last
    unit deletes the document and, best-effort, its image.
    """

    def __init__(self, images: ImageStore | None = None) -> None:
        self._images = images
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._subscriptions_lock = threading.Lock()

    # ===== Live queries =====
    @abstractmethod
    def _watch(self, user_id: str, callback: SnapshotCallback) -> Callable[[], None]:
        """Start delivering full snapshots to ``callback``; return a closer."""
        ...

    def subscribe(
        self,
        user_id: str,
        callback: SnapshotCallback,
        on_close: Callable[[], None] | None = None,
        tag: str | None = None,
    ) -> Subscription:
        """Deliver the full item list now and after every change.

        ``on_close`` runs once the subscription has been torn down, whether by
        the subscriber or by ``unsubscribe_all`` on sign-out. ``tag`` marks the
        browser session that owns it so sign-out can close only that session's
        queries.
        """
        closer = self._watch(user_id, callback)

        def close() -> None:
            closer()
            with self._subscriptions_lock:
                subs = self._subscriptions.get(user_id, [])
                if subscription in subs:
                    subs.remove(subscription)
                if not subs:
                    self._subscriptions.pop(user_id, None)
            logger.debug("Inventory subscription closed for %s", user_id)
            if on_close is not None:
                on_close()

        subscription = Subscription(user_id, close, tag)
        with self._subscriptions_lock:
            self._subscriptions.setdefault(user_id, []).append(subscription)
        logger.debug("Inventory subscription opened for %s", user_id)
        return subscription

    def unsubscribe_all(self, user_id: str, tag: str | None = None) -> int:
        """Tear down a user's standing queries, only those tagged ``tag`` if given.

        Returns how many were closed.
        """
        with self._subscriptions_lock:
            subs = [
                sub for sub in self._subscriptions.get(user_id, [])
                if tag is None or sub.tag == tag
            ]
        for sub in subs:
            sub.unsubscribe()
        return len(subs)

    def subscription_count(self, user_id: str) -> int:
        with self._subscriptions_lock:
            return len(self._subscriptions.get(user_id, []))

    # ===== Reads =====
    @abstractmethod
    def list_items(self, user_id: str) -> list[InventoryItem]:
        ...

    @abstractmethod
    def get_item(self, user_id: str, name: str) -> InventoryItem | None:
        ...

    # ===== Mutations =====
    @abstractmethod
    def add(self, user_id: str, name: str, image_url: str | None = None) -> None:
        """Increment an existing item (replacing its image only if one is given) or create it."""
        ...

    @abstractmethod
    def remove(self, user_id: str, name: str) -> None:
        """Decrement, deleting the item and its image at quantity 1. Missing items are ignored."""
        ...

    @abstractmethod
    def rename(self, user_id: str, old_name: str, new_name: str) -> None:
        """Move the document to a new key in one atomic write."""
        ...

    def _delete_image(self, image_url: str | None) -> None:
        if image_url and self._images is not None:
            self._images.delete(image_url)

    def _delete_replaced_image(self, replaced: dict | None, moved: dict | None) -> None:
        """Drop the image of a document that a rename overwrote, unless it is shared."""
        old_url = (replaced or {}).get("imageUrl")
        if old_url and old_url != (moved or {}).get("imageUrl"):
            self._delete_image(old_url)


class MemoryInventoryStore(InventoryStore):
    """In-process store for local development and tests."""

    def __init__(self, images: ImageStore | None = None) -> None:
        super().__init__(images)
        self._docs: dict[str, dict[str, dict]] = {}
        self._listeners: dict[str, list[SnapshotCallback]] = {}
        self._lock = threading.RLock()
        self._delivery_locks: dict[str, threading.RLock] = {}

    def _snapshot(self, user_id: str) -> list[InventoryItem]:
        docs = self._docs.get(user_id, {})
        return _sorted([InventoryItem.from_document(name, data) for name, data in docs.items()])

    def _delivery_lock(self, user_id: str) -> threading.RLock:
        with self._lock:
            return self._delivery_locks.setdefault(user_id, threading.RLock())

    def _notify(self, user_id: str) -> None:
        # held from snapshot to last callback, so the newest state is delivered last
        with self._delivery_lock(user_id):
            with self._lock:
                listeners = list(self._listeners.get(user_id, []))
                items = self._snapshot(user_id)
            for listener in listeners:
                listener(copy.deepcopy(items))

    def _watch(self, user_id: str, callback: SnapshotCallback) -> Callable[[], None]:
        with self._delivery_lock(user_id):
            with self._lock:
                self._listeners.setdefault(user_id, []).append(callback)
                items = self._snapshot(user_id)
            callback(items)

        def close() -> None:
            with self._lock:
                listeners = self._listeners.get(user_id, [])
                if callback in listeners:
                    listeners.remove(callback)

        return close

    def list_items(self, user_id: str) -> list[InventoryItem]:
        with self._lock:
            return self._snapshot(user_id)

    def get_item(self, user_id: str, name: str) -> InventoryItem | None:
        with self._lock:
            data = self._docs.get(user_id, {}).get(name)
            return InventoryItem.from_document(name, data) if data is not None else None

    def add(self, user_id: str, name: str, image_url: str | None = None) -> None:
        name = validate_item_name(name)
        with self._lock:
            docs = self._docs.setdefault(user_id, {})
            existing = docs.get(name)
            if existing is not None:
                existing["quantity"] = int(existing.get("quantity", 0)) + 1
                if image_url:
                    existing["imageUrl"] = image_url
            else:
                docs[name] = {"quantity": 1, "imageUrl": image_url}
        self._notify(user_id)

    def remove(self, user_id: str, name: str) -> None:
        image_url = None
        with self._lock:
            docs = self._docs.get(user_id, {})
            existing = docs.get(name)
            if existing is None:
                return
            quantity = int(existing.get("quantity", 0))
            if quantity <= 1:
                del docs[name]
                image_url = existing.get("imageUrl")
            else:
                existing["quantity"] = quantity - 1
        self._delete_image(image_url)
        self._notify(user_id)

    def rename(self, user_id: str, old_name: str, new_name: str) -> None:
        if old_name == new_name:
            return
        new_name = validate_item_name(new_name)
        if old_name == new_name:
            return
        with self._lock:
            docs = self._docs.get(user_id, {})
            if old_name not in docs:
                return
            moved = docs.pop(old_name)
            replaced = docs.get(new_name)
            docs[new_name] = moved
        self._delete_replaced_image(replaced, moved)
        self._notify(user_id)


class FirestoreInventoryStore(InventoryStore):
    """Cloud Firestore store; live queries use ``on_snapshot``."""

    def __init__(self, client=None, images: ImageStore | None = None) -> None:
        super().__init__(images)
        try:
            from firebase_admin import firestore
        except ImportError:
            raise ImportError(
                "firebase-admin is required for the firebase backend: pip install firebase-admin"
            ) from None
        self._firestore = firestore
        self._client = client if client is not None else firestore.client()

    def _collection(self, user_id: str):
        return self._client.collection("users").document(user_id).collection("inventory")

    def _watch(self, user_id: str, callback: SnapshotCallback) -> Callable[[], None]:
        def on_snapshot(docs, changes, read_time) -> None:
            callback(_sorted([InventoryItem.from_document(d.id, d.to_dict()) for d in docs]))

        watch = self._collection(user_id).on_snapshot(on_snapshot)
        return watch.unsubscribe

    def list_items(self, user_id: str) -> list[InventoryItem]:
        docs = self._collection(user_id).stream()
        return _sorted([InventoryItem.from_document(d.id, d.to_dict()) for d in docs])

    def get_item(self, user_id: str, name: str) -> InventoryItem | None:
        snap = self._collection(user_id).document(name).get()
        if not snap.exists:
            return None
        return InventoryItem.from_document(name, snap.to_dict())

    def add(self, user_id: str, name: str, image_url: str | None = None) -> None:
        name = validate_item_name(name)
        ref = self._collection(user_id).document(name)
        if ref.get().exists:
            update: dict = {"quantity": self._firestore.Increment(1)}
            if image_url:
                update["imageUrl"] = image_url
            ref.update(update)
        else:
            ref.set({"quantity": 1, "imageUrl": image_url})

    def remove(self, user_id: str, name: str) -> None:
        ref = self._collection(user_id).document(name)
        snap = ref.get()
        if not snap.exists:
            return
        data = snap.to_dict() or {}
        if int(data.get("quantity", 0)) <= 1:
            ref.delete()
            self._delete_image(data.get("imageUrl"))
        else:
            ref.update({"quantity": self._firestore.Increment(-1)})

    def rename(self, user_id: str, old_name: str, new_name: str) -> None:
        if old_name == new_name:
            return
        new_name = validate_item_name(new_name)
        if old_name == new_name:
            return
        collection = self._collection(user_id)
        old_ref = collection.document(old_name)
        snap = old_ref.get()
        if not snap.exists:
            return
        new_ref = collection.document(new_name)
        target = new_ref.get()
        moved = snap.to_dict()
        # set + delete commit together or not at all
        batch = self._client.batch()
        batch.set(new_ref, moved)
        batch.delete(old_ref)
        batch.commit()
        if target.exists:
            self._delete_replaced_image(target.to_dict(), moved)


def create_inventory_store(settings: Settings, images: ImageStore | None = None) -> InventoryStore:
    match settings.backend:
        case "firebase":
            init_firebase(settings.firebase)
            return FirestoreInventoryStore(images=images)
        case _:
            return MemoryInventoryStore(images=images)

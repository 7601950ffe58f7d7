# auth.py
# -----------------------------
# Session manager and authentication providers
# -----------------------------

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, replace
from functools import wraps
from typing import TYPE_CHECKING, Callable

import requests
from flask import flash, redirect, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

if TYPE_CHECKING:
    from config import Settings

logger = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1/accounts:{action}"

AuthListener = Callable[["UserSession | None", "UserSession | None"], None]


class AuthError(Exception):
    """Sign-in or sign-up failed; the message is meant for the user."""


@dataclass
class UserSession:
    uid: str
    email: str
    session_id: str | None = None  # one per browser sign-in


class AuthProvider(ABC):
    @abstractmethod
    def sign_in(self, email: str, password: str) -> UserSession:
        ...

    @abstractmethod
    def sign_up(self, email: str, password: str) -> UserSession:
        ...


class LocalAuthProvider(AuthProvider):
    """In-memory accounts with werkzeug password hashes."""

    def __init__(self) -> None:
        self._users: dict[str, dict] = {}
        self._lock = threading.Lock()

    def sign_up(self, email: str, password: str) -> UserSession:
        with self._lock:
            if email in self._users:
                raise AuthError("Email already registered.")
            uid = uuid.uuid4().hex
            self._users[email] = {"uid": uid, "password_hash": generate_password_hash(password)}
        return UserSession(uid=uid, email=email)

    def sign_in(self, email: str, password: str) -> UserSession:
        user = self._users.get(email)
        if not user or not check_password_hash(user["password_hash"], password):
            raise AuthError("Invalid credentials.")
        return UserSession(uid=user["uid"], email=email)


class FirebaseAuthProvider(AuthProvider):
    """Firebase Authentication email/password accounts over the REST API."""

    def __init__(self, api_key: str, timeout: float = 10.0) -> None:
        self._api_key = api_key
        self._timeout = timeout

    def _call(self, action: str, email: str, password: str) -> UserSession:
        if not self._api_key:
            raise AuthError(
                "Firebase web API key is not set. Check FIREBASE_WEB_API_KEY."
            )
        try:
            resp = requests.post(
                IDENTITY_TOOLKIT_URL.format(action=action),
                params={"key": self._api_key},
                json={"email": email, "password": password, "returnSecureToken": True},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise AuthError(str(e)) from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not resp.ok:
            message = (data.get("error") or {}).get("message") or f"HTTP {resp.status_code}"
            raise AuthError(message)

        return UserSession(
            uid=data["localId"],
            email=data.get("email", email),
        )

    def sign_in(self, email: str, password: str) -> UserSession:
        return self._call("signInWithPassword", email, password)

    def sign_up(self, email: str, password: str) -> UserSession:
        return self._call("signUp", email, password)


SESSION_KEY = "user"


def session_user() -> UserSession | None:
    """The identity stored in the Flask session, or None.

    A payload that no longer fits ``UserSession`` (an old cookie after an
    upgrade, say) clears the session instead of failing every request.
    """
    data = session.get(SESSION_KEY)
    if not data:
        return None
    try:
        return UserSession(**data)
    except TypeError:
        logger.warning("Discarding unreadable session payload")
        session.clear()
        return None


class SessionManager:
    """Holds the signed-in identity in the Flask session and announces changes."""

    def __init__(self, provider: AuthProvider) -> None:
        self._provider = provider
        self._listeners: list[AuthListener] = []
        self._listeners_lock = threading.Lock()

    def on_auth_state_changed(self, listener: AuthListener) -> Callable[[], None]:
        """Register a listener for identity changes; returns an unsubscribe function.

        Listeners are called as ``listener(user, previous)``; ``user`` is None
        after sign-out.
        """
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, user: UserSession | None, previous: UserSession | None) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(user, previous)
            except Exception:
                logger.exception("Auth state listener failed")

    def current_user(self) -> UserSession | None:
        return session_user()

    def _establish(self, user: UserSession) -> UserSession:
        previous = self.current_user()
        user = replace(user, session_id=uuid.uuid4().hex)
        session.clear()
        session[SESSION_KEY] = asdict(user)
        self._emit(user, previous)
        return user

    def sign_in(self, email: str, password: str) -> UserSession:
        email = (email or "").strip().lower()
        if not email or not password:
            raise AuthError("Email and password are required.")
        return self._establish(self._provider.sign_in(email, password))

    def sign_up(self, email: str, password: str, confirm_password: str) -> UserSession:
        email = (email or "").strip().lower()
        if not email or not password:
            raise AuthError("Email and password are required.")
        if password != confirm_password:
            raise AuthError("Passwords do not match")
        return self._establish(self._provider.sign_up(email, password))

    def sign_out(self) -> UserSession | None:
        """Clear the session; listeners see ``None``. Returns who was signed out."""
        previous = self.current_user()
        session.clear()
        self._emit(None, previous)
        return previous


def login_required(f):
    """Decorator to require login on protected routes."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if session_user() is None:
            flash("Please sign in to continue.", "error")
            return redirect(url_for("pantry.sign_in"))
        return f(*args, **kwargs)
    return decorated_function


def create_auth_provider(settings: Settings) -> AuthProvider:
    match settings.backend:
        case "firebase":
            return FirebaseAuthProvider(settings.firebase.web_api_key)
        case _:
            return LocalAuthProvider()

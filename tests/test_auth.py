"""Tests for the session manager and auth providers."""

from unittest.mock import MagicMock, patch

import pytest
import requests
from flask import Flask, session

from auth import (
    AuthError,
    FirebaseAuthProvider,
    LocalAuthProvider,
    SessionManager,
    UserSession,
)


@pytest.fixture
def flask_app():
    app = Flask(__name__)
    app.secret_key = "test"
    return app


@pytest.fixture
def sessions():
    return SessionManager(LocalAuthProvider())


class TestLocalAuthProvider:
    def test_sign_up_then_sign_in(self):
        provider = LocalAuthProvider()
        created = provider.sign_up("cook@example.com", "secret")
        signed_in = provider.sign_in("cook@example.com", "secret")
        assert signed_in.uid == created.uid

    def test_wrong_password(self):
        provider = LocalAuthProvider()
        provider.sign_up("cook@example.com", "secret")
        with pytest.raises(AuthError, match="Invalid credentials"):
            provider.sign_in("cook@example.com", "nope")

    def test_duplicate_email(self):
        provider = LocalAuthProvider()
        provider.sign_up("cook@example.com", "secret")
        with pytest.raises(AuthError, match="already registered"):
            provider.sign_up("cook@example.com", "other")


def _response(ok=True, status_code=200, payload=None):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    return resp


class TestFirebaseAuthProvider:
    def test_sign_in_posts_to_identity_toolkit(self):
        payload = {"localId": "abc123", "email": "cook@example.com", "idToken": "tok"}
        with patch("auth.requests.post", return_value=_response(payload=payload)) as post:
            user = FirebaseAuthProvider("web-key").sign_in("cook@example.com", "secret")

        assert user == UserSession(uid="abc123", email="cook@example.com")
        url = post.call_args.args[0]
        assert url.endswith("accounts:signInWithPassword")
        assert post.call_args.kwargs["params"] == {"key": "web-key"}
        assert post.call_args.kwargs["json"]["returnSecureToken"] is True

    def test_sign_up_action(self):
        payload = {"localId": "abc123"}
        with patch("auth.requests.post", return_value=_response(payload=payload)) as post:
            FirebaseAuthProvider("web-key").sign_up("cook@example.com", "secret")
        assert post.call_args.args[0].endswith("accounts:signUp")

    def test_error_message_surfaced(self):
        resp = _response(ok=False, status_code=400, payload={"error": {"message": "EMAIL_EXISTS"}})
        with patch("auth.requests.post", return_value=resp):
            with pytest.raises(AuthError, match="EMAIL_EXISTS"):
                FirebaseAuthProvider("web-key").sign_up("cook@example.com", "secret")

    def test_network_error(self):
        with patch("auth.requests.post", side_effect=requests.ConnectionError("offline")):
            with pytest.raises(AuthError, match="offline"):
                FirebaseAuthProvider("web-key").sign_in("cook@example.com", "secret")

    def test_missing_api_key(self):
        with patch("auth.requests.post") as post:
            with pytest.raises(AuthError, match="FIREBASE_WEB_API_KEY"):
                FirebaseAuthProvider("").sign_in("cook@example.com", "secret")
        post.assert_not_called()


class TestSessionManager:
    def test_sign_up_establishes_session(self, flask_app, sessions):
        with flask_app.test_request_context():
            user = sessions.sign_up(" Cook@Example.com ", "secret", "secret")
            assert sessions.current_user() == user
            assert user.email == "cook@example.com"

    def test_password_mismatch(self, flask_app, sessions):
        with flask_app.test_request_context():
            with pytest.raises(AuthError, match="Passwords do not match"):
                sessions.sign_up("cook@example.com", "secret", "secrets")
            assert sessions.current_user() is None

    def test_missing_fields(self, flask_app, sessions):
        with flask_app.test_request_context():
            with pytest.raises(AuthError, match="required"):
                sessions.sign_in("", "secret")

    def test_listeners_see_sign_in_and_sign_out(self, flask_app, sessions):
        events = []
        sessions.on_auth_state_changed(lambda user, previous: events.append((user, previous)))

        with flask_app.test_request_context():
            user = sessions.sign_up("cook@example.com", "secret", "secret")
            signed_out = sessions.sign_out()

        assert signed_out == user
        assert events == [(user, None), (None, user)]

    def test_unsubscribed_listener_not_called(self, flask_app, sessions):
        events = []
        unsubscribe = sessions.on_auth_state_changed(lambda *args: events.append(args))
        unsubscribe()

        with flask_app.test_request_context():
            sessions.sign_up("cook@example.com", "secret", "secret")

        assert events == []

    def test_failing_listener_does_not_block_others(self, flask_app, sessions):
        events = []

        def broken(user, previous):
            raise RuntimeError("boom")

        sessions.on_auth_state_changed(broken)
        sessions.on_auth_state_changed(lambda user, previous: events.append(user))

        with flask_app.test_request_context():
            sessions.sign_up("cook@example.com", "secret", "secret")

        assert len(events) == 1

    def test_each_sign_in_gets_its_own_session_id(self, flask_app, sessions):
        with flask_app.test_request_context():
            first = sessions.sign_up("cook@example.com", "secret", "secret")
        with flask_app.test_request_context():
            second = sessions.sign_in("cook@example.com", "secret")

        assert first.uid == second.uid
        assert first.session_id and second.session_id
        assert first.session_id != second.session_id

    def test_unreadable_session_payload_discarded(self, flask_app, sessions):
        with flask_app.test_request_context():
            session["user"] = {"uid": "u1", "email": "cook@example.com", "legacy": "x"}
            assert sessions.current_user() is None
            assert "user" not in session

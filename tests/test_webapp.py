import base64
import hashlib
import importlib
import json
from typing import Iterator

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient
from itsdangerous import TimestampSigner

from kidgate.security import LoginThrottle, hash_pin
from kidgate.tokens import SESSION_COOKIE_NAME, issue_session, now_ms

SECRET = "webapp-test-secret"
PARENT_SECRET = "parent-test-secret"
DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture
def webapp_module(tmp_path, monkeypatch):
    monkeypatch.setenv("KIDGATE_SQLITE", str(tmp_path / "kidgate.db"))
    monkeypatch.setenv("KID_SESSION_SECRET", SECRET)
    monkeypatch.setenv("PARENT_SESSION_SECRET", PARENT_SECRET)
    monkeypatch.delenv("KIDGATE_AUDIT_MODE", raising=False)
    monkeypatch.delenv("KID_SESSION_DEBUG", raising=False)
    import kidgate.webapp.config as config
    import kidgate.webapp.persistence as persistence
    import kidgate.webapp.application as application

    importlib.reload(config)
    importlib.reload(persistence)
    return importlib.reload(application)


@pytest.fixture
def client(webapp_module) -> Iterator[TestClient]:
    with TestClient(webapp_module.app, follow_redirects=False) as test_client:
        yield test_client


def add_child(child_id: str, name: str, pin_hash: str, login_key=None, parent_user_id="parent-1"):
    from kidgate.webapp import persistence

    return persistence.save_child(
        persistence.ChildProfile(
            id=child_id,
            name=name,
            pin_hash=pin_hash,
            login_key=login_key,
            parent_user_id=parent_user_id,
            star_balance=7,
        )
    )


def kid_token(child_id: str, *, at=None) -> str:
    return issue_session({"id": child_id, "name": child_id.title()}, secret=SECRET, at=at).token


def set_cookie_headers(response) -> list:
    return response.headers.get_list("set-cookie")


def cookie_cleared(response) -> bool:
    return any(
        header.startswith(f"{SESSION_COOKIE_NAME}=") and "Max-Age=0" in header for header in set_cookie_headers(response)
    )


def parent_cookie(data: dict) -> str:
    signer = TimestampSigner(PARENT_SECRET)
    return signer.sign(base64.b64encode(json.dumps(data).encode("utf-8"))).decode("utf-8")


# ---------------------------------------------------------------------------
# Route gate
# ---------------------------------------------------------------------------
def test_kid_route_without_cookie_redirects_to_login(client: TestClient) -> None:
    response = client.get("/kids/abc123/dashboard")

    assert response.status_code == 302
    assert response.headers["location"] == "/kids/login"
    assert not cookie_cleared(response)


def test_kid_route_with_matching_cookie_proceeds(client: TestClient) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123"))

    response = client.get("/kids/abc123/dashboard")

    assert response.status_code == 200
    assert "Abc123" in response.text
    assert not cookie_cleared(response)


def test_kid_sub_route_with_matching_cookie_proceeds(client: TestClient) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123"))

    response = client.get("/kids/abc123/money/history")

    assert response.status_code == 200


def test_cookie_for_other_child_redirects_to_own_dashboard(client: TestClient) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, kid_token("xyz789"))

    response = client.get("/kids/abc123/dashboard")

    assert response.status_code == 302
    assert response.headers["location"] == "/kids/xyz789/dashboard"
    assert not cookie_cleared(response)


def test_expired_cookie_redirects_and_clears(client: TestClient) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123", at=now_ms() - 2 * DAY_MS))

    response = client.get("/kids/abc123/dashboard")

    assert response.status_code == 302
    assert response.headers["location"] == "/kids/login"
    assert cookie_cleared(response)


def test_tampered_cookie_redirects_and_clears(client: TestClient) -> None:
    token = kid_token("abc123")
    client.cookies.set(SESSION_COOKIE_NAME, token[:-1] + ("0" if token[-1] != "0" else "1"))

    response = client.get("/kids/abc123/chores")

    assert response.status_code == 302
    assert response.headers["location"] == "/kids/login"
    assert cookie_cleared(response)


def test_cookie_signed_with_other_secret_is_rejected(client: TestClient) -> None:
    forged = issue_session({"id": "abc123"}, secret="not-the-secret").token
    client.cookies.set(SESSION_COOKIE_NAME, forged)

    response = client.get("/kids/abc123/wishlist")

    assert response.status_code == 302
    assert cookie_cleared(response)


def test_non_kid_route_skips_kid_gate(client: TestClient) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, "garbage-cookie")

    response = client.get("/dashboard")

    # Falls through to the parent session check, not the kid gate.
    assert response.status_code == 302
    assert response.headers["location"] == "/login"
    assert not cookie_cleared(response)


def test_parent_session_reaches_dashboard(client: TestClient) -> None:
    client.cookies.set("session", parent_cookie({"parent_user_id": "parent-1"}))
    client.cookies.set(SESSION_COOKIE_NAME, "garbage-cookie")

    response = client.get("/dashboard")

    assert response.status_code == 200
    assert "Household dashboard" in response.text


def test_dashboard_lists_only_own_children(client: TestClient) -> None:
    add_child("abc123", "Ava", hash_pin("1234", iterations=1_000))
    add_child("xyz789", "Ben", hash_pin("1234", iterations=1_000))
    add_child("zzz000", "Other", hash_pin("1234", iterations=1_000), parent_user_id="parent-2")
    client.cookies.set("session", parent_cookie({"parent_user_id": "parent-1"}))

    response = client.get("/dashboard")

    assert response.status_code == 200
    assert "/kids/abc123/dashboard" in response.text
    assert "/kids/xyz789/dashboard" in response.text
    assert "zzz000" not in response.text
    assert response.text.index("Ava") < response.text.index("Ben")


def test_unknown_kid_section_is_not_gated(client: TestClient) -> None:
    response = client.get("/kids/abc123/settings")
    assert response.status_code == 404


def test_gate_errors_become_redirects(client: TestClient, monkeypatch) -> None:
    import kidgate.webapp.middleware as middleware

    def explode(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(middleware, "verify", explode)
    client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123"))

    response = client.get("/kids/abc123/goals")

    assert response.status_code == 302
    assert response.headers["location"] == "/kids/login"
    assert cookie_cleared(response)


def test_gate_decisions_are_logged(webapp_module, client: TestClient) -> None:
    client.get("/kids/abc123/shop")
    entries = webapp_module.app.state.logger.events("kid_gate.redirect")
    assert entries[-1]["reason"] == "missing"
    assert entries[-1]["path"] == "/kids/abc123/shop"


def test_audit_mode_bypasses_all_auth(webapp_module) -> None:
    from kidgate.webapp.config import load_settings

    settings = load_settings(
        {"KID_SESSION_SECRET": SECRET, "KIDGATE_AUDIT_MODE": "true", "KIDGATE_SQLITE": "unused.db"}
    )
    audit_app = webapp_module.create_app(settings)
    with TestClient(audit_app, follow_redirects=False) as audit_client:
        assert audit_client.get("/kids/abc123/dashboard").status_code == 200
        assert audit_client.get("/dashboard").status_code == 200
    assert audit_app.state.logger.events("kid_gate.bypass")
    assert any("AUDIT" in entry["message"] for entry in audit_app.state.logger.events("startup.warning"))


def test_debug_diagnostics_follow_settings(webapp_module) -> None:
    from kidgate.webapp.config import load_settings

    settings = load_settings({"KID_SESSION_SECRET": SECRET, "KID_SESSION_DEBUG": "1"})
    debug_app = webapp_module.create_app(settings)
    with TestClient(debug_app, follow_redirects=False) as debug_client:
        debug_client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123"))
        debug_client.get("/kids/abc123/dashboard")
    assert debug_app.state.diagnostics.events("kid_session.verify")[-1]["outcome"] == "valid"
    assert webapp_module.app.state.diagnostics.enabled is False


# ---------------------------------------------------------------------------
# Kid sign-in API
# ---------------------------------------------------------------------------
def test_login_sets_cookie_that_gate_accepts(client: TestClient) -> None:
    add_child("abc123", "Ava", hash_pin("1234", iterations=1_000))

    response = client.post("/api/kids/auth/login", json={"childId": "abc123", "pin": "1234"})

    assert response.status_code == 200
    body = response.json()["data"]
    assert body["session"]["childId"] == "abc123"
    assert body["message"] == "Welcome back, Ava!"
    header = next(h for h in set_cookie_headers(response) if h.startswith(f"{SESSION_COOKIE_NAME}="))
    assert "HttpOnly" in header
    assert "Max-Age=86400" in header
    assert "Path=/" in header

    assert client.get("/kids/abc123/dashboard").status_code == 200
    status = client.get("/api/kids/auth/session").json()["data"]
    assert status["session"]["name"] == "Ava"
    assert 0 < status["remainingSeconds"] <= 86400


def test_login_validates_input(client: TestClient) -> None:
    assert client.post("/api/kids/auth/login", json={"pin": "1234"}).status_code == 400
    assert client.post("/api/kids/auth/login", json={"childId": "abc123", "pin": "12"}).status_code == 400
    assert client.post("/api/kids/auth/login", content=b"not json").status_code == 400


def test_login_unknown_child(client: TestClient) -> None:
    response = client.post("/api/kids/auth/login", json={"childId": "ghost", "pin": "1234"})
    assert response.status_code == 404
    assert response.json()["error"] == "Child profile not found"


def test_wrong_pin_counts_down_then_locks(client: TestClient) -> None:
    add_child("abc123", "Ava", hash_pin("1234", iterations=1_000))
    payload = {"childId": "abc123", "pin": "9999"}

    first = client.post("/api/kids/auth/login", json=payload)
    assert first.status_code == 401
    assert first.json() == {"error": "Incorrect PIN", "attemptsRemaining": 4}

    for _ in range(3):
        client.post("/api/kids/auth/login", json=payload)
    locked = client.post("/api/kids/auth/login", json=payload)
    assert locked.status_code == 429
    assert locked.json()["locked"] is True
    assert locked.json()["remainingSeconds"] == 60

    # Even the right PIN is refused while locked.
    assert client.post("/api/kids/auth/login", json={"childId": "abc123", "pin": "1234"}).status_code == 429


def test_network_wide_lockout(webapp_module, client: TestClient) -> None:
    webapp_module.app.state.throttle = LoginThrottle(global_max_attempts=2)
    headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    client.post("/api/kids/auth/login", json={"childId": "a", "pin": "1111"}, headers=headers)
    second = client.post("/api/kids/auth/login", json={"childId": "b", "pin": "1111"}, headers=headers)
    assert second.status_code == 404
    blocked = client.post("/api/kids/auth/login", json={"childId": "c", "pin": "1111"}, headers=headers)
    assert blocked.status_code == 429
    assert "network" in blocked.json()["error"]


def test_legacy_pin_hash_is_upgraded_on_login(client: TestClient) -> None:
    from kidgate.webapp import persistence

    add_child("abc123", "Ava", hashlib.sha256(b"1234").hexdigest())

    response = client.post("/api/kids/auth/login", json={"childId": "abc123", "pin": "1234"})

    assert response.status_code == 200
    assert persistence.get_child("abc123").pin_hash.startswith("pbkdf2:sha256:")


def test_login_with_key(client: TestClient) -> None:
    add_child("abc123", "Ava", hash_pin("1234", iterations=1_000), login_key="ABCD-EFGH-JKMN")

    response = client.post("/api/kids/auth/login-key", json={"loginKey": "abcd-efgh-jkmn", "pin": "1234"})

    assert response.status_code == 200
    assert response.json()["data"]["session"]["childId"] == "abc123"
    assert client.get("/kids/abc123/invoices").status_code == 200


def test_login_key_failures_look_identical(client: TestClient) -> None:
    add_child("abc123", "Ava", hash_pin("1234", iterations=1_000), login_key="ABCD-EFGH-JKMN")

    unknown = client.post("/api/kids/auth/login-key", json={"loginKey": "ZZZZ-ZZZZ-ZZZZ", "pin": "1234"})
    wrong = client.post("/api/kids/auth/login-key", json={"loginKey": "ABCD-EFGH-JKMN", "pin": "0000"})
    malformed = client.post("/api/kids/auth/login-key", json={"loginKey": "ABCD", "pin": "0000"})

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json()["error"] == wrong.json()["error"] == "Invalid login key or PIN"
    assert malformed.status_code == 400


def test_plain_form_login_redirects_to_dashboard(client: TestClient) -> None:
    add_child("abc123", "Ava", hash_pin("1234", iterations=1_000), login_key="ABCD-EFGH-JKMN")

    response = client.post("/api/kids/auth/login-key", data={"loginKey": "abcd-efgh-jkmn", "pin": "1234"})

    assert response.status_code == 302
    assert response.headers["location"] == "/kids/abc123/dashboard"
    assert any(header.startswith(f"{SESSION_COOKIE_NAME}=") for header in set_cookie_headers(response))
    assert client.get("/kids/abc123/dashboard").status_code == 200


def test_plain_form_login_failure_shows_form_again(client: TestClient) -> None:
    add_child("abc123", "Ava", hash_pin("1234", iterations=1_000), login_key="ABCD-EFGH-JKMN")

    response = client.post("/api/kids/auth/login-key", data={"loginKey": "ABCD-EFGH-JKMN", "pin": "0000"})

    assert response.status_code == 401
    assert "text/html" in response.headers["content-type"]
    assert "Invalid login key or PIN" in response.text
    assert "name='loginKey'" in response.text
    assert not set_cookie_headers(response)


def test_logout_clears_cookie(client: TestClient) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123"))

    response = client.post("/api/kids/auth/logout")

    assert response.status_code == 200
    assert cookie_cleared(response)


def test_session_status_requires_cookie(client: TestClient) -> None:
    assert client.get("/api/kids/auth/session").status_code == 401


def test_refresh_waits_for_half_life(client: TestClient) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123"))
    fresh = client.post("/api/kids/auth/refresh")
    assert fresh.status_code == 200
    assert fresh.json()["data"]["refreshed"] is False

    client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123", at=now_ms() - 20 * 60 * 60 * 1000))
    aged = client.post("/api/kids/auth/refresh")
    assert aged.status_code == 200
    assert aged.json()["data"]["refreshed"] is True
    assert any(h.startswith(f"{SESSION_COOKIE_NAME}=") and "Max-Age=86400" in h for h in set_cookie_headers(aged))


def test_kid_login_page_redirects_signed_in_kid(client: TestClient) -> None:
    assert client.get("/kids/login").status_code == 200
    client.cookies.set(SESSION_COOKIE_NAME, kid_token("abc123"))
    response = client.get("/kids/login")
    assert response.status_code == 302
    assert response.headers["location"] == "/kids/abc123/dashboard"


def test_healthz_reports_configuration(client: TestClient) -> None:
    body = client.get("/healthz").json()
    assert body == {"status": "ok", "audit_mode": False, "fallback_secret": False}

"""
Security tests for the theme endpoints
Tests rate limiting, anti-forgery tokens, session cookies and security headers
"""

import pytest
from fastapi.testclient import TestClient

from theme_guard.core.exceptions import SecurityError
from theme_guard.main import TOKEN_HEADER, create_app

POSTS = [
    {
        "id": i,
        "title": f"Post {i}",
        "excerpt": "Python tips" if i % 2 == 0 else "Cycling notes",
        "url": f"/posts/{i}",
        "category": "tech" if i % 2 == 0 else "cycling",
    }
    for i in range(1, 13)
]


@pytest.fixture
def client(settings, store, clock, tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "app_logs"))
    app = create_app(settings=settings, store=store, clock=clock, posts=POSTS)
    with TestClient(app) as client:
        yield client


def get_token(client):
    response = client.get("/session/token")
    assert response.status_code == 200
    return response.json()["token"]


class TestHealthAndHeaders:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store"]["status"] == "in_memory"
        assert data["audit_log_degraded"] is False

    def test_security_headers(self, client):
        response = client.get("/health")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "X-Process-Time" in response.headers

    def test_no_session_without_use(self, client, store):
        response = client.get("/health")

        assert "set-cookie" not in response.headers
        assert len(store) == 0


class TestRateLimiting:

    def test_search_limit(self, client):
        for _ in range(30):
            assert client.get("/search", params={"q": "python"}).status_code == 200

        response = client.get("/search", params={"q": "python"})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "300"
        assert response.headers["X-RateLimit-Limit"] == "30"
        assert "Too many search requests" in response.text

    def test_block_logged(self, client):
        for _ in range(31):
            client.get("/search", params={"q": "python"})

        entries = client.app.state.audit_log.read_entries({"category": "rate_limit_exceeded"})
        assert len(entries) == 1
        assert entries[0]["context"]["action"] == "search"

    def test_unblocked_after_block(self, client, clock):
        for _ in range(31):
            client.get("/search", params={"q": "python"})

        clock.advance(300)

        assert client.get("/search", params={"q": "python"}).status_code == 200

    def test_callers_limited_separately(self, client):
        for _ in range(31):
            client.get("/search", params={"q": "python"})

        response = client.get("/search", params={"q": "python"}, headers={"X-Forwarded-For": "93.184.216.34"})

        assert response.status_code == 200

    def test_pagination_limit(self, client):
        for _ in range(15):
            assert client.get("/posts").status_code == 200

        assert client.get("/posts").status_code == 429

    def test_fails_open_when_store_down(self, client, store):
        store.available = False

        assert client.get("/search", params={"q": "python"}).status_code == 200
        assert client.app.state.audit_log.read_entries({"category": "store_unavailable"})


class TestContentEndpoints:

    def test_search_results(self, client):
        response = client.get("/search", params={"q": "Python"})

        results = response.json()["results"]
        assert len(results) == 5
        assert all(post["category"] == "tech" for post in results)

    def test_search_too_short(self, client):
        assert client.get("/search", params={"q": "py"}).status_code == 400

    def test_pagination(self, client):
        first = client.get("/posts").json()
        second = client.get("/posts", params={"page": 2}).json()

        assert first["posts_count"] == 10
        assert first["max_pages"] == 2
        assert second["posts_count"] == 2
        assert client.get("/posts", params={"page": 3}).status_code == 404

    def test_pagination_by_category(self, client):
        data = client.get("/posts", params={"category": "cycling"}).json()

        assert data["posts_count"] == 6
        assert data["max_pages"] == 1


class TestSessionEndpoints:

    def test_token_sets_cookie(self, client):
        response = client.get("/session/token")

        assert response.status_code == 200
        assert response.json()["header"] == TOKEN_HEADER
        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith("theme_session=")
        assert "httponly" in cookie
        assert "samesite=lax" in cookie

    def test_token_stable_within_session(self, client):
        assert get_token(client) == get_token(client)

    def test_session_info_has_no_secrets(self, client):
        token = get_token(client)

        response = client.get("/session/info")

        data = response.json()
        assert data["session_active"] is True
        assert data["cookie_name"] == "theme_session"
        assert token not in response.text
        assert client.cookies.get("theme_session") not in response.text

    def test_token_unavailable_when_store_down(self, client, store):
        store.available = False

        assert client.get("/session/token").status_code == 503


class TestAntiForgery:

    def test_share_without_token(self, client):
        response = client.post("/share", json={"post_id": "1", "type": "twitter"})

        assert response.status_code == 403
        assert response.json() == {"detail": SecurityError.public_message}

    def test_share_with_wrong_token(self, client):
        get_token(client)

        response = client.post("/share", json={"post_id": "1", "type": "twitter"}, headers={TOKEN_HEADER: "forged"})

        assert response.status_code == 403

    def test_share_with_token(self, client):
        token = get_token(client)

        response = client.post("/share", json={"post_id": "1", "type": "twitter"}, headers={TOKEN_HEADER: token})

        assert response.status_code == 200
        assert response.json() == {"tracked": True, "shares": 1}

    def test_share_invalid_type(self, client):
        token = get_token(client)

        response = client.post("/share", json={"post_id": "1", "type": "myspace"}, headers={TOKEN_HEADER: token})

        assert response.status_code == 400

    def test_view_counted_once_per_session(self, client):
        token = get_token(client)

        first = client.post("/posts/3/view", headers={TOKEN_HEADER: token})
        second = client.post("/posts/3/view", headers={TOKEN_HEADER: token})

        assert first.json() == {"post_id": "3", "counted": True, "views": 1}
        assert second.json() == {"post_id": "3", "counted": False}

    def test_view_unknown_post(self, client):
        token = get_token(client)

        assert client.post("/posts/999/view", headers={TOKEN_HEADER: token}).status_code == 404

    def test_token_of_other_session_rejected(self, client):
        token = get_token(client)
        client.cookies.clear()

        response = client.post("/posts/3/view", headers={TOKEN_HEADER: token})

        assert response.status_code == 403

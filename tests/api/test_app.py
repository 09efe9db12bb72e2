"""Tests for api/app.py - application assembly."""

from unittest.mock import patch

import pytest
from starlette.testclient import TestClient

from api.app import create_app, create_app_from_env
from auth.rate_limiter import InMemoryBucketStore, ValkeyBucketStore


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://auth@localhost/auth")
    monkeypatch.setenv("AUTH_SIGNING_KEY", "k" * 64)
    monkeypatch.setenv("EMAIL_GATEWAY_URL", "https://gateway.example.com/send")
    monkeypatch.setenv("EMAIL_GATEWAY_API_KEY", "key")
    monkeypatch.setenv("EMAIL_GATEWAY_HMAC_SECRET", "secret")
    monkeypatch.delenv("VALKEY_URL", raising=False)


class TestCreateApp:
    def test_routes_mounted(self, auth_service):
        paths = {route.path for route in create_app(auth_service).routes}

        assert {"/auth/login", "/auth/refresh", "/sessions", "/devices", "/health"} <= paths

    def test_without_rate_limiter(self, auth_service):
        response = TestClient(create_app(auth_service)).post(
            "/auth/refresh", json={"refresh_token": "x"}
        )

        assert response.status_code == 401
        assert "X-RateLimit-Remaining" not in response.headers

    def test_trusted_proxies_on_app_state(self, auth_service):
        app = create_app(auth_service, trusted_proxies=["10.0.0.5"])

        assert app.state.trusted_proxies == frozenset({"10.0.0.5"})
        assert create_app(auth_service).state.trusted_proxies == frozenset()


class TestCreateAppFromEnv:
    def test_in_memory_buckets_without_valkey(self, env):
        with patch("api.app.PostgresClient"), patch("api.app.create_app") as build:
            create_app_from_env()

        limiter = build.call_args.args[1]
        assert isinstance(limiter._store, InMemoryBucketStore)

    def test_shared_buckets_with_valkey(self, env, monkeypatch):
        monkeypatch.setenv("VALKEY_URL", "redis://localhost:6379/0")

        with patch("api.app.PostgresClient"), patch("api.app.ValkeyClient"), \
                patch("api.app.create_app") as build:
            create_app_from_env()

        assert isinstance(build.call_args.args[1]._store, ValkeyBucketStore)

    def test_trusted_proxies_passed_through(self, env, monkeypatch):
        monkeypatch.setenv("AUTH_TRUSTED_PROXIES", "10.0.0.5")

        with patch("api.app.PostgresClient"), patch("api.app.create_app") as build:
            create_app_from_env()

        assert build.call_args.args[3] == ["10.0.0.5"]

    def test_missing_database_url(self, env, monkeypatch):
        monkeypatch.delenv("DATABASE_URL")

        with pytest.raises(KeyError):
            create_app_from_env()

"""FastAPI application assembly."""

import logging
import os
from pathlib import Path
from typing import Collection

from dotenv import load_dotenv
from fastapi import FastAPI

from api.errors import register_error_handlers
from api.middleware import RequestIDMiddleware
from auth.api import create_auth_router, create_session_router
from auth.config import AuthConfig
from auth.database import PostgresCredentialStore
from auth.rate_limiter import RateLimiter, ValkeyBucketStore
from auth.security_logger import SecurityLogger
from auth.security_middleware import AuthMiddleware, RateLimitMiddleware
from auth.service import AuthService, create_auth_service
from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)


def create_app(
    auth_service: AuthService,
    rate_limiter: RateLimiter | None = None,
    security_logger: SecurityLogger | None = None,
    trusted_proxies: Collection[str] = (),
) -> FastAPI:
    """Build the HTTP app around an already wired service.

    Forwarding headers are only believed from peers in `trusted_proxies`.
    """
    app = FastAPI(title="tenant-auth")
    app.state.trusted_proxies = frozenset(trusted_proxies)

    # Added innermost first: RequestID -> RateLimit -> Auth -> routes
    app.add_middleware(AuthMiddleware, auth_service=auth_service)
    if rate_limiter is not None:
        app.add_middleware(
            RateLimitMiddleware, rate_limiter=rate_limiter, security_logger=security_logger
        )
    app.add_middleware(RequestIDMiddleware)

    register_error_handlers(app)
    app.include_router(create_auth_router(auth_service))
    app.include_router(create_session_router(auth_service))

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def create_app_from_env(env_file: Path | None = None) -> FastAPI:
    """
    Wire Postgres, optional Valkey and the email gateway from the environment.

    Required: DATABASE_URL, AUTH_SIGNING_KEY, EMAIL_GATEWAY_URL,
    EMAIL_GATEWAY_API_KEY, EMAIL_GATEWAY_HMAC_SECRET.
    Optional: VALKEY_URL (shared rate-limit buckets), plus AUTH_* overrides.
    """
    load_dotenv(env_file)

    config = AuthConfig.from_env()
    postgres = PostgresClient(os.environ["DATABASE_URL"])
    security_logger = SecurityLogger(postgres)

    valkey_url = os.getenv("VALKEY_URL")
    if valkey_url:
        rate_limiter = RateLimiter(config, ValkeyBucketStore(ValkeyClient(valkey_url)))
    else:
        logger.warning("VALKEY_URL not set, rate limits are per-process")
        rate_limiter = RateLimiter(config)

    email_client = EmailGatewayClient(
        gateway_url=os.environ["EMAIL_GATEWAY_URL"],
        api_key=os.environ["EMAIL_GATEWAY_API_KEY"],
        hmac_secret=os.environ["EMAIL_GATEWAY_HMAC_SECRET"],
    )

    auth_service = create_auth_service(
        config,
        PostgresCredentialStore(postgres),
        email_client,
        security_logger,
        rate_limiter=rate_limiter,
    )
    return create_app(auth_service, rate_limiter, security_logger, config.trusted_proxies)

"""
FastAPI application factory.

Components are built once per app and hung off `app.state`:
settings, session_factory, catalog_loader, security_log, verifier,
entitlement_service, reconciler.

Startup fails with ConfigurationError when no webhook secret is set.
"""

import logging
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine

from entitlement_engine.api.routes import admin, entitlements, health, webhooks
from entitlement_engine.billing.reconciler import StateReconciler
from entitlement_engine.billing.tiers import TierResolver
from entitlement_engine.billing.verifier import EventVerifier
from entitlement_engine.config import Settings, configure_logging
from entitlement_engine.database import build_engine, build_session_factory, create_schema
from entitlement_engine.entitlements.cache import SnapshotCache, build_snapshot_cache
from entitlement_engine.entitlements.loader import TierCatalogLoader
from entitlement_engine.entitlements.service import EntitlementService
from entitlement_engine.platform.errors import ErrorHandlerMiddleware, register_error_handlers
from entitlement_engine.platform.security_log import SecurityLogger

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    cache: Optional[SnapshotCache] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    settings.validate()
    configure_logging(settings.log_level)

    engine = engine or build_engine(settings.database_url)
    create_schema(engine)
    session_factory = build_session_factory(engine)

    catalog_loader = TierCatalogLoader(settings.tier_catalog_path)
    security_log = SecurityLogger(session_factory)
    cache = cache or build_snapshot_cache(
        settings.redis_url,
        ttl_seconds=settings.snapshot_ttl_seconds,
        timeout_seconds=settings.cache_timeout_seconds,
    )

    entitlement_service = EntitlementService(
        session_factory=session_factory,
        catalog=catalog_loader,
        cache=cache,
    )
    verifier = EventVerifier(
        settings.webhook_secrets(),
        max_payload_bytes=settings.max_webhook_payload_bytes,
        security_log=security_log,
    )
    reconciler = StateReconciler(
        session_factory,
        TierResolver(lambda: catalog_loader.catalog),
        security_log=security_log,
        on_state_change=entitlement_service.refresh,
    )

    app = FastAPI(title="Entitlement Engine")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.catalog_loader = catalog_loader
    app.state.security_log = security_log
    app.state.verifier = verifier
    app.state.entitlement_service = entitlement_service
    app.state.reconciler = reconciler

    app.add_middleware(ErrorHandlerMiddleware)
    register_error_handlers(app)

    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(entitlements.router)
    app.include_router(admin.router)

    logger.info("Entitlement engine started", extra={
        "trust_domains": [d.value for d in verifier.configured_domains],
        "cache": type(cache).__name__,
    })
    return app

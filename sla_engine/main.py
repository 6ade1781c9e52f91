"""
SLA Engine - Main Application
==============================

Multi-tenant SLA tracking and escalation service.

Modules:
- SLA Catalog: definitions, matching rules and status timeout policies
- Escalations: periodic sweep, alert dispatch and acknowledgement
- Metrics: per-ticket compliance rows and tenant-wide statistics

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, scheduler, aggregator and DTOs
- Domain: Entities, value objects, rule resolver and clock engine
- Infrastructure: Database, repositories, webhook, policy file watcher
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

# Configuration
from sla_engine.config import settings

# Infrastructure
from sla_engine.infrastructure.database import (
    close_database,
    create_tables,
    get_session_factory,
    init_database,
)

# SLA Module
from sla_engine.sla.application import EscalationScheduler, MetricsAggregator, TicketSlaService
from sla_engine.sla.application.dto import HealthResponse
from sla_engine.sla.domain import ClockEngine
from sla_engine.sla.infrastructure.external import (
    EscalationPolicyManager,
    LogNotificationDispatcher,
    SweepScheduler,
    WebhookNotificationDispatcher,
)
from sla_engine.sla.infrastructure.repositories import (
    SQLAlchemyEscalationRepository,
    SQLAlchemySlaCatalogRepository,
    SQLAlchemySlaMetricRepository,
    SQLAlchemyTicketStore,
)
from sla_engine.sla.interfaces import sla_router

# Shared
from sla_engine.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    register_exception_handlers,
)
from sla_engine.shared.infrastructure.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_notifier():
    """Webhook dispatcher when a URL is configured, log-only otherwise."""
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(
            settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
            max_retries=settings.notification_max_retries,
        )
    logger.info("No notification webhook configured, escalation alerts go to the log")
    return LogNotificationDispatcher()


def build_escalation_scheduler(policy_provider, notifier) -> EscalationScheduler:
    """Wire the sweep against the application database."""
    session_factory = get_session_factory()
    ticket_store = SQLAlchemyTicketStore(session_factory, settings.terminal_statuses)
    clock_engine = ClockEngine(settings.terminal_statuses)
    ticket_sla = TicketSlaService(ticket_store, clock_engine)

    metrics_factory = None
    if settings.sla_refresh_metrics_on_sweep:
        def metrics_factory(session):
            return MetricsAggregator(
                SQLAlchemySlaCatalogRepository(session),
                SQLAlchemySlaMetricRepository(session),
                ticket_store,
                ticket_sla,
            )

    return EscalationScheduler(
        session_factory=session_factory,
        ticket_store=ticket_store,
        notifier=notifier,
        policy_provider=policy_provider,
        catalog_factory=SQLAlchemySlaCatalogRepository,
        escalation_repository_factory=SQLAlchemyEscalationRepository,
        clock_engine=clock_engine,
        metrics_factory=metrics_factory,
        concurrency=settings.sla_sweep_concurrency,
        budget_seconds=settings.sla_sweep_budget_seconds,
        dispatch_timeout_seconds=settings.notification_dispatch_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database (create tables outside production)
    3. Load escalation policy and watch it for changes
    4. Wire the escalation scheduler
    5. Start the background sweep

    SHUTDOWN:
    1. Stop the background sweep
    2. Stop the policy watcher
    3. Close the notification client
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment, settings.app_name)
    logger.info("Starting SLA Engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()

    if settings.environment in ("development", "test"):
        logger.info("Creating database tables")
        try:
            await create_tables()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    # Raises ConfigurationException on an unreadable policy file
    policy_manager = EscalationPolicyManager()
    policy_manager.load(settings.sla_config_path)
    policy_manager.start_watching()

    notifier = build_notifier()
    escalation_scheduler = build_escalation_scheduler(policy_manager, notifier)

    sweep_scheduler = SweepScheduler(interval_seconds=settings.sla_sweep_interval_seconds)
    if settings.sla_scheduler_enabled:
        async def escalation_sweep_job():
            """Background escalation sweep across all tenants."""
            await escalation_scheduler.sweep_all_tenants()

        await sweep_scheduler.start(escalation_sweep_job)
    else:
        logger.info("Background escalation sweep disabled")

    # Store services in app state for dependency injection
    app.state.policy_manager = policy_manager
    app.state.escalation_scheduler = escalation_scheduler
    app.state.sweep_scheduler = sweep_scheduler

    logger.info("SLA Engine started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down SLA Engine")

    await sweep_scheduler.stop()
    policy_manager.stop_watching()
    await notifier.close()
    await close_database()

    logger.info("SLA Engine shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="SLA Engine API",
        description="""
    ## Multi-tenant SLA Tracking & Escalation

    ### SLA Catalog
    - `POST/GET /slas`, `GET/PUT/DELETE /slas/{id}`
    - `POST/GET /slas/{id}/rules`, `PUT/DELETE /rules/{id}`
    - `POST/GET /slas/{id}/status-timeouts`, `PUT/DELETE /status-timeouts/{id}`
    - `POST /slas/resolve` - preview which SLA applies to a ticket

    ### Escalations
    - `GET /tickets/{id}/escalations`, `GET /escalations/pending`
    - `POST /escalations/{id}/acknowledge`
    - `POST /escalations/sweep` - run the caller tenant's sweep now

    ### Metrics
    - `GET /tickets/{id}/clock` - live response and resolution clocks
    - `GET /tickets/{id}/metrics`, `POST /tickets/{id}/metrics/refresh`
    - `POST /tickets/{id}/events` - ticket change notification
    - `GET /compliance-stats?startDate=&endDate=`

    Every request must carry the tenant header (`X-Tenant-ID` by default).
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Custom Middleware (from shared) ===
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    register_exception_handlers(app)

    # === Include Module Routers ===
    app.include_router(sla_router)

    # === Health Check Endpoint ===

    @app.get("/health", tags=["Health"], response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint for load balancers and orchestrators."""
        sweep_scheduler = getattr(request.app.state, "sweep_scheduler", None)
        return HealthResponse(
            status="healthy",
            version=settings.app_version,
            scheduler_running=bool(sweep_scheduler and sweep_scheduler.is_running),
            timestamp=datetime.now(timezone.utc),
        )

    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "sla_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )

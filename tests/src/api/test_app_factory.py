"""
Tests for create_app() and build_services().

Covers:
- Every job type has a handler after wiring
- The scheduler carries the four batch tasks
- startup()/shutdown() honour scheduler_enabled
- startup() returns receipts left in processing to pending
- Docs are hidden in production
- The lifespan creates tables and starts/stops the services
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.api import create_app
from src.api.dependencies import build_services
from src.config.settings import Settings
from src.models import Receipt
from src.services.job_queue import JobType

_SECRET = "test-secret-key-for-jwt-signing-at-least-32-bytes-long"


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(jwt_secret=_SECRET, dev_mode=True, upload_dir=str(tmp_path / "uploads"))


class TestBuildServices:
    @pytest.mark.asyncio
    async def test_handlers_registered(self, settings: Settings, session_factory, clock) -> None:
        services = build_services(settings, clock=clock, session_factory=session_factory)
        try:
            for job_type in JobType:
                assert services.job_queue.has_handler(job_type), job_type
            assert services.engine is None
        finally:
            await services.shutdown()

    @pytest.mark.asyncio
    async def test_scheduler_tasks(self, settings: Settings, session_factory, clock) -> None:
        services = build_services(settings, clock=clock, session_factory=session_factory)
        try:
            names = [task.name for task in services.scheduler.tasks]
            assert names == ["weekly_digest", "recurring_detection", "budget_alerts", "month_reconciliation"]
        finally:
            await services.shutdown()

    @pytest.mark.asyncio
    async def test_scheduler_disabled_by_default(self, settings: Settings, session_factory) -> None:
        services = build_services(settings, session_factory=session_factory)
        await services.startup()
        assert services.job_queue.is_running is True
        assert services.scheduler.is_running is False
        await services.shutdown()
        assert services.job_queue.is_running is False

    @pytest.mark.asyncio
    async def test_startup_resets_interrupted_receipts(
        self, settings: Settings, session_factory
    ) -> None:
        async with session_factory() as session, session.begin():
            receipt = Receipt(user_id=1, items=[], insight_processing_status="processing")
            session.add(receipt)
        services = build_services(settings, session_factory=session_factory)
        await services.startup()
        await services.shutdown()

        async with session_factory() as session:
            stored = await session.get(Receipt, receipt.id)
        assert stored.insight_processing_status == "pending"

    @pytest.mark.asyncio
    async def test_scheduler_enabled(self, tmp_path, session_factory) -> None:
        settings = Settings(jwt_secret=_SECRET, scheduler_enabled=True, upload_dir=str(tmp_path))
        services = build_services(settings, session_factory=session_factory)
        await services.startup()
        assert services.scheduler.is_running is True
        await services.shutdown()
        assert services.scheduler.is_running is False


class TestCreateApp:
    def test_docs_hidden_in_production(self) -> None:
        services = MagicMock()
        services.settings = Settings(jwt_secret=_SECRET, environment="production")
        app = create_app(services=services)
        assert app.docs_url is None
        assert app.redoc_url is None

    def test_docs_in_development(self) -> None:
        services = MagicMock()
        services.settings = Settings(jwt_secret=_SECRET)
        app = create_app(services=services)
        assert app.docs_url == "/docs"
        assert app.state.services is services

    @pytest.mark.asyncio
    async def test_lifespan_starts_and_stops_services(self) -> None:
        services = MagicMock()
        services.settings = Settings(jwt_secret=_SECRET)
        services.engine = None
        services.startup = AsyncMock()
        services.shutdown = AsyncMock()
        app = create_app(services=services)

        async with app.router.lifespan_context(app):
            services.startup.assert_awaited_once()
            services.shutdown.assert_not_awaited()

        services.shutdown.assert_awaited_once()

"""
FastAPI Dependencies for Receipt Insights.

build_services() wires every service once per process and the app keeps
the result on ``app.state.services``. Route handlers reach it through
get_services() and identify the caller through get_current_user_id().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncEngine

from src.api.auth import AuthService, AuthToken
from src.config.settings import Settings
from src.infra.database import SessionFactory, create_engine_and_factory
from src.infra.file_store import LocalFileStore
from src.lib.clock import Clock, utc_now
from src.lib.security import RollingWindowRateLimiter
from src.services.budget_ledger import BudgetLedger
from src.services.categorizer import ItemCategorizer
from src.services.digest import DigestAggregator
from src.services.extraction import ReceiptExtractor
from src.services.insight_orchestrator import InsightOrchestrator
from src.services.insight_writer import InsightWriter
from src.services.job_queue import JobQueue
from src.services.llm_client import LLMClient
from src.services.notifications import MessageSender, NotificationService
from src.services.price_tracker import PriceTracker
from src.services.receipts import ReceiptService
from src.services.recurrence import RecurrenceDetector
from src.workflows.scheduled_jobs import ScheduledJobs
from src.workflows.scheduler import Scheduler

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AppServices:
    """Every long-lived collaborator of the API process."""

    settings: Settings
    engine: AsyncEngine | None
    session_factory: SessionFactory
    auth: AuthService
    job_queue: JobQueue
    llm: LLMClient
    file_store: LocalFileStore
    extractor: ReceiptExtractor
    receipts: ReceiptService
    categorizer: ItemCategorizer
    recurrence: RecurrenceDetector
    writer: InsightWriter
    ledger: BudgetLedger
    orchestrator: InsightOrchestrator
    digest: DigestAggregator
    prices: PriceTracker
    notifications: NotificationService
    scheduler: Scheduler

    async def startup(self) -> None:
        await self.orchestrator.recover_interrupted()
        await self.job_queue.start()
        if self.settings.scheduler_enabled:
            self.scheduler.start()
        logger.info(
            "Services started (scheduler %s)",
            "enabled" if self.settings.scheduler_enabled else "disabled",
        )

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.job_queue.stop()
        await self.llm.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Services stopped")


def build_services(
    settings: Settings,
    clock: Clock = utc_now,
    session_factory: SessionFactory | None = None,
    http_client: httpx.AsyncClient | None = None,
    sender: MessageSender | None = None,
) -> AppServices:
    """
    Construct and wire all services.

    Args:
        settings: Resolved configuration.
        clock: Shared "now" source.
        session_factory: Existing factory (tests); otherwise an engine is
            created from ``settings.database_url``.
        http_client: Transport for the LLM client (tests inject a mock).
        sender: Notification sink (defaults to the structured-log sender).

    Returns:
        AppServices with job handlers registered on the queue.
    """
    engine: AsyncEngine | None = None
    if session_factory is None:
        engine, session_factory = create_engine_and_factory(settings.database_url)

    job_queue = JobQueue(
        max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_backoff_seconds,
    )
    llm = LLMClient(
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        rate_limiter=RollingWindowRateLimiter(max_requests=settings.llm_max_requests_per_minute),
        timeout=settings.llm_timeout,
        http_client=http_client,
    )

    categorizer = ItemCategorizer(llm)
    recurrence = RecurrenceDetector(session_factory, clock=clock)
    writer = InsightWriter(llm)
    ledger = BudgetLedger(session_factory, job_queue, clock=clock)
    orchestrator = InsightOrchestrator(
        session_factory, job_queue, categorizer, recurrence, writer, ledger, clock=clock
    )
    digest = DigestAggregator(session_factory, job_queue, writer, clock=clock)
    notifications = NotificationService(session_factory, sender=sender, clock=clock)

    orchestrator.register(job_queue)
    notifications.register(job_queue)

    jobs = ScheduledJobs(digest, recurrence, ledger)
    scheduler = Scheduler(jobs.tasks(), clock=clock)

    return AppServices(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        auth=AuthService(settings.jwt_secret, algorithm=settings.jwt_algorithm),
        job_queue=job_queue,
        llm=llm,
        file_store=LocalFileStore(settings.upload_dir, clock=clock),
        extractor=ReceiptExtractor(llm, model=settings.llm_vision_model),
        receipts=ReceiptService(session_factory, clock=clock),
        categorizer=categorizer,
        recurrence=recurrence,
        writer=writer,
        ledger=ledger,
        orchestrator=orchestrator,
        digest=digest,
        prices=PriceTracker(session_factory, clock=clock),
        notifications=notifications,
        scheduler=scheduler,
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services  # type: ignore[no-any-return]


async def get_current_user_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthToken:
    """
    Dependency to get the caller's verified token.

    Raises HTTPException 401 if the token is missing, invalid or expired.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    auth_token = get_services(request).auth.decode_token(credentials.credentials)
    if not auth_token or auth_token.is_expired():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return auth_token


async def get_current_user_id(
    token: AuthToken = Depends(get_current_user_token),
) -> int:
    return token.user_id


__all__ = [
    "AppServices",
    "build_services",
    "get_current_user_id",
    "get_current_user_token",
    "get_services",
]

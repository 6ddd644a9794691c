"""
Notification Service for Receipt Insights.

Job handlers for the notification job types. Each handler renders a
plain-text message and passes it to a MessageSender. The default sender
writes a structured log event; a mail or push transport can be swapped in
without touching the handlers.

Job types handled:
    send_budget_alert    payload: user_id, category, threshold, percent_used, spent, limit
    send_weekly_summary  payload: user_id, total_spent, budget_progress
    send_weekly_digest   payload: user_id, digest_id
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import structlog
from sqlalchemy import select

from src.infra.database import SessionFactory
from src.lib.clock import Clock, utc_now
from src.lib.exceptions import NotFoundError
from src.lib.security import hash_uid
from src.models.digest import WeeklyDigest
from src.services.job_queue import JobQueue, JobType

logger = logging.getLogger(__name__)

STATUS_MARKERS = {"exceeded": "[!!]", "warning": "[!]", "normal": "[ok]"}


class MessageSender(Protocol):
    """Delivery transport for rendered notifications."""

    async def send(self, user_id: int, subject: str, body: str) -> None:
        ...


class StructlogSender:
    """Default transport: emits one structured log event per message."""

    def __init__(self) -> None:
        self._log = structlog.get_logger("notifications")

    async def send(self, user_id: int, subject: str, body: str) -> None:
        self._log.info(
            "notification_sent",
            user_hash=hash_uid(user_id),
            subject=subject,
            body=body,
        )


def _money(value: float, currency: str = "USD") -> str:
    return f"{float(value):,.2f} {currency}"


def render_budget_alert(payload: dict[str, Any]) -> tuple[str, str]:
    category = payload["category"]
    percent = payload["percent_used"]
    spent = _money(payload["spent"])
    limit = _money(payload["limit"])
    if payload.get("threshold", 0) >= 100 or percent >= 100:
        subject = f"Budget Alert: {category} budget exceeded"
        body = f"You have exceeded your {category} budget!\nSpent: {spent} / {limit} ({percent}%)"
    else:
        subject = f"Budget Warning: {category} budget at {percent}%"
        body = (
            f"You're approaching your {category} budget limit!\n"
            f"Spent: {spent} / {limit} ({percent}%)"
        )
    return subject, body


def render_weekly_summary(payload: dict[str, Any]) -> tuple[str, str]:
    lines = [f"Total Spent: {_money(payload.get('total_spent', 0.0))}", "", "Category Breakdown:"]
    for row in payload.get("budget_progress", []):
        marker = STATUS_MARKERS.get(row.get("status", "normal"), "")
        line = f"{marker} {row['category']}: {_money(row['spent'])}"
        if row.get("monthly_limit", 0) > 0:
            line += f" ({row['percent_used']}% of budget)"
        else:
            line += " (no budget set)"
        lines.append(line)
    return "Weekly Budget Summary", "\n".join(lines)


def render_weekly_digest(digest: WeeklyDigest) -> tuple[str, str]:
    currency = str(digest.currency or "USD")
    lines = [
        f"Week {digest.week_start:%Y-%m-%d} to {digest.week_end:%Y-%m-%d}",
        f"Total Spent: {_money(digest.total_spent, currency)}",
    ]
    if digest.top_categories:
        lines.append("")
        lines.append("Top Categories:")
        for row in digest.top_categories:
            lines.append(f"- {row['category']}: {_money(row['amount'], currency)} ({row['percentage']}%)")
    if digest.overspent_categories:
        lines.append("")
        lines.append("Over Budget:")
        for row in digest.overspent_categories:
            lines.append(
                f"- {row['category']}: {_money(row['spent'], currency)} of "
                f"{_money(row['limit'], currency)}"
            )
    if digest.recurring_alerts:
        lines.append("")
        lines.append("Recurring Purchases:")
        for alert in digest.recurring_alerts:
            lines.append(f"- {alert['item_name']} ({alert.get('frequency') or 'recurring'})")
    if digest.weekly_tip:
        lines.append("")
        lines.append(f"Tip: {digest.weekly_tip}")
    return "Your Weekly Spending Digest", "\n".join(lines)


class NotificationService:
    """
    Renders and delivers notifications queued by the ledger and the digest job.

    Args:
        session_factory: Async session factory (digests are loaded by id).
        sender: Delivery transport; defaults to StructlogSender.
        clock: Stamps ``sent_at`` on digests.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        sender: MessageSender | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.sender = sender or StructlogSender()
        self.clock = clock

    def register(self, job_queue: JobQueue) -> None:
        """Attach the handlers to a job queue."""
        job_queue.register(JobType.SEND_BUDGET_ALERT, self.send_budget_alert)
        job_queue.register(JobType.SEND_WEEKLY_SUMMARY, self.send_weekly_summary)
        job_queue.register(JobType.SEND_WEEKLY_DIGEST, self.send_weekly_digest)

    async def send_budget_alert(self, payload: dict[str, Any]) -> None:
        subject, body = render_budget_alert(payload)
        await self.sender.send(int(payload["user_id"]), subject, body)
        logger.info(
            "Budget alert (%s%%) sent to %s for %s",
            payload.get("threshold"),
            hash_uid(payload["user_id"]),
            payload["category"],
        )

    async def send_weekly_summary(self, payload: dict[str, Any]) -> None:
        subject, body = render_weekly_summary(payload)
        await self.sender.send(int(payload["user_id"]), subject, body)
        logger.info("Weekly summary sent to %s", hash_uid(payload["user_id"]))

    async def send_weekly_digest(self, payload: dict[str, Any]) -> None:
        """
        Deliver a stored digest and mark it sent.

        Raises:
            NotFoundError: If the digest does not exist for the user.
        """
        user_id = int(payload["user_id"])
        digest_id = int(payload["digest_id"])

        async with self.session_factory() as session, session.begin():
            digest = (
                await session.execute(
                    select(WeeklyDigest).where(
                        WeeklyDigest.id == digest_id,
                        WeeklyDigest.user_id == user_id,
                    )
                )
            ).scalar_one_or_none()
            if digest is None:
                raise NotFoundError("WeeklyDigest", digest_id)
            if digest.is_sent:
                logger.info("Digest %d already sent, skipping", digest_id)
                return

            subject, body = render_weekly_digest(digest)
            await self.sender.send(user_id, subject, body)
            digest.is_sent = True  # type: ignore[assignment]
            digest.sent_at = self.clock()  # type: ignore[assignment]

        logger.info("Weekly digest %d sent to %s", digest_id, hash_uid(user_id))


__all__ = [
    "MessageSender",
    "NotificationService",
    "StructlogSender",
    "render_budget_alert",
    "render_weekly_digest",
    "render_weekly_summary",
]

# blogpay/tasks/payment_tasks.py
"""
Periodic settlement work. Every run builds its own UnitOfWork: `asyncio.run`
starts a fresh event loop per task and pooled connections cannot cross loops.
"""
import asyncio
import logging
from typing import List

from blogpay.core.celery_app import celery_app
from blogpay.core.config import settings, PaymentConfig
from blogpay.core.uow import UnitOfWork
from blogpay.modules.payment.gateways import build_adapters
from blogpay.modules.payment.notifications import SideEffectRunner
from blogpay.modules.payment.orchestrator import PaymentOrchestrator
from blogpay.modules.subscription.service import subscription_service

logger = logging.getLogger(__name__)


def _orchestrator() -> PaymentOrchestrator:
    config = PaymentConfig.from_settings(settings)
    # Side effects queued by a sweep are delivered by the retry task
    return PaymentOrchestrator(config, build_adapters(config))


def _runner() -> SideEffectRunner:
    return SideEffectRunner(max_attempts=settings.SIDE_EFFECT_MAX_ATTEMPTS)


async def _reconcile_stale(uow: UnitOfWork) -> dict:
    async with uow() as db:
        return await _orchestrator().reconcile_stale(db)


async def _recover_abandoned(uow: UnitOfWork) -> dict:
    async with uow() as db:
        return await _orchestrator().recover_abandoned(db)


async def _retry_side_effects(uow: UnitOfWork) -> dict:
    async with uow() as db:
        return await _runner().run_due(db)


async def _run_side_effects(uow: UnitOfWork, job_ids: List[int]) -> int:
    async with uow() as db:
        return await _runner().run_jobs(db, job_ids)


async def _expire_subscriptions(uow: UnitOfWork) -> int:
    async with uow() as db:
        return await subscription_service.expire_due(db)


async def _remind_expiring(uow: UnitOfWork) -> int:
    async with uow() as db:
        return await subscription_service.remind_expiring(db, within_days=settings.RENEWAL_REMINDER_DAYS)


@celery_app.task(name="tasks.reconcile_stale_orders")
def reconcile_stale_orders():
    """Poll gateways for orders stuck in created/pending past the staleness threshold."""
    summary = asyncio.run(_reconcile_stale(UnitOfWork()))
    logger.info(f"[Celery Task] reconcile_stale_orders: {summary}")
    return summary


@celery_app.task(name="tasks.recover_abandoned_reservations")
def recover_abandoned_reservations():
    summary = asyncio.run(_recover_abandoned(UnitOfWork()))
    logger.info(f"[Celery Task] recover_abandoned_reservations: {summary}")
    return summary


@celery_app.task(name="tasks.retry_side_effects")
def retry_side_effects():
    return asyncio.run(_retry_side_effects(UnitOfWork()))


@celery_app.task(name="tasks.run_side_effects", acks_late=True)
def run_side_effects(job_ids: List[int]):
    """Immediate delivery right after a settlement commits; failures fall back to the retry sweep."""
    return asyncio.run(_run_side_effects(UnitOfWork(), job_ids))


@celery_app.task(name="tasks.check_expired_subscriptions")
def check_expired_subscriptions():
    """
    A periodic task to find and mark subscriptions as 'expired'.
    """
    expired = asyncio.run(_expire_subscriptions(UnitOfWork()))
    logger.info(f"[Celery Task] {expired} subscriptions expired")
    return expired


@celery_app.task(name="tasks.send_renewal_reminders")
def send_renewal_reminders():
    reminded = asyncio.run(_remind_expiring(UnitOfWork()))
    logger.info(f"[Celery Task] {reminded} renewal reminders queued")
    return reminded

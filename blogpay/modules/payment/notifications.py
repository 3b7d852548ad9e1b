"""
Durable retry queue for side effects of settled orders.

A state transition writes its `side_effect_jobs` rows in the same transaction,
so a notification can never be lost once the order moved. Delivery happens
later; a failed delivery is rescheduled with exponential backoff and never
reaches the webhook response.
"""

import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from blogpay.models.side_effect_model import JobStatus, SideEffectJob, SideEffectKind
from blogpay.repository.order_repository import order_repository
from blogpay.repository.side_effect_repository import side_effect_repository
from blogpay.utils.email_sender import send_brevo_email

logger = logging.getLogger(__name__)

EmailSender = Callable[..., Awaitable[None]]

EMAIL_TEMPLATES: Dict[str, tuple] = {
    SideEffectKind.SUBSCRIPTION_ACTIVATED.value: (
        "Langganan {plan_id} Anda sudah aktif",
        "<p>Halo {name},</p><p>Pembayaran untuk paket <b>{plan_id}</b> ({billing_cycle}) "
        "sebesar {currency} {amount} sudah kami terima.</p>"
        "<p>Langganan Anda aktif sampai {end_date}.</p>",
    ),
    SideEffectKind.PAYMENT_FAILED.value: (
        "Pembayaran paket {plan_id} gagal",
        "<p>Halo {name},</p><p>Pembayaran untuk paket <b>{plan_id}</b> tidak berhasil "
        "({reason}). Langganan Anda tidak berubah.</p>",
    ),
    SideEffectKind.PAYMENT_CANCELLED.value: (
        "Pembayaran paket {plan_id} dibatalkan",
        "<p>Halo {name},</p><p>Pembayaran untuk paket <b>{plan_id}</b> dibatalkan. "
        "Langganan Anda tidak berubah.</p>",
    ),
    SideEffectKind.SUBSCRIPTION_EXPIRED.value: (
        "Langganan {plan_id} Anda telah berakhir",
        "<p>Halo {name},</p><p>Langganan paket <b>{plan_id}</b> berakhir pada {end_date}. "
        "Perpanjang untuk tetap menikmati fitur premium.</p>",
    ),
    SideEffectKind.SUBSCRIPTION_EXPIRING.value: (
        "Langganan {plan_id} Anda berakhir dalam {days_left} hari",
        "<p>Halo {name},</p><p>Langganan paket <b>{plan_id}</b> akan berakhir pada {end_date}. "
        "Perpanjang sekarang agar akses Anda tidak terputus.</p>",
    ),
}


class _Blank(dict):
    def __missing__(self, key):
        return "-"


class SideEffectRunner:
    def __init__(
        self,
        max_attempts: int = 5,
        base_delay_seconds: int = 60,
        sender: Optional[EmailSender] = None,
        lease_seconds: int = 600,
    ):
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.lease_seconds = lease_seconds
        self.sender = sender or send_brevo_email

    def backoff(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.base_delay_seconds * (2 ** max(attempts - 1, 0)))

    async def execute(self, db: AsyncSession, job: SideEffectJob) -> None:
        template = EMAIL_TEMPLATES.get(job.kind)
        if template is None:
            logger.warning(f"No handler for side effect '{job.kind}' (job {job.id}); dropping")
            return

        payload = _Blank({k: v for k, v in (job.payload or {}).items() if v is not None})
        email = payload.get("email")
        if not email and job.order_id:
            order = await order_repository.get_by_order_id(db, job.order_id)
            if order:
                email = order.customer_email
                if not payload.get("name") and order.customer_name:
                    payload["name"] = order.customer_name
        if not email:
            logger.info(f"Side effect {job.kind} for order {job.order_id} has no recipient; skipping email")
            return
        if not payload.get("name"):
            payload["name"] = email

        subject, body = template
        await self.sender(email, subject.format_map(payload), body.format_map(payload), to_name=payload["name"])

    async def run_job(self, db: AsyncSession, job: SideEffectJob, now: Optional[datetime] = None) -> bool:
        """
        One delivery attempt. The job is claimed and committed before anything
        is sent, so the immediate task and the retry sweep never both deliver it.
        Returns True when this call delivered the job.
        """
        now = now or datetime.utcnow()
        claimed = await side_effect_repository.claim(
            db, job.id, now, lease_until=now + timedelta(seconds=self.lease_seconds)
        )
        await db.commit()
        await db.refresh(job)
        if not claimed:
            return False

        try:
            await self.execute(db, job)
        except Exception as e:
            job.last_error = str(e)[:2000]
            if job.attempts >= self.max_attempts:
                job.status = JobStatus.DEAD.value
                logger.error(f"Side effect {job.kind} (job {job.id}) gave up after {job.attempts} attempts: {e}")
            else:
                job.status = JobStatus.PENDING.value
                job.next_attempt_at = now + self.backoff(job.attempts)
                logger.warning(
                    f"Side effect {job.kind} (job {job.id}) failed, attempt {job.attempts}; "
                    f"retrying at {job.next_attempt_at:%H:%M:%S}: {e}"
                )
            await db.commit()
            return False

        job.status = JobStatus.DONE.value
        job.completed_at = now
        job.last_error = None
        await db.commit()
        return True

    async def run_jobs(self, db: AsyncSession, job_ids: Iterable[int]) -> int:
        delivered = 0
        ids = list(job_ids)
        if not ids:
            return 0
        result = await db.execute(select(SideEffectJob).filter(SideEffectJob.id.in_(ids)))
        for job in result.scalars().all():
            if await self.run_job(db, job):
                delivered += 1
        return delivered

    async def run_due(self, db: AsyncSession, now: Optional[datetime] = None, limit: int = 50) -> Dict[str, int]:
        now = now or datetime.utcnow()
        jobs = await side_effect_repository.list_due(db, now, limit=limit)
        delivered = 0
        for job in jobs:
            if await self.run_job(db, job, now=now):
                delivered += 1
        if jobs:
            logger.info(f"Side-effect sweep: {delivered}/{len(jobs)} delivered")
        return {"due": len(jobs), "delivered": delivered}

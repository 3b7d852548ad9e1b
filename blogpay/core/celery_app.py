from celery import Celery
from celery.schedules import crontab
from blogpay.core.config import settings

# Initialize Celery
celery_app = Celery(
    "tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "blogpay.tasks.payment_tasks",
    ]
)

celery_app.conf.update(
    task_track_started=True,
    beat_schedule={
        'reconcile-stale-orders': {
            'task': 'tasks.reconcile_stale_orders',
            'schedule': float(settings.RECONCILE_INTERVAL_SECONDS),
        },
        'recover-abandoned-reservations': {
            'task': 'tasks.recover_abandoned_reservations',
            'schedule': float(max(settings.RESERVATION_TIMEOUT_SECONDS, 60)),
        },
        'retry-side-effects': {
            'task': 'tasks.retry_side_effects',
            'schedule': 60.0,
        },
        'check-expired-subscriptions-daily': {
            'task': 'tasks.check_expired_subscriptions',
            'schedule': crontab(hour=0, minute=5),  # Runs daily at 00:05
        },
        'send-renewal-reminders-daily': {
            'task': 'tasks.send_renewal_reminders',
            'schedule': crontab(hour=1, minute=0),
        },
    },
)

from dataclasses import dataclass

from .config import Settings
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..services.capacity import CapacityCoordinator
from ..services.email_service import EmailService
from ..services.notification_dispatcher import NotificationDispatcher
from ..services.payment_webhook import PaymentWebhookHandler
from ..services.reconciliation import ReconciliationSweep, SweepScheduler
from ..services.subscription_service import SubscriptionService


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: SQLitePersistence
    email_service: EmailService
    notifier: NotificationDispatcher
    capacity: CapacityCoordinator
    subscription_service: SubscriptionService
    sweep: ReconciliationSweep
    scheduler: SweepScheduler
    payment_webhook: PaymentWebhookHandler


def build_container(settings: Settings) -> ApplicationContainer:
    persistence = SQLitePersistence(settings.database_path)
    email_service = EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_username=settings.smtp_username,
        smtp_password=settings.smtp_password,
        from_email=settings.smtp_from_email,
    )
    notifier = NotificationDispatcher(persistence, email_service)
    capacity = CapacityCoordinator(persistence, persistence)
    subscription_service = SubscriptionService(persistence, capacity, notifier)
    sweep = ReconciliationSweep(
        persistence,
        subscription_service,
        notifier,
        page_size=settings.sweep_page_size,
        timeout_seconds=settings.sweep_timeout_seconds,
    )
    scheduler = SweepScheduler(sweep, interval_seconds=settings.sweep_interval_seconds)
    payment_webhook = PaymentWebhookHandler(
        subscription_service, settings.stripe_webhook_secret, api_key=settings.stripe_secret_key
    )
    return ApplicationContainer(
        settings=settings,
        persistence=persistence,
        email_service=email_service,
        notifier=notifier,
        capacity=capacity,
        subscription_service=subscription_service,
        sweep=sweep,
        scheduler=scheduler,
        payment_webhook=payment_webhook,
    )

from __future__ import annotations

from dataclasses import dataclass

from app.infra.identity_directory import HttpIdentityDirectory, IdentityDirectory
from app.infra.metrics import Metrics, configure_metrics
from app.infra.stripe_client import StripeClient


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    stripe_client: StripeClient
    identity_directory: IdentityDirectory
    metrics: Metrics


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        stripe_client=StripeClient(
            secret_key=app_settings.stripe_secret_key,
            webhook_secret=app_settings.stripe_webhook_secret,
        ),
        identity_directory=HttpIdentityDirectory(
            app_settings.identity_service_url,
            timeout_seconds=app_settings.identity_service_timeout_seconds,
        ),
        metrics=metrics_client,
    )


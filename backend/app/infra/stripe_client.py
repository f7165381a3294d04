from __future__ import annotations

from typing import Any, Callable

import anyio

from app.settings import settings


class StripeClient:
    """Thin async facade over the Stripe SDK.

    Only webhook verification is needed here: charges are created by the
    checkout frontend and arrive back as ``payment_intent.*`` events.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        return await anyio.to_thread.run_sync(_sync_call)

    async def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe signature header")
        return await self._call(
            self.stripe.Webhook.construct_event,
            payload=payload,
            sig_header=signature,
            secret=self.webhook_secret,
        )


def resolve_client(app_state: Any) -> StripeClient:
    """Resolve the StripeClient for the current app.

    Priority: ``state.stripe_client``, then ``services.stripe_client``, then a
    new client built from app settings (falling back to global settings).
    """
    state = getattr(app_state, "state", app_state)
    client = getattr(state, "stripe_client", None)
    if client is not None:
        return client
    services = getattr(state, "services", None)
    client = getattr(services, "stripe_client", None) if services is not None else None
    if client is None:
        app_settings = getattr(state, "app_settings", None) or settings
        client = StripeClient(
            secret_key=app_settings.stripe_secret_key,
            webhook_secret=app_settings.stripe_webhook_secret,
        )
    state.stripe_client = client
    return client

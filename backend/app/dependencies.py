from fastapi import Request

from app.infra import stripe_client as stripe_infra
from app.infra.db import get_db_session
from app.infra.identity_directory import IdentityDirectory, resolve_identity_directory

__all__ = ["get_db_session", "get_identity_directory", "get_stripe_client"]


def get_stripe_client(request: Request) -> stripe_infra.StripeClient:
    return stripe_infra.resolve_client(request.app.state)


def get_identity_directory(request: Request) -> IdentityDirectory:
    return resolve_identity_directory(request.app.state)

import json

from app.infra.stripe_client import StripeClient
from app.main import app
from app.settings import settings
from conftest import CAREGIVER_ID, PARENT_ID

WEBHOOK_PATH = "/v1/payments/stripe/webhook"


class _FakeWebhook:
    @staticmethod
    def construct_event(payload, sig_header, secret):
        if sig_header != "valid" or secret != "whsec_test":
            raise ValueError("bad signature")
        return json.loads(payload)


class _FakeStripe:
    Webhook = _FakeWebhook


def _install_stripe() -> None:
    settings.stripe_webhook_secret = "whsec_test"
    app.state.stripe_client = StripeClient(
        secret_key="sk_test", webhook_secret="whsec_test", stripe_sdk=_FakeStripe()
    )


def _event(event_id: str = "evt_1", **metadata) -> dict:
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_webhook",
                "amount_received": 6000,
                "metadata": {
                    "parent_email": "parent@example.com",
                    "children_count": "2",
                    "caregiver_id": CAREGIVER_ID,
                    "starts_at": "2030-06-03T18:00:00Z",
                    "ends_at": "2030-06-03T21:00:00Z",
                    **metadata,
                },
            }
        },
    }


def _post(client, body: dict | str, signature: str = "valid"):
    payload = body if isinstance(body, str) else json.dumps(body)
    return client.post(
        WEBHOOK_PATH,
        content=payload,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


def test_webhook_disabled_without_secret(client):
    settings.stripe_webhook_secret = None

    response = _post(client, _event())

    assert response.status_code == 503


def test_webhook_rejects_bad_signature(client):
    _install_stripe()

    response = _post(client, _event(), signature="forged")

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid Stripe webhook"


def test_webhook_creates_booking_once(client, identity_directory):
    _install_stripe()
    identity_directory.mapping["parent@example.com"] = PARENT_ID
    payload = json.dumps(_event())

    first = _post(client, payload)
    assert first.status_code == 200
    assert first.json() == {"received": True, "processed": True, "outcome": "direct_booking_created"}
    assert identity_directory.lookups == ["parent@example.com"]

    replay = _post(client, payload)
    assert replay.status_code == 200
    assert replay.json() == {"received": True, "processed": False, "outcome": "direct_booking_created"}

    redelivered = _post(client, _event(event_id="evt_2"))
    assert redelivered.json() == {"received": True, "processed": False, "outcome": "duplicate"}


def test_webhook_replay_with_different_payload_is_rejected(client, identity_directory):
    _install_stripe()
    identity_directory.mapping["parent@example.com"] = PARENT_ID
    _post(client, _event())

    tampered = _post(client, _event(children_count="3"))

    assert tampered.status_code == 400
    assert tampered.json()["detail"] == "Event payload mismatch"


def test_webhook_ignores_unknown_payer(client):
    _install_stripe()

    response = _post(client, _event())

    assert response.json() == {"received": True, "processed": False, "outcome": "ignored"}


def test_webhook_records_slot_booking_that_cannot_be_made(client, identity_directory):
    _install_stripe()
    identity_directory.mapping["parent@example.com"] = PARENT_ID
    payload = json.dumps(_event(slot_id="deleted-slot"))

    first = _post(client, payload)
    redelivered = _post(client, payload)

    assert first.status_code == 200
    assert first.json() == {"received": True, "processed": True, "outcome": "slot_booking_failed"}
    assert redelivered.json() == {"received": True, "processed": False, "outcome": "slot_booking_failed"}

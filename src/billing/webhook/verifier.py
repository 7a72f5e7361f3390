"""Webhook verifier — authenticates processor deliveries.

The processor signs ``"<timestamp>.<raw body>"`` with HMAC-SHA256 and sends
``t=<timestamp>,v1=<signature>`` in the ``Stripe-Signature`` header.
Verification is delegated to the processor SDK. Any failure, including a
body that cannot be decoded or an envelope of the wrong shape, is terminal
for the delivery.
"""

import json

import stripe

from billing.errors import VerificationFailure


def _check_envelope(event) -> dict:
    if not isinstance(event, dict):
        raise VerificationFailure("Payload is not a processor event")
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise VerificationFailure("Event id must be a non-empty string")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise VerificationFailure("Event type must be a non-empty string")

    created = event.get("created")
    if created is not None and (isinstance(created, bool) or not isinstance(created, int)):
        raise VerificationFailure("Event created must be an integer timestamp")

    data = event.get("data")
    if data is not None and (not isinstance(data, dict) or not isinstance(data.get("object") or {}, dict)):
        raise VerificationFailure("Event data must be an object")
    return event


class WebhookVerifier:
    def __init__(self, secret: str, tolerance_seconds: int = 300) -> None:
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes | str, signature_header: str | None) -> dict:
        """Return the decoded event, or raise ``VerificationFailure``."""
        if not signature_header:
            raise VerificationFailure("Missing signature header")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        except UnicodeDecodeError as exc:
            raise VerificationFailure("Payload is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(body, signature_header, self.secret, self.tolerance_seconds)
        except stripe.SignatureVerificationError as exc:
            raise VerificationFailure(str(exc)) from exc

        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise VerificationFailure("Payload is not valid JSON") from exc
        return _check_envelope(event)

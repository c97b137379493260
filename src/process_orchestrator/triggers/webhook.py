"""Inbound webhook authentication.

Senders either sign the raw body (``X-Webhook-Signature: sha256=<hex hmac>``) or send
the shared secret itself in ``X-Webhook-Secret``. The signature is checked first.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping

from process_orchestrator.errors import PermissionDeniedError

SIGNATURE_HEADER = "x-webhook-signature"
SECRET_HEADER = "x-webhook-secret"


class WebhookAuthError(PermissionDeniedError):
    pass


def sign(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def verify_webhook(secret: str, body: bytes, headers: Mapping[str, str]) -> None:
    if not secret:
        raise WebhookAuthError("Webhook trigger has no secret configured")

    signature = _header(headers, SIGNATURE_HEADER)
    if signature:
        expected = sign(secret, body).encode("utf-8")
        if hmac.compare_digest(signature.strip().encode("utf-8"), expected):
            return
        raise WebhookAuthError("Invalid webhook signature")

    provided = _header(headers, SECRET_HEADER)
    if provided and hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        return
    raise WebhookAuthError("Missing or invalid webhook credentials")

"""
Webhook ingress for Bland AI call events.
Verifies the signature, records the event in the log and pushes it to
connected UI sessions.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Optional

import structlog

from roadassist.config import Settings
from roadassist.errors import IngestAuthError, IngestMalformedError
from roadassist.event_log import EventLog
from roadassist.events import CallEventType, event_type_of, to_push_message
from roadassist.fanout import EventFanout
from roadassist.models import WebhookEvent

log = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"

_KNOWN_EVENTS = {e.value for e in CallEventType}


def sign(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of *body*, as Bland sends it."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookIngress:
    def __init__(self, settings: Settings, event_log: EventLog, fanout: EventFanout):
        self.settings = settings
        self.event_log = event_log
        self.fanout = fanout

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """Raise IngestAuthError unless the body is authentic under the current policy."""
        secret = self.settings.webhook_secret
        if not secret:
            if self.settings.is_production:
                log.error("webhook_secret_missing")
                raise IngestAuthError("Missing signature or secret")
            log.warning("webhook_signature_skipped", reason="no secret configured")
            return

        if not signature:
            log.warning("webhook_signature_missing")
            raise IngestAuthError("Missing signature")

        # Header values arrive latin-1 decoded.
        expected = sign(secret, body).encode()
        if not hmac.compare_digest(expected, signature.strip().encode("latin-1", "replace")):
            log.warning("webhook_signature_mismatch")
            raise IngestAuthError("Invalid signature")

    @staticmethod
    def parse(body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise IngestMalformedError("Invalid JSON") from exc
        if not isinstance(payload, dict):
            raise IngestMalformedError("Payload must be a JSON object")
        call_id = payload.get("call_id")
        if not isinstance(call_id, str) or not call_id:
            raise IngestMalformedError("Missing call_id")
        return payload

    async def receive(self, body: bytes, signature: Optional[str]) -> Optional[WebhookEvent]:
        """
        Validate and accept one delivery.

        Raises IngestAuthError / IngestMalformedError before anything is
        stored. Once accepted, storage and push failures are logged and
        absorbed; a failed log write returns ``None``.
        """
        self.verify_signature(body, signature)
        return await self.accept(self.parse(body))

    async def accept(self, payload: dict[str, Any]) -> Optional[WebhookEvent]:
        """Record and publish an already-validated payload."""
        call_id = payload["call_id"]
        event_type = event_type_of(payload)
        log.info("webhook_received", call_id=call_id, event_type=event_type)
        if event_type not in _KNOWN_EVENTS:
            log.info("webhook_event_unrecognized", call_id=call_id, event_type=event_type)

        try:
            record = await self.event_log.append(call_id, event_type, payload)
        except Exception as exc:
            log.error("webhook_log_failed", call_id=call_id, error=repr(exc))
            return None

        try:
            delivered = await self.fanout.publish(to_push_message(record))
        except Exception as exc:
            log.error("webhook_publish_failed", call_id=call_id, seq=record.id, error=repr(exc))
        else:
            log.debug("webhook_published", call_id=call_id, seq=record.id, delivered=delivered)
        return record

"""
Error taxonomy for the call-sync pipeline.
"""

from __future__ import annotations

from typing import Optional


# ── Call setup (no call_id exists yet) ──────────────────────────
class CallSetupError(Exception):
    """Call initiation failed before the provider assigned a call id."""


class InvalidNumberError(CallSetupError):
    pass


class ProviderUnavailableError(CallSetupError):
    pass


class ProviderRejectedError(CallSetupError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


# ── Webhook ingest ──────────────────────────────────────────────
class IngestAuthError(Exception):
    """Signature missing or invalid while one is required."""


class IngestMalformedError(Exception):
    """Body is not a JSON object carrying a call_id."""


class UnknownCallError(LookupError):
    """Well-formed event for a call_id that no ticket tracks."""

    def __init__(self, call_id: str):
        super().__init__(f"No ticket tracks call {call_id}")
        self.call_id = call_id

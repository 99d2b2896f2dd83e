"""
Bland AI client for placing outbound roadside-assistance calls.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from roadassist.config import Settings
from roadassist.errors import ProviderRejectedError, ProviderUnavailableError
from roadassist.models import CallContext, CallInitResult, CallPhase
from roadassist.phone_utils import mask_phone, normalise_phone

log = structlog.get_logger(__name__)

# ── Demo defaults for missing context fields ────────────────────
DEFAULT_CONTEXT = CallContext(
    customer_name="Alex Johnson",
    location="Amsterdam, Netherlands",
    vehicle="BMW 3 Series (2020)",
    issue="Flat tire on highway A10",
    image_summary="Recent image shows flat rear right tire with visible damage to rim.",
    previous_issues=[
        "Engine warning light (Resolved Feb 2023)",
        "Battery replacement (Resolved Oct 2022)",
    ],
    last_service_date="March 15, 2023",
    membership="Premium Roadside Assistance",
)

ASSISTANCE_TASK_PROMPT = """You are the FormelD Road Assistance AI agent. A customer named {customer_name} with a {vehicle} has requested roadside assistance from {location}. They have reported the following issue: "{issue}".

This is what we know about the customer from their history:
Customer Name: {customer_name}
Previous Issues: {previous_issues}
Last Service Date: {last_service_date}
Membership Level: {membership}
Image Analysis Summary: {image_summary}

Introduce yourself as the FormelD Road Assistance AI. Acknowledge that you're speaking with {customer_name} and mention that you have access to their customer profile.

Briefly reference their membership level and recent service history to personalize the conversation. Then confirm their current location and the issue they're experiencing with their {vehicle}.

If their reported issue matches their image analysis summary, acknowledge this consistency. Ask them if there are any additional details about their situation they'd like to add.

Inform them that you are creating a ticket for their issue and will dispatch assistance to their location.

Estimate an arrival time of 30-45 minutes for assistance. Ask if they require any immediate emergency services (like police or ambulance). If they do, advise them to hang up and call emergency services directly.

Before ending the call, summarize the information collected and confirm the next steps. Provide a ticket number (use a random 6-digit number) for reference and let them know they will receive updates via SMS.

Thank them for using FormelD Road Assistance and end the call politely."""


def resolve_context(context: Optional[CallContext]) -> CallContext:
    """Fill missing context fields from the demo defaults."""
    provided = context.model_dump(exclude_none=True) if context else {}
    return DEFAULT_CONTEXT.model_copy(update=provided)


def build_task(context: CallContext) -> str:
    return ASSISTANCE_TASK_PROMPT.format(
        customer_name=context.customer_name,
        vehicle=context.vehicle,
        location=context.location,
        issue=context.issue,
        previous_issues=", ".join(context.previous_issues or []),
        last_service_date=context.last_service_date,
        membership=context.membership,
        image_summary=context.image_summary,
    )


class BlandClient:
    """Async client for the Bland AI outbound call API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.bland_base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {settings.bland_api_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.settings.call_timeout_seconds,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    @property
    def webhook_url(self) -> str:
        return f"{self.settings.webhook_base_url.rstrip('/')}/webhook"

    def build_payload(self, phone_e164: str, context: CallContext) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "phone_number": phone_e164,
            "task": build_task(context),
            "voice": self.settings.bland_voice,
            "wait_for_greeting": False,
            "record": True,
            "amd": False,
            "answered_by_enabled": False,
            "noise_cancellation": False,
            "interruption_threshold": 100,
            "block_interruptions": False,
            "max_duration": self.settings.bland_max_duration_minutes,
            "model": "base",
            "language": "en",
            "background_track": "none",
            "voicemail_action": "hangup",
            "json_mode_enabled": False,
            "webhook": self.webhook_url,
            "metadata": context.model_dump(exclude_none=True),
        }
        if self.settings.stream_url:
            payload["stream_url"] = self.settings.stream_url
        return payload

    # ── Outbound calls ──────────────────────────────────────────

    async def initiate_call(
        self, destination: str, context: Optional[CallContext] = None
    ) -> CallInitResult:
        """
        Place an outbound call.

        Raises InvalidNumberError before any request is sent,
        ProviderUnavailableError when Bland cannot be reached, and
        ProviderRejectedError on a non-2xx answer (raw body attached).
        """
        phone_e164 = normalise_phone(destination, self.settings.default_region)

        if not self.settings.bland_api_key:
            raise ProviderUnavailableError("Bland API key not configured")

        resolved = resolve_context(context)
        payload = self.build_payload(phone_e164, resolved)
        client = await self._client()

        log.info(
            "placing_call",
            phone=mask_phone(phone_e164),
            customer=resolved.customer_name,
            webhook=self.webhook_url,
        )

        try:
            resp = await client.post("/v1/calls", json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = exc.response.text
            log.error("call_rejected", status=exc.response.status_code, body=body[:500])
            raise ProviderRejectedError(
                f"API responded with status {exc.response.status_code}: {body}",
                status_code=exc.response.status_code,
                body=body,
            ) from exc
        except httpx.HTTPError as exc:
            log.error("call_provider_unreachable", error=repr(exc))
            raise ProviderUnavailableError(f"No response received from Bland AI: {exc!r}") from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderRejectedError(
                "Bland AI returned a non-JSON body", status_code=resp.status_code, body=resp.text
            ) from exc
        call_id = data.get("call_id") if isinstance(data, dict) else None
        if not call_id:
            raise ProviderRejectedError(
                "Bland AI response carried no call_id", status_code=resp.status_code, body=resp.text
            )

        log.info("call_placed", call_id=call_id, status=data.get("status"))
        return CallInitResult(
            call_id=call_id,
            initial_phase=CallPhase.INITIATED,
            provider_status=str(data.get("status", "")),
        )

    async def get_call(self, call_id: str) -> dict:
        """Fetch call details from Bland AI."""
        client = await self._client()
        resp = await client.get(f"/v1/calls/{call_id}")
        resp.raise_for_status()
        return resp.json()


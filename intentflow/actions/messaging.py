"""Outbound actions: transactional email and webhooks over HTTP."""

from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from ..errors import ActionFailure
from ..utils.clock import utcnow
from .base import ActionContext, ActionType, BaseAction

logger = logging.getLogger(__name__)


class SendEmailAction(BaseAction):
    """Send through the configured email API, or record the email as queued."""

    action_type = ActionType.SEND_EMAIL
    required_fields = ("to",)

    async def execute(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        settings = ctx.settings
        to = config["to"]
        subject = config.get("subject") or ""
        if not settings.email_api_key:
            logger.info(f"Email delivery not configured, queued email to {to}")
            return {
                "action": "email_queued",
                "to": to,
                "subject": subject,
                "note": "Email delivery not configured",
            }

        business_name = ctx.run.context.get("business", {}).get("name")
        from_name = config.get("from_name") or settings.default_sender_name or business_name or "Notification"
        from_email = config.get("from_email") or settings.default_sender_email
        try:
            response = await ctx.http_client.post(
                settings.email_api_url,
                headers={"Authorization": f"Bearer {settings.email_api_key}"},
                json={
                    "from": f"{from_name} <{from_email}>",
                    "to": [to],
                    "subject": subject,
                    "html": config.get("body") or config.get("html") or "",
                },
                timeout=settings.webhook_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise ActionFailure(f"Email request failed: {exc}") from exc

        if response.is_error:
            raise ActionFailure(
                f"Email API returned {response.status_code}: {response.text}"
            )
        return {
            "action": "email_sent",
            "email_id": response.json().get("id"),
            "to": to,
            "subject": subject,
        }


class WebhookAction(BaseAction):
    action_type = ActionType.WEBHOOK
    required_fields = ("url",)

    async def execute(self, config: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
        url = config["url"]
        method = (config.get("method") or "POST").upper()
        body = {
            **(config.get("payload") or {}),
            "context": ctx.run.context,
            "timestamp": utcnow().isoformat(),
        }
        try:
            response = await ctx.http_client.request(
                method,
                url,
                headers=config.get("headers") or {},
                json=body if method not in ("GET", "HEAD") else None,
                timeout=ctx.settings.webhook_timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ActionFailure(f"Webhook {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise ActionFailure(f"Webhook {url} failed: {exc}") from exc

        if response.is_error:
            raise ActionFailure(f"Webhook {url} returned {response.status_code}")
        return {
            "action": "webhook_called",
            "url": url,
            "status": response.status_code,
            "success": True,
        }

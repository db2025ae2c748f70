from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Sequence

from stepflow.logging import get_logger
from stepflow.service.activity import ActivityStore
from stepflow.service.email import EmailService

logger = get_logger(__name__)


@dataclass
class NotificationOutcome:
    site_sent: bool = False
    email_sent: bool = False
    site_error: Optional[str] = None
    email_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "siteSent": self.site_sent,
            "emailSent": self.email_sent,
            "siteError": self.site_error,
            "emailError": self.email_error,
        }


class NotificationService:
    """Delivers notification nodes to the site feed and/or email."""

    def __init__(self, email: EmailService, activity: ActivityStore) -> None:
        self.email = email
        self.activity = activity

    async def send(
        self,
        *,
        channel: str,
        subject: str,
        content: str,
        recipients: Sequence[str],
        tenant_id: Optional[str],
        agent_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> NotificationOutcome:
        outcome = NotificationOutcome()
        if channel in ("site", "both"):
            if tenant_id:
                self.activity.append(
                    tenant_id,
                    "notifications",
                    content,
                    title=subject,
                    agent_id=agent_id,
                    run_id=run_id,
                )
                outcome.site_sent = True
            else:
                outcome.site_error = "no tenant for site notification"

        if channel in ("email", "both"):
            outcome.email_sent, outcome.email_error = await self._send_email(
                list(recipients), subject, content
            )

        logger.info(
            "notification_delivered",
            channel=channel,
            site_sent=outcome.site_sent,
            email_sent=outcome.email_sent,
            run_id=run_id,
        )
        return outcome

    async def _send_email(
        self, recipients: List[str], subject: str, content: str
    ) -> tuple[bool, Optional[str]]:
        if not self.email.is_configured:
            return False, "email not configured"
        if not recipients:
            return False, "no email recipients"
        sent = await asyncio.to_thread(
            self.email.send_notification, recipients, subject, content
        )
        return (True, None) if sent else (False, "email delivery failed")

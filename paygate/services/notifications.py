"""User notifications — in-app rows plus optional email via Resend.

Fire-and-forget: a failed notification is logged and never fails the
operation that triggered it.
"""

import asyncio
import logging

import resend
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.models import Notification

logger = logging.getLogger(__name__)


class NotificationSink:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        resend_api_key: str = "",
        email_from: str = "",
    ):
        self._sessions = session_factory
        self._email_enabled = bool(resend_api_key)
        self._email_from = email_from
        if resend_api_key:
            resend.api_key = resend_api_key

    async def notify(
        self,
        profile_id: int,
        title: str,
        message: str,
        *,
        email: str | None = None,
        kind: str = "PAYMENT",
    ) -> bool:
        """Store an in-app notification and optionally email it. Returns True if stored."""
        stored = False
        try:
            async with self._sessions() as db:
                db.add(Notification(profile_id=profile_id, type=kind, title=title, message=message))
                await db.commit()
            stored = True
        except SQLAlchemyError as e:
            logger.error("Failed to store notification for profile %s: %s", profile_id, e)

        if email and self._email_enabled:
            await self._send_email(email, title, message)
        return stored

    async def _send_email(self, to_email: str, subject: str, body: str) -> bool:
        try:
            await asyncio.to_thread(
                resend.Emails.send,
                {
                    "from": self._email_from,
                    "to": [to_email],
                    "subject": subject,
                    "text": body,
                },
            )
        except Exception as e:
            logger.error("Failed to send notification email: %s", e)
            return False
        return True

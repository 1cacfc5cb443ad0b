# app/services/notification_service.py
import logging
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Push / email / SMS delivery through HTTP gateways.

    Every send returns True on success and False on failure; nothing raises.
    A channel without a configured gateway URL is logged and counted as sent.
    """

    def __init__(
        self,
        push_url: Optional[str] = None,
        email_url: Optional[str] = None,
        sms_url: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.push_url = push_url
        self.email_url = email_url
        self.sms_url = sms_url
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls) -> "NotificationDispatcher":
        return cls(
            push_url=settings.PUSH_GATEWAY_URL,
            email_url=settings.EMAIL_GATEWAY_URL,
            sms_url=settings.SMS_GATEWAY_URL,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )

    async def _post(self, channel: str, url: Optional[str], body: Dict[str, Any]) -> bool:
        if not url:
            logger.info("%s notification prepared (no gateway configured) for user %s", channel, body.get("userId"))
            return True
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body)
            response.raise_for_status()
            logger.info("%s notification sent for user %s", channel, body.get("userId"))
            return True
        except httpx.HTTPStatusError as e:
            logger.error("HTTP error from %s gateway: %s - %s", channel, e.response.status_code, e.response.text)
            return False
        except httpx.RequestError as e:
            logger.error("Request error calling %s gateway: %s", channel, e)
            return False

    async def send_push(self, user_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return await self._post("Push", self.push_url, {
            "userId": str(user_id),
            "title": title,
            "body": body,
            "data": data or {},
        })

    async def send_email(self, user_id: str, subject: str, text: str, html: Optional[str] = None) -> bool:
        return await self._post("Email", self.email_url, {
            "userId": str(user_id),
            "subject": subject,
            "text": text,
            "html": html or f"<p>{text}</p>",
        })

    async def send_sms(self, user_id: str, message: str) -> bool:
        return await self._post("SMS", self.sms_url, {"userId": str(user_id), "message": message})

import logging
from datetime import datetime, timezone

import aiohttp

from . import config
from .retry import retry_async

logger = logging.getLogger("personabot.tracking")


class ConversionTracker:
    """Downstream purchase events (ad network postback + admin ping)."""

    def __init__(self, url: str | None = None, notifier=None, admin_chat_id: int | None = None,
                 timeout_secs: float = 10):
        self.url = config.CONVERSION_WEBHOOK_URL if url is None else url
        self.notifier = notifier
        self.admin_chat_id = config.ADMIN_CHAT_ID if admin_chat_id is None else admin_chat_id
        self.timeout = aiohttp.ClientTimeout(total=timeout_secs)

    def build_event(self, session_id: int, plan, payment) -> dict:
        return {
            "event": "purchase",
            "event_id": payment.id,
            "session_id": str(session_id),
            "plan_id": plan.id,
            "value": str(payment.amount if payment.amount is not None else plan.price_amount),
            "currency": config.PAYMENT_CURRENCY,
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    async def _post(self, event: dict):
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.url, json=event) as response:
                response.raise_for_status()

    async def track_purchase(self, session_id: int, plan, payment) -> bool:
        event = self.build_event(session_id, plan, payment)
        ok = True
        if self.url:
            try:
                await retry_async(lambda: self._post(event), label='conversion')
                logger.info(f"Conversion sent: payment={payment.id} session={session_id}")
            except Exception as e:
                ok = False
                logger.warning(f"Conversion post error for payment {payment.id}: {e}")
        if self.notifier and config.NOTIFY_ADMIN_ON_PURCHASE:
            await self.notifier.notify_admin(
                self.admin_chat_id,
                f"💰 {session_id} paid {event['value']} {event['currency']} ({plan.id}), payment {payment.id}"
            )
        return ok

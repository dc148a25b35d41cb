"""YooKassa adapter: checkout creation and authoritative payment lookups.

The SDK is synchronous (``requests``), so each call runs in a worker thread
and is wrapped in :func:`retry_async`.
"""
import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from yookassa import Configuration, Payment as YKPayment
from yookassa.invoice import Invoice as YKInvoice

from . import config
from .errors import ProviderError
from .retry import retry_async, status_of

logger = logging.getLogger("personabot.yookassa")

META_SESSION = 'telegram_user_id'
META_PLAN = 'plan_id'
META_CHECKOUT = 'checkout_id'


class PaymentStatus(str, enum.Enum):
    APPROVED = 'approved'
    PENDING = 'pending'
    FAILED = 'failed'


_STATUS_MAP = {
    'succeeded': PaymentStatus.APPROVED,
    'pending': PaymentStatus.PENDING,
    'waiting_for_capture': PaymentStatus.PENDING,
    'canceled': PaymentStatus.FAILED,
}


@dataclass
class Checkout:
    checkout_id: str
    pay_url: str
    reused: bool = False


@dataclass
class ProviderPayment:
    id: str
    status: PaymentStatus
    amount: Optional[Decimal] = None
    correlation_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    checkout_id: Optional[str] = None

    @property
    def plan_id(self) -> Optional[str]:
        return self.metadata.get(META_PLAN)


@dataclass
class ProviderOrder:
    id: str
    payment_ids: list = field(default_factory=list)


def configure(account_id: str | None = None, secret_key: str | None = None) -> bool:
    account_id = account_id or config.YOOKASSA_ACCOUNT_ID
    secret_key = secret_key or config.YOOKASSA_SECRET_KEY
    if not (account_id and secret_key):
        logger.warning("YooKassa credentials missing, checkout disabled")
        return False
    Configuration.configure(account_id, secret_key, timeout=config.YOOKASSA_TIMEOUT_MS)
    logger.info('YooKassa SDK configured')
    return True


def normalize_status(raw: str | None) -> PaymentStatus:
    return _STATUS_MAP.get((raw or '').lower(), PaymentStatus.PENDING)


def payment_from_response(obj) -> ProviderPayment:
    meta = dict(getattr(obj, 'metadata', None) or {})
    amount = getattr(obj, 'amount', None)
    value = getattr(amount, 'value', None)
    pid = str(obj.id)
    return ProviderPayment(
        id=pid,
        status=normalize_status(getattr(obj, 'status', None)),
        amount=Decimal(str(value)) if value is not None else None,
        correlation_id=meta.get(META_SESSION),
        metadata=meta,
        # redirect payments are their own checkout; invoice payments carry the invoice id
        checkout_id=meta.get(META_CHECKOUT) or pid,
    )


class YooKassaGateway:
    def __init__(self, return_url: str | None = None, currency: str | None = None,
                 attempts: int | None = None):
        self.return_url = return_url or config.YOOKASSA_RETURN_URL
        self.currency = currency or config.PAYMENT_CURRENCY
        self.attempts = attempts

    async def _call(self, label: str, fn, *args):
        async def once():
            return await asyncio.to_thread(fn, *args)
        try:
            return await retry_async(once, attempts=self.attempts, label=label)
        except Exception as e:
            raise ProviderError(f"{label}: {e}", status=status_of(e)) from e

    def _checkout_payload(self, plan, correlation_id: str) -> dict:
        payload = {
            "amount": {"value": plan.price_str, "currency": self.currency},
            "confirmation": {"type": "redirect", "return_url": self.return_url},
            "capture": True,
            "description": plan.title,
            "metadata": {META_SESSION: str(correlation_id), META_PLAN: plan.id},
        }
        if config.RECEIPT_EMAIL:
            payload["receipt"] = {
                "items": [{
                    "description": plan.title,
                    "quantity": "1.0",
                    "amount": {"value": plan.price_str, "currency": self.currency},
                    "vat_code": config.VAT_CODE,
                    "payment_mode": "full_payment",
                    "payment_subject": "service",
                }],
                "tax_system_code": config.TAX_SYSTEM_CODE,
                "customer": {"email": config.RECEIPT_EMAIL},
            }
        return payload

    async def create_checkout(self, plan, correlation_id: str) -> Checkout:
        payload = self._checkout_payload(plan, correlation_id)
        # one idempotence key for all retries of this checkout
        idem = str(uuid.uuid4())
        payment = await self._call('create_checkout', YKPayment.create, payload, idem)
        url = getattr(getattr(payment, 'confirmation', None), 'confirmation_url', None)
        if not url:
            raise ProviderError(f"create_checkout: no confirmation url for payment {payment.id}")
        logger.info(f"YooKassa payment created: id={payment.id} session={correlation_id} plan={plan.id}")
        return Checkout(checkout_id=str(payment.id), pay_url=url)

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        obj = await self._call('get_payment', YKPayment.find_one, payment_id)
        return payment_from_response(obj)

    async def get_order(self, order_id: str) -> ProviderOrder:
        inv = await self._call('get_order', YKInvoice.find_one, order_id)
        ids = []
        details = getattr(inv, 'payment_details', None)
        pay_id = getattr(details, 'id', None) if details is not None else None
        if pay_id:
            ids.append(str(pay_id))
        return ProviderOrder(id=str(order_id), payment_ids=ids)

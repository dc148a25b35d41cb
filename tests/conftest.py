import asyncio
import itertools
from decimal import Decimal

import pytest

from personabot.checkout import CheckoutIssuer
from personabot.errors import ProviderError
from personabot.gate import KeywordClassifier, UsageGate
from personabot.janitor import Janitor
from personabot.plans import PlanCatalog
from personabot.reconciler import PaymentReconciler
from personabot.store import SessionStore
from personabot.yookassa_gateway import Checkout, PaymentStatus, ProviderOrder, ProviderPayment

T0 = 1_760_000_000_000
HOUR_MS = 60 * 60 * 1000


class FakeClock:
    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeGateway:
    """In-memory provider: checkouts get ids C1, C2, ...; payments/orders are seeded by tests."""

    def __init__(self):
        self.created = []
        self.fetched = []
        self.payments: dict[str, ProviderPayment] = {}
        self.orders: dict[str, ProviderOrder] = {}
        self.fail_create = False
        self._ids = itertools.count(1)

    async def create_checkout(self, plan, correlation_id: str) -> Checkout:
        self.created.append((plan.id, correlation_id))
        await asyncio.sleep(0)
        if self.fail_create:
            raise ProviderError("provider down", status=503)
        cid = f"C{next(self._ids)}"
        return Checkout(checkout_id=cid, pay_url=f"https://pay.example/{cid}")

    def add_payment(self, payment_id, status=PaymentStatus.APPROVED, session_id=None, plan_id='p12h',
                    checkout_id=None, amount='49.90'):
        meta = {}
        if session_id is not None:
            meta['telegram_user_id'] = str(session_id)
        if plan_id:
            meta['plan_id'] = plan_id
        self.payments[payment_id] = ProviderPayment(
            id=payment_id,
            status=status,
            amount=Decimal(amount),
            correlation_id=meta.get('telegram_user_id'),
            metadata=meta,
            checkout_id=checkout_id or payment_id,
        )
        return self.payments[payment_id]

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        self.fetched.append(payment_id)
        await asyncio.sleep(0)
        if payment_id not in self.payments:
            raise ProviderError(f"payment {payment_id} not found", status=404)
        return self.payments[payment_id]

    async def get_order(self, order_id: str) -> ProviderOrder:
        await asyncio.sleep(0)
        if order_id not in self.orders:
            raise ProviderError(f"order {order_id} not found", status=404)
        return self.orders[order_id]


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.admin = []

    async def notify(self, session_id, text, **kwargs):
        self.sent.append((session_id, text))

    async def notify_admin(self, admin_chat_id, text):
        self.admin.append((admin_chat_id, text))


class FakeTracker:
    def __init__(self):
        self.events = []

    async def track_purchase(self, session_id, plan, payment):
        self.events.append((session_id, plan.id, payment.id))
        return True


class FakeLLM:
    def __init__(self, answer='oi, amor'):
        self.answer = answer
        self.calls = []

    async def generate_reply(self, session_id, window, user_text):
        self.calls.append((session_id, list(window), user_text))
        return self.answer


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return SessionStore(clock=clock)


@pytest.fixture
def catalog():
    return PlanCatalog(default_id='p12h')


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def issuer(store, gateway, catalog):
    return CheckoutIssuer(store, gateway, catalog, cooldown_ms=30_000)


@pytest.fixture
def reconciler(store, gateway, catalog, notifier, tracker):
    return PaymentReconciler(store, gateway, catalog, notifier=notifier, tracker=tracker)


@pytest.fixture
def gate(store, catalog):
    return UsageGate(
        store, catalog,
        escalation=KeywordClassifier(['foto', 'safada']),
        upsell=KeywordClassifier(['exclusiv']),
        threshold=3,
        band=(100, 200),
        lookback=3,
    )


@pytest.fixture
def janitor(store):
    return Janitor(store, ttl_ms=HOUR_MS, interval_ms=60_000)

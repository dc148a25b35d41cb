"""Provider webhook → entitlement grant, exactly once per approved payment.

The callback payload is only a trigger: status always comes from a fresh
provider lookup. A payment is tied to a session only through the correlation
id written into its metadata at checkout time, or through the pending
checkout record keyed by the provider's checkout id.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Optional

from .errors import ProviderError
from .plans import PlanCatalog
from .store import SessionStore
from .yookassa_gateway import PaymentStatus

logger = logging.getLogger("personabot.reconciler")

KIND_PAYMENT = 'payment'
KIND_ORDER = 'order'
_ORDER_TOPICS = ('order', 'merchant_order', 'invoice')

SUCCESS_TEXT = "Pagamento confirmado 💋 Agora sou toda sua até {until}."
FAILED_TEXT = "O pagamento não foi concluído. Se quiser, é só escolher um plano de novo."


class Outcome(str, enum.Enum):
    GRANTED = 'granted'
    DUPLICATE = 'duplicate'
    PENDING = 'pending'
    FAILED = 'failed'
    DROPPED = 'dropped'
    IGNORED = 'ignored'


@dataclass
class Notification:
    kind: str
    object_id: str


def _kind_of(topic: str | None) -> str:
    topic = (topic or '').lower()
    head = topic.split('.', 1)[0]
    return KIND_ORDER if head in _ORDER_TOPICS else KIND_PAYMENT


def parse_notification(body: Mapping | None, query: Mapping | None = None) -> Optional[Notification]:
    """Pull (kind, id) out of a webhook body or its query string.

    Accepts YooKassa notifications ``{"event": "payment.succeeded",
    "object": {"id": ...}}``, ``{"type": "payment", "data": {"id": ...}}`` and
    query parameters ``id`` / ``data.id`` with ``topic`` / ``type``.
    """
    body = body if isinstance(body, Mapping) else {}
    query = query or {}

    obj = body.get('object')
    if isinstance(obj, Mapping) and obj.get('id'):
        return Notification(_kind_of(body.get('event')), str(obj['id']))

    data = body.get('data')
    if isinstance(data, Mapping) and data.get('id'):
        return Notification(_kind_of(body.get('type') or body.get('topic') or body.get('action')), str(data['id']))

    if body.get('id') and (body.get('topic') or body.get('type')):
        return Notification(_kind_of(body.get('topic') or body.get('type')), str(body['id']))

    qid = query.get('data.id') or query.get('id')
    if qid:
        return Notification(_kind_of(query.get('topic') or query.get('type')), str(qid))
    return None


def _as_session_id(raw) -> Optional[int]:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        return None


class PaymentReconciler:
    def __init__(self, store: SessionStore, gateway, catalog: PlanCatalog,
                 notifier=None, tracker=None):
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.notifier = notifier
        self.tracker = tracker

    async def handle_notification(self, body: Mapping | None, query: Mapping | None = None) -> list[Outcome]:
        note = parse_notification(body, query)
        if note is None:
            logger.warning(f"Payment webhook without object id: body={body!r} query={dict(query or {})!r}")
            return [Outcome.IGNORED]
        logger.info(f"Payment webhook: {note.kind} {note.object_id}")
        if note.kind == KIND_ORDER:
            return await self.reconcile_order(note.object_id)
        return [await self.reconcile_payment(note.object_id)]

    async def reconcile_order(self, order_id: str) -> list[Outcome]:
        try:
            order = await self.gateway.get_order(order_id)
        except ProviderError as e:
            logger.warning(f"Order {order_id} fetch failed, dropping: {e}")
            return [Outcome.DROPPED]
        outcomes = []
        for payment_id in order.payment_ids:
            outcome = await self.reconcile_payment(payment_id, order_id=order_id)
            outcomes.append(outcome)
            if outcome is Outcome.GRANTED:
                break
        if not outcomes:
            logger.info(f"Order {order_id} has no payments yet")
            outcomes.append(Outcome.PENDING)
        return outcomes

    def resolve(self, payment, order_id: str | None = None):
        """Return ``(session_id, plan_id, pending_record)`` or ``(None, None, None)``."""
        pending = self.store.find_pending(payment.checkout_id) or self.store.find_pending(order_id)
        session_id = _as_session_id(payment.correlation_id) if payment.correlation_id else None

        if session_id is not None:
            if pending is not None and pending.session_id != session_id:
                logger.warning(
                    f"Payment {payment.id}: correlation {session_id} disagrees with pending "
                    f"{pending.checkout_id} of {pending.session_id}; using correlation id"
                )
                pending = None
            plan_id = payment.plan_id or (pending.plan_id if pending else None)
            return session_id, plan_id, pending

        if pending is not None:
            return pending.session_id, payment.plan_id or pending.plan_id, pending
        return None, None, None

    async def reconcile_payment(self, payment_id: str, order_id: str | None = None) -> Outcome:
        try:
            payment = await self.gateway.get_payment(payment_id)
        except ProviderError as e:
            logger.warning(f"Payment {payment_id} fetch failed, dropping: {e}")
            return Outcome.DROPPED

        session_id, plan_id, pending = self.resolve(payment, order_id)
        if session_id is None:
            logger.warning(f"Payment {payment.id}: no correlation id and no pending record, dropping")
            return Outcome.DROPPED

        if payment.status is PaymentStatus.APPROVED:
            return await self._approve(payment, session_id, plan_id, pending, order_id)
        if payment.status is PaymentStatus.FAILED:
            return await self._fail(payment, session_id, pending)
        logger.info(f"Payment {payment.id} for {session_id} still pending")
        return Outcome.PENDING

    async def _approve(self, payment, session_id: int, plan_id, pending, order_id) -> Outcome:
        plan = self.catalog.get_plan(plan_id)
        checkout_ids = [payment.checkout_id, order_id]
        if pending is not None:
            checkout_ids.append(pending.checkout_id)
        st = await self.store.grant_once(payment.id, session_id, plan, checkout_ids)
        if st is None:
            logger.info(f"Payment {payment.id} already processed, not re-granting")
            await self._track(session_id, plan, payment)
            return Outcome.DUPLICATE
        logger.info(f"Payment {payment.id}: {session_id} premium ({plan.id}) until {st.entitlement_expiry}")

        if self.notifier:
            try:
                until = _fmt_ms(st.entitlement_expiry)
                await self.notifier.notify(session_id, SUCCESS_TEXT.format(until=until))
            except Exception as e:
                logger.warning(f"Success notify error for {session_id}: {e}")
        await self._track(session_id, plan, payment)
        return Outcome.GRANTED

    async def _track(self, session_id: int, plan, payment):
        if not self.tracker:
            return
        if not await self.store.claim_event(payment.id):
            return
        try:
            await self.tracker.track_purchase(session_id, plan, payment)
        except Exception as e:
            logger.warning(f"Conversion tracking error for {payment.id}: {e}")

    async def _fail(self, payment, session_id: int, pending) -> Outcome:
        dropped = None
        for cid in (payment.checkout_id, pending.checkout_id if pending else None):
            if cid:
                dropped = await self.store.drop_pending(cid, session_id) or dropped
        logger.info(f"Payment {payment.id} for {session_id} failed; pending dropped={bool(dropped)}")
        # only the delivery that actually dropped the record tells the user
        if dropped is not None and self.notifier:
            try:
                await self.notifier.notify(session_id, FAILED_TEXT)
            except Exception as e:
                logger.warning(f"Failure notify error for {session_id}: {e}")
        return Outcome.FAILED


def _fmt_ms(ms: int | None) -> str:
    if not ms:
        return '-'
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime('%d/%m/%Y %H:%M UTC')

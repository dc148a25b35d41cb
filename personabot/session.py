"""Per-conversation state and the session state machine.

Every mutation of entitlement, pending-checkout and counter fields goes
through :func:`transition`. The gate, the checkout issuer, the reconciler and
the janitor only emit events; none of them edit those fields inline.

    FREE --(escalation / upsell / expiry)--> AWAITING_PAYMENT
    AWAITING_PAYMENT --(approved payment)--> PREMIUM
    PREMIUM --(lazy expiry)--> AWAITING_PAYMENT

``PAYMENT_APPROVED`` is the only event that yields PREMIUM and is emitted
only by the payment reconciler.
"""
import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from . import config

logger = logging.getLogger("personabot.session")


class SessionState(str, enum.Enum):
    FREE = 'free'
    AWAITING_PAYMENT = 'awaiting_payment'
    PREMIUM = 'premium'


class Event(str, enum.Enum):
    EXPIRE = 'expire'
    PAYWALL = 'paywall'
    CHECKOUT_ISSUED = 'checkout_issued'
    CHECKOUT_CLEARED = 'checkout_cleared'
    PAYMENT_APPROVED = 'payment_approved'
    MESSAGE = 'message'
    RESET = 'reset'


@dataclass
class PendingCheckout:
    checkout_id: str
    session_id: int
    plan_id: str
    created_at: int
    pay_url: str = ''

    def to_row(self) -> list:
        return [self.checkout_id, self.session_id, self.plan_id, self.created_at, self.pay_url]


@dataclass
class Session:
    session_id: int
    entitlement_expiry: Optional[int] = None
    entitled_plan_id: Optional[str] = None
    pending_checkout: Optional[PendingCheckout] = None
    awaiting_payment: bool = False
    message_count: int = 0
    escalation_counter: int = 0
    last_checkout_issued_at: Optional[int] = None
    conversation_window: deque = field(default_factory=lambda: deque(maxlen=config.HISTORY_WINDOW))

    def is_entitled(self, now: int) -> bool:
        return self.entitlement_expiry is not None and now < self.entitlement_expiry

    def state(self, now: int) -> SessionState:
        if self.is_entitled(now):
            return SessionState.PREMIUM
        if self.entitlement_expiry is not None or self.awaiting_payment or self.pending_checkout:
            return SessionState.AWAITING_PAYMENT
        return SessionState.FREE

    def remember(self, role: str, text: str):
        self.conversation_window.append((role, text))

    def recent_user_texts(self, limit: int) -> list[str]:
        texts = [t for r, t in self.conversation_window if r == 'user']
        return texts[-limit:] if limit > 0 else []

    def entitlement_row(self) -> list:
        return [self.session_id, self.entitlement_expiry or '', self.entitled_plan_id or '']


def transition(session: Session, event: Event, now: int, *, plan=None,
               pending: PendingCheckout | None = None, escalated: bool = False) -> SessionState:
    """Apply ``event`` to ``session`` and return the resulting state."""
    before = session.state(now)

    if event is Event.EXPIRE:
        if session.entitlement_expiry is not None and session.entitlement_expiry <= now:
            session.entitlement_expiry = None
            session.entitled_plan_id = None
            session.awaiting_payment = True

    elif event is Event.PAYWALL:
        session.awaiting_payment = True
        session.escalation_counter = 0

    elif event is Event.CHECKOUT_ISSUED:
        if pending is None:
            raise ValueError("CHECKOUT_ISSUED requires a pending checkout")
        session.pending_checkout = pending
        session.last_checkout_issued_at = now
        session.awaiting_payment = True

    elif event is Event.CHECKOUT_CLEARED:
        session.pending_checkout = None
        session.last_checkout_issued_at = None

    elif event is Event.PAYMENT_APPROVED:
        if plan is None:
            raise ValueError("PAYMENT_APPROVED requires a plan")
        # a new payment on top of a live entitlement extends it, never shortens it
        base = session.entitlement_expiry if session.is_entitled(now) else now
        session.entitlement_expiry = base + plan.duration_ms
        session.entitled_plan_id = plan.id
        session.pending_checkout = None
        session.last_checkout_issued_at = None
        session.escalation_counter = 0
        session.message_count = 0
        session.awaiting_payment = False

    elif event is Event.MESSAGE:
        session.message_count += 1
        if escalated:
            session.escalation_counter += 1

    elif event is Event.RESET:
        session.message_count = 0
        session.escalation_counter = 0
        session.awaiting_payment = False

    after = session.state(now)
    if after is not before:
        logger.info(f"session {session.session_id}: {before.value} -> {after.value} ({event.value})")
    return after

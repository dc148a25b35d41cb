import logging
from dataclasses import dataclass

from . import config
from .plans import CAP_MEDIA, PlanCatalog
from .session import Event, SessionState, transition
from .store import SessionStore

logger = logging.getLogger("personabot.gate")

REASON_PREMIUM = 'premium'
REASON_EXPIRED = 'expired'
REASON_PENDING = 'pending'
REASON_AWAITING = 'awaiting'
REASON_ESCALATION = 'escalation'
REASON_UPSELL = 'upsell'
REASON_FREE = 'free'


class KeywordClassifier:
    """Case-insensitive substring matcher."""

    def __init__(self, keywords):
        self.keywords = [k.strip().lower() for k in keywords if k and k.strip()]

    def matches(self, text: str | None) -> bool:
        t = (text or '').lower()
        return any(k in t for k in self.keywords)

    def matches_any(self, texts) -> bool:
        return any(self.matches(t) for t in texts)


@dataclass
class GateDecision:
    allow: bool
    state: SessionState
    reason: str
    media_allowed: bool = False

    @property
    def paywall(self) -> bool:
        return not self.allow


class UsageGate:
    """Decides, once per inbound message, between a normal reply and the paywall."""

    def __init__(self, store: SessionStore, catalog: PlanCatalog,
                 escalation: KeywordClassifier | None = None,
                 upsell: KeywordClassifier | None = None,
                 threshold: int | None = None,
                 band: tuple | None = None,
                 lookback: int | None = None):
        self.store = store
        self.catalog = catalog
        self.escalation = escalation or KeywordClassifier(config.ESCALATION_KEYWORDS)
        self.upsell = upsell or KeywordClassifier(config.UPSELL_KEYWORDS)
        self.threshold = config.ESCALATION_THRESHOLD if threshold is None else threshold
        self.band = band or (config.UPSELL_BAND_MIN, config.UPSELL_BAND_MAX)
        self.lookback = config.UPSELL_LOOKBACK if lookback is None else lookback

    async def evaluate(self, session_id: int, text: str) -> GateDecision:
        just_expired = await self.store.expire_if_due(session_id)

        async with self.store.locked():
            now = self.store.now()
            st = self.store.session(session_id)

            # a grant may have landed between the expiry check and here
            if st.is_entitled(now):
                plan = self.catalog.get_plan(st.entitled_plan_id)
                return GateDecision(True, SessionState.PREMIUM, REASON_PREMIUM,
                                    media_allowed=plan.has(CAP_MEDIA))

            if just_expired:
                return GateDecision(False, SessionState.AWAITING_PAYMENT, REASON_EXPIRED)
            if st.pending_checkout is not None:
                return GateDecision(False, SessionState.AWAITING_PAYMENT, REASON_PENDING)
            if st.awaiting_payment:
                return GateDecision(False, SessionState.AWAITING_PAYMENT, REASON_AWAITING)

            transition(st, Event.MESSAGE, now, escalated=self.escalation.matches(text))

            reason = None
            if self.threshold > 0 and st.escalation_counter >= self.threshold:
                reason = REASON_ESCALATION
            else:
                lo, hi = self.band
                recent = st.recent_user_texts(self.lookback - 1) + [text]
                if lo <= st.message_count <= hi and self.upsell.matches_any(recent):
                    reason = REASON_UPSELL

            if reason is not None:
                logger.info(
                    f"session {session_id}: paywall ({reason}) at message {st.message_count}, "
                    f"escalation={st.escalation_counter}"
                )
                state = transition(st, Event.PAYWALL, now)
                return GateDecision(False, state, reason)

            return GateDecision(True, SessionState.FREE, REASON_FREE)

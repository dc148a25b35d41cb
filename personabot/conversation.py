import logging
import random
from dataclasses import dataclass, field

from . import config
from .gate import (
    REASON_AWAITING, REASON_ESCALATION, REASON_EXPIRED, REASON_PENDING, REASON_UPSELL,
    KeywordClassifier, UsageGate,
)
from .plans import CAP_MEDIA, PlanCatalog
from .session import SessionState
from .store import SessionStore

logger = logging.getLogger("personabot.conversation")

KIND_REPLY = 'reply'
KIND_PAYWALL = 'paywall'
KIND_UPGRADE = 'upgrade'
KIND_ERROR = 'error'

START_TEXT = "Oi… então é você 😏\nA gente pode conversar um pouco… sem pressa."
PAYWALL_TEXTS = {
    REASON_ESCALATION: "Hmm… assim você me deixa curiosa 😌 Pra continuar desse jeito, escolhe um plano:",
    REASON_UPSELL: "Tô gostando de você… Quer mais de mim? Escolhe um plano e eu fico só pra você:",
    REASON_EXPIRED: "Nosso tempo acabou 🥺 Quer continuar? Escolhe um plano:",
    REASON_AWAITING: "Tô te esperando… escolhe um plano pra gente continuar 💋",
}
PENDING_TEXT = "Seu link de pagamento já está pronto. Assim que confirmar, eu volto pra você 💋"
UPGRADE_TEXT = "Fotos são só pra quem tem o plano com fotos exclusivas 😏"
ERROR_TEXT = "Tive um probleminha pra responder agora… tenta de novo em instantes?"


@dataclass
class Reply:
    kind: str
    text: str
    plans: list = field(default_factory=list)
    pay_url: str | None = None
    media_url: str | None = None

    @property
    def is_paywall(self) -> bool:
        return self.kind in (KIND_PAYWALL, KIND_UPGRADE)


def truncate(text: str, limit: int) -> str:
    text = (text or '').strip()
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit - 1].rstrip() + '…'


class ChatService:
    """Gate first, then the LLM; keeps the conversation window."""

    def __init__(self, store: SessionStore, gate: UsageGate, llm, catalog: PlanCatalog,
                 janitor=None, media: KeywordClassifier | None = None,
                 media_urls: list | None = None, max_chars: int | None = None):
        self.store = store
        self.gate = gate
        self.llm = llm
        self.catalog = catalog
        self.janitor = janitor
        self.media = media or KeywordClassifier(config.MEDIA_KEYWORDS)
        self.media_urls = config.PREMIUM_MEDIA_URLS if media_urls is None else media_urls
        self.max_chars = config.MAX_REPLY_CHARS if max_chars is None else max_chars

    def paywall(self, session_id: int, reason: str = REASON_AWAITING) -> Reply:
        st = self.store.peek(session_id)
        pending = st.pending_checkout if st else None
        if pending is not None:
            return Reply(KIND_PAYWALL, PENDING_TEXT, pay_url=pending.pay_url)
        text = PAYWALL_TEXTS.get(reason) or PAYWALL_TEXTS[REASON_AWAITING]
        return Reply(KIND_PAYWALL, text, plans=self.catalog.all())

    async def handle_message(self, session_id: int, text: str, wants_media: bool | None = None) -> Reply:
        if self.janitor is not None:
            try:
                await self.janitor.maybe_sweep()
            except Exception as e:
                logger.warning(f"Janitor sweep error: {e}")

        if wants_media is None:
            wants_media = self.media.matches(text)

        decision = await self.gate.evaluate(session_id, text)
        st = self.store.session(session_id)

        if decision.paywall:
            st.remember('user', text)
            reason = REASON_PENDING if st.pending_checkout is not None else decision.reason
            return self.paywall(session_id, reason)

        if wants_media and decision.state is SessionState.PREMIUM and not decision.media_allowed:
            st.remember('user', text)
            plans = [p for p in self.catalog.all() if p.has(CAP_MEDIA)]
            return Reply(KIND_UPGRADE, UPGRADE_TEXT, plans=plans)

        answer = await self.llm.generate_reply(session_id, list(st.conversation_window), text)
        if not answer:
            return Reply(KIND_ERROR, ERROR_TEXT)
        answer = truncate(answer, self.max_chars)
        st.remember('user', text)
        st.remember('assistant', answer)

        media_url = None
        if wants_media and decision.media_allowed and self.media_urls:
            media_url = random.choice(self.media_urls)
        return Reply(KIND_REPLY, answer, media_url=media_url)

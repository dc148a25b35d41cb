import asyncio
import logging

from .checkout import CheckoutIssuer
from .conversation import ChatService
from .gate import UsageGate
from .janitor import Janitor
from .plans import PlanCatalog
from .reconciler import PaymentReconciler
from .store import SessionStore

logger = logging.getLogger("personabot.services")


class Services:
    """Everything a handler needs, built once at startup."""

    def __init__(self, store: SessionStore, gateway, llm, catalog: PlanCatalog | None = None,
                 notifier=None, tracker=None, gate: UsageGate | None = None,
                 janitor: Janitor | None = None):
        self.store = store
        self.gateway = gateway
        self.llm = llm
        self.catalog = catalog or PlanCatalog()
        self.notifier = notifier
        self.tracker = tracker
        self.gate = gate or UsageGate(store, self.catalog)
        self.janitor = janitor or Janitor(store)
        self.issuer = CheckoutIssuer(store, gateway, self.catalog)
        self.reconciler = PaymentReconciler(store, gateway, self.catalog, notifier=notifier, tracker=tracker)
        self.chat = ChatService(store, self.gate, llm, self.catalog, janitor=self.janitor)
        self._background: set = set()

    def spawn(self, coro, name: str = 'task') -> asyncio.Task:
        """Run ``coro`` detached but keep a reference until it finishes."""
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _done(t: asyncio.Task):
            self._background.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Background {name} failed", exc_info=t.exception())

        task.add_done_callback(_done)
        return task

    async def drain(self, timeout: float = 10):
        if self._background:
            await asyncio.wait(list(self._background), timeout=timeout)

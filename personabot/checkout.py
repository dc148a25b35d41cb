import logging

from . import config
from .errors import ProviderError
from .plans import PlanCatalog
from .session import PendingCheckout
from .store import SessionStore
from .yookassa_gateway import Checkout

logger = logging.getLogger("personabot.checkout")


class CheckoutIssuer:
    """Creates one provider checkout per (session, plan) purchase attempt."""

    def __init__(self, store: SessionStore, gateway, catalog: PlanCatalog,
                 cooldown_ms: int | None = None):
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.cooldown_ms = config.CHECKOUT_COOLDOWN_MS if cooldown_ms is None else cooldown_ms

    async def issue_checkout(self, session_id: int, plan_id: str | None) -> Checkout:
        """Return a pay link for ``session_id``.

        Raises ``CooldownRejected`` inside the cooldown window and
        ``ProviderError`` when the provider call fails. An already pending
        checkout is returned as is (``reused=True``) without a provider call.
        """
        plan = self.catalog.get_plan(plan_id)
        existing = await self.store.begin_checkout(session_id, self.cooldown_ms)
        if existing is not None:
            logger.info(f"session {session_id}: checkout {existing.checkout_id} already pending")
            return Checkout(existing.checkout_id, existing.pay_url, reused=True)

        try:
            checkout = await self.gateway.create_checkout(plan, correlation_id=str(session_id))
        except ProviderError as e:
            await self.store.release_checkout(session_id)
            logger.warning(f"session {session_id}: checkout creation failed: {e}")
            raise
        except Exception as e:
            await self.store.release_checkout(session_id)
            logger.exception(f"session {session_id}: unexpected checkout error")
            raise ProviderError(str(e)) from e

        pending = PendingCheckout(
            checkout_id=checkout.checkout_id,
            session_id=session_id,
            plan_id=plan.id,
            created_at=self.store.now(),
            pay_url=checkout.pay_url,
        )
        live = await self.store.insert_pending_if_absent(pending)
        if live.checkout_id != checkout.checkout_id:
            return Checkout(live.checkout_id, live.pay_url, reused=True)
        return checkout

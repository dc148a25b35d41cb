"""Owned session store with the atomic primitives the payment flow relies on.

All in-memory mutation happens under one ``asyncio.Lock``; the optional
persistence mirror (Google Sheets) is written after the lock is released,
in a worker thread, and is best-effort.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Iterable, Optional

from .errors import CooldownRejected
from .session import Event, PendingCheckout, Session, SessionState, transition

logger = logging.getLogger("personabot.store")


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionStore:
    def __init__(self, persistence=None, clock: Callable[[], int] = now_ms):
        self.persistence = persistence
        self.clock = clock
        self._lock = asyncio.Lock()
        # persistence writes run one at a time, in the order state changed
        self._mirror_lock = asyncio.Lock()
        self._sessions: dict[int, Session] = {}
        self._pending: dict[str, PendingCheckout] = {}
        self._processed: dict[str, int] = {}
        self._sent_events: set[str] = set()
        # session_id -> reservation time of an in-flight provider call
        self._issuing: dict[int, int] = {}

    def now(self) -> int:
        return self.clock()

    @asynccontextmanager
    async def locked(self):
        async with self._lock:
            yield

    # --- reads ---
    def session(self, session_id: int) -> Session:
        st = self._sessions.get(session_id)
        if st is None:
            st = Session(session_id=session_id)
            self._sessions[session_id] = st
        return st

    def peek(self, session_id: int) -> Optional[Session]:
        return self._sessions.get(session_id)

    def sessions(self) -> Iterable[Session]:
        return list(self._sessions.values())

    def find_pending(self, checkout_id: str | None) -> Optional[PendingCheckout]:
        if not checkout_id:
            return None
        return self._pending.get(str(checkout_id))

    def pending_records(self) -> list[PendingCheckout]:
        return list(self._pending.values())

    def is_processed(self, payment_id: str) -> bool:
        return payment_id in self._processed

    # --- checkout issuance ---
    async def begin_checkout(self, session_id: int, cooldown_ms: int) -> Optional[PendingCheckout]:
        """Reserve the right to call the provider for ``session_id``.

        Returns the live pending checkout if one exists (no reservation is
        made then), ``None`` when the caller now holds the reservation.
        Raises :class:`CooldownRejected` inside the cooldown window.
        """
        async with self._lock:
            now = self.now()
            st = self.session(session_id)
            anchors = [a for a in (st.last_checkout_issued_at, self._issuing.get(session_id)) if a is not None]
            if anchors:
                elapsed = now - max(anchors)
                if elapsed < cooldown_ms:
                    raise CooldownRejected(session_id, cooldown_ms - elapsed)
            if st.pending_checkout is not None:
                return st.pending_checkout
            self._issuing[session_id] = now
            return None

    async def release_checkout(self, session_id: int):
        async with self._lock:
            self._issuing.pop(session_id, None)

    async def insert_pending_if_absent(self, pending: PendingCheckout) -> PendingCheckout:
        """Record ``pending`` unless the session already has one; return the live record."""
        async with self._lock:
            self._issuing.pop(pending.session_id, None)
            st = self.session(pending.session_id)
            if st.pending_checkout is not None:
                logger.warning(
                    f"session {pending.session_id} already has pending {st.pending_checkout.checkout_id}, "
                    f"discarding {pending.checkout_id}"
                )
                return st.pending_checkout
            self._pending[pending.checkout_id] = pending
            transition(st, Event.CHECKOUT_ISSUED, pending.created_at, pending=pending)
            row = pending.to_row()
        await self._mirror(('add_pending', row))
        return pending

    # --- payment reconciliation ---
    async def grant_once(self, payment_id: str, session_id: int, plan,
                         checkout_ids: Iterable[str] = ()) -> Optional[Session]:
        """Apply an approved payment exactly once.

        Marking ``payment_id`` processed and the ``PAYMENT_APPROVED``
        transition happen in one critical section, so no interruption can
        leave the payment claimed but ungranted. Returns ``None`` when the
        payment was already applied.
        """
        async with self._lock:
            if payment_id in self._processed:
                return None
            now = self.now()
            self._processed[payment_id] = now
            st = self.session(session_id)
            ids = {c for c in checkout_ids if c}
            if st.pending_checkout is not None:
                ids.add(st.pending_checkout.checkout_id)
            writes = []
            for cid in ids:
                rec = self._pending.get(cid)
                if rec is not None and rec.session_id == session_id:
                    del self._pending[cid]
                    writes.append(('delete_pending', cid))
            transition(st, Event.PAYMENT_APPROVED, now, plan=plan)
            # entitlement row goes out before the processed marker
            writes.append(('save_entitlement', st.entitlement_row()))
            writes.append(('add_processed', payment_id, now))
        await self._mirror(*writes)
        return st

    async def claim_event(self, payment_id: str) -> bool:
        async with self._lock:
            if payment_id in self._sent_events:
                return False
            self._sent_events.add(payment_id)
            return True

    async def drop_pending(self, checkout_id: str, session_id: int | None = None) -> Optional[PendingCheckout]:
        """Delete a pending record and decouple its session from it."""
        async with self._lock:
            rec = self._drop_pending_locked(checkout_id, session_id)
        if rec is not None:
            await self._mirror(('delete_pending', rec.checkout_id))
        return rec

    def _drop_pending_locked(self, checkout_id: str, session_id: int | None) -> Optional[PendingCheckout]:
        rec = self._pending.get(checkout_id)
        if rec is None or (session_id is not None and rec.session_id != session_id):
            return None
        del self._pending[checkout_id]
        st = self._sessions.get(rec.session_id)
        if st is not None and st.pending_checkout is not None and st.pending_checkout.checkout_id == checkout_id:
            transition(st, Event.CHECKOUT_CLEARED, self.now())
        return rec

    async def sweep_pending(self, ttl_ms: int, now: int | None = None) -> list[PendingCheckout]:
        removed = []
        async with self._lock:
            now = self.now() if now is None else now
            for rec in list(self._pending.values()):
                if now - rec.created_at > ttl_ms:
                    removed.append(self._drop_pending_locked(rec.checkout_id, None))
            # sessions pointing at a record that no longer exists
            for st in self._sessions.values():
                pc = st.pending_checkout
                if pc is not None and pc.checkout_id not in self._pending and now - pc.created_at > ttl_ms:
                    transition(st, Event.CHECKOUT_CLEARED, now)
        await self._mirror(*[('delete_pending', rec.checkout_id) for rec in removed])
        return removed

    # --- gate helpers ---
    async def expire_if_due(self, session_id: int) -> bool:
        async with self._lock:
            st = self.session(session_id)
            now = self.now()
            if st.entitlement_expiry is None or st.entitlement_expiry > now:
                return False
            transition(st, Event.EXPIRE, now)
            row = st.entitlement_row()
        await self._mirror(('save_entitlement', row))
        return True

    async def reset(self, session_id: int) -> SessionState:
        async with self._lock:
            st = self.session(session_id)
            return transition(st, Event.RESET, self.now())

    # --- persistence ---
    async def _mirror(self, *writes):
        """Run ``(method, *args)`` persistence writes in order, best-effort.

        Callers pass row snapshots taken under the state lock and call this
        right after releasing it, so writes queue up in state-change order.
        """
        if not self.persistence or not writes:
            return
        async with self._mirror_lock:
            for method, *args in writes:
                try:
                    await asyncio.to_thread(getattr(self.persistence, method), *args)
                except Exception as e:
                    logger.warning(f"Persist {method} error: {e}")

    def restore(self) -> int:
        """Load entitlements, pending checkouts and processed payments from persistence."""
        if not self.persistence:
            return 0
        restored = 0
        for session_id, expiry, plan_id in self.persistence.load_entitlements():
            st = self.session(session_id)
            st.entitlement_expiry = expiry
            st.entitled_plan_id = plan_id
            restored += 1
        for rec in self.persistence.load_pending():
            self._pending[rec.checkout_id] = rec
            st = self.session(rec.session_id)
            st.pending_checkout = rec
            st.last_checkout_issued_at = rec.created_at
            st.awaiting_payment = True
        for payment_id, ts in self.persistence.load_processed():
            self._processed[payment_id] = ts
            # conversions for these were either sent or are lost with the old process
            self._sent_events.add(payment_id)
        logger.info(
            f"Store restored: entitlements={restored} pending={len(self._pending)} processed={len(self._processed)}"
        )
        return restored

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from personabot.reconciler import (
    FAILED_TEXT, KIND_ORDER, KIND_PAYMENT, Notification, Outcome, PaymentReconciler, parse_notification,
)
from personabot.store import SessionStore
from personabot.yookassa_gateway import PaymentStatus, ProviderOrder

S1, S2 = 1001, 1002
TWELVE_HOURS_MS = 43_200_000


def succeeded(payment_id):
    return {"event": "payment.succeeded", "object": {"id": payment_id}}


@pytest.mark.asyncio
async def test_approved_payment_grants_entitlement(issuer, reconciler, store, gateway, clock, notifier, tracker):
    checkout = await issuer.issue_checkout(S1, 'p12h')
    assert checkout.checkout_id == 'C1'
    gateway.add_payment('P1', session_id=S1, checkout_id='C1')

    outcomes = await reconciler.handle_notification(succeeded('P1'))

    assert outcomes == [Outcome.GRANTED]
    st = store.session(S1)
    assert st.entitlement_expiry == clock.now + TWELVE_HOURS_MS
    assert st.entitled_plan_id == 'p12h'
    assert st.pending_checkout is None
    assert store.find_pending('C1') is None
    assert len(notifier.sent) == 1 and notifier.sent[0][0] == S1
    assert tracker.events == [(S1, 'p12h', 'P1')]


@pytest.mark.asyncio
async def test_duplicate_delivery_applied_once(issuer, reconciler, store, gateway, clock, notifier, tracker):
    await issuer.issue_checkout(S1, 'p12h')
    gateway.add_payment('P1', session_id=S1, checkout_id='C1')

    assert await reconciler.handle_notification(succeeded('P1')) == [Outcome.GRANTED]
    expiry = store.session(S1).entitlement_expiry
    clock.advance(60_000)
    assert await reconciler.handle_notification(succeeded('P1')) == [Outcome.DUPLICATE]

    assert store.session(S1).entitlement_expiry == expiry
    assert len(notifier.sent) == 1
    assert len(tracker.events) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicates_grant_once(reconciler, store, gateway, tracker):
    gateway.add_payment('P1', session_id=S1)
    results = await asyncio.gather(*[reconciler.handle_notification(succeeded('P1')) for _ in range(5)])
    flat = [o for r in results for o in r]
    assert flat.count(Outcome.GRANTED) == 1
    assert flat.count(Outcome.DUPLICATE) == 4
    assert store.session(S1).entitlement_expiry == store.now() + TWELVE_HOURS_MS
    assert len(tracker.events) == 1


@pytest.mark.asyncio
async def test_applied_but_untracked_payment_is_tracked_on_redelivery(reconciler, store, gateway, catalog, tracker):
    gateway.add_payment('P1', session_id=S1)
    st = await store.grant_once('P1', S1, catalog.get_plan('p12h'))
    expiry = st.entitlement_expiry

    assert await reconciler.handle_notification(succeeded('P1')) == [Outcome.DUPLICATE]
    assert tracker.events == [(S1, 'p12h', 'P1')]
    assert store.session(S1).entitlement_expiry == expiry


@pytest.mark.asyncio
async def test_delivery_cancelled_during_persistence_keeps_grant(gateway, catalog, clock, tracker):
    release = threading.Event()
    persistence = MagicMock()
    persistence.add_processed.side_effect = lambda *args: release.wait(5)
    store = SessionStore(persistence=persistence, clock=clock)
    reconciler = PaymentReconciler(store, gateway, catalog, tracker=tracker)
    gateway.add_payment('P1', session_id=S1)

    first = asyncio.create_task(reconciler.handle_notification(succeeded('P1')))
    for _ in range(500):
        if persistence.add_processed.called:
            break
        await asyncio.sleep(0.01)
    first.cancel()
    try:
        with pytest.raises(asyncio.CancelledError):
            await first
        # provider redelivers after the worker died
        assert await reconciler.handle_notification(succeeded('P1')) == [Outcome.DUPLICATE]
    finally:
        release.set()

    st = store.session(S1)
    assert st.is_entitled(clock.now)
    assert st.entitlement_expiry == clock.now + TWELVE_HOURS_MS
    assert len(tracker.events) == 1
    names = [c[0] for c in persistence.method_calls]
    assert names.index('save_entitlement') < names.index('add_processed')


@pytest.mark.asyncio
async def test_payment_only_touches_its_own_session(issuer, reconciler, store, gateway, clock):
    await issuer.issue_checkout(S1, 'p12h')
    await issuer.issue_checkout(S2, 'p12h')
    gateway.add_payment('P1', session_id=S1, checkout_id='C1')

    await reconciler.handle_notification(succeeded('P1'))

    assert store.session(S1).is_entitled(clock.now)
    st2 = store.session(S2)
    assert not st2.is_entitled(clock.now)
    assert st2.pending_checkout.checkout_id == 'C2'


@pytest.mark.asyncio
async def test_correlation_id_wins_over_mismatched_pending(issuer, reconciler, store, gateway, clock):
    await issuer.issue_checkout(S2, 'p12h')
    # same checkout id as S2's pending record, but the metadata says S1
    gateway.add_payment('P2', session_id=S1, checkout_id='C1')

    assert await reconciler.handle_notification(succeeded('P2')) == [Outcome.GRANTED]
    assert store.session(S1).is_entitled(clock.now)
    assert not store.session(S2).is_entitled(clock.now)
    assert store.find_pending('C1').session_id == S2


@pytest.mark.asyncio
async def test_pending_record_resolves_uncorrelated_payment(issuer, reconciler, store, gateway, clock):
    await issuer.issue_checkout(S2, 'p7d')
    gateway.add_payment('P9', session_id=None, plan_id=None, checkout_id='C1')

    assert await reconciler.handle_notification(succeeded('P9')) == [Outcome.GRANTED]
    st = store.session(S2)
    assert st.entitled_plan_id == 'p7d'
    assert st.pending_checkout is None


@pytest.mark.asyncio
async def test_unresolvable_payment_is_dropped(issuer, reconciler, store, gateway, clock):
    await issuer.issue_checkout(S2, 'p12h')
    gateway.add_payment('PX', session_id=None, checkout_id='CX')

    assert await reconciler.handle_notification(succeeded('PX')) == [Outcome.DROPPED]
    assert not store.session(S2).is_entitled(clock.now)
    assert not store.is_processed('PX')


@pytest.mark.asyncio
async def test_failed_payment_drops_pending_and_notifies_once(issuer, reconciler, store, gateway, notifier):
    await issuer.issue_checkout(S1, 'p12h')
    gateway.add_payment('C1', status=PaymentStatus.FAILED, session_id=S1, checkout_id='C1')
    body = {"event": "payment.canceled", "object": {"id": "C1"}}

    assert await reconciler.handle_notification(body) == [Outcome.FAILED]
    assert await reconciler.handle_notification(body) == [Outcome.FAILED]

    st = store.session(S1)
    assert st.pending_checkout is None
    assert st.entitlement_expiry is None
    assert notifier.sent == [(S1, FAILED_TEXT)]
    # cooldown anchor went with the pending record
    assert (await issuer.issue_checkout(S1, 'p12h')).checkout_id == 'C2'


@pytest.mark.asyncio
async def test_pending_status_changes_nothing(issuer, reconciler, store, gateway, notifier):
    await issuer.issue_checkout(S1, 'p12h')
    gateway.add_payment('C1', status=PaymentStatus.PENDING, session_id=S1)

    assert await reconciler.handle_notification(succeeded('C1')) == [Outcome.PENDING]
    assert store.session(S1).pending_checkout.checkout_id == 'C1'
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_order_stops_at_first_granted_payment(reconciler, store, gateway):
    gateway.add_payment('P0', status=PaymentStatus.PENDING, session_id=S1)
    gateway.add_payment('P1', session_id=S1)
    gateway.add_payment('P2', session_id=S1)
    gateway.orders['O1'] = ProviderOrder('O1', ['P0', 'P1', 'P2'])

    outcomes = await reconciler.handle_notification({"type": "invoice", "data": {"id": "O1"}})

    assert outcomes == [Outcome.PENDING, Outcome.GRANTED]
    assert 'P2' not in gateway.fetched
    assert store.session(S1).entitled_plan_id == 'p12h'


@pytest.mark.asyncio
async def test_empty_and_missing_orders(reconciler, gateway):
    gateway.orders['O1'] = ProviderOrder('O1', [])
    assert await reconciler.reconcile_order('O1') == [Outcome.PENDING]
    assert await reconciler.reconcile_order('O404') == [Outcome.DROPPED]


@pytest.mark.asyncio
async def test_fetch_failure_drops_notification(reconciler, store):
    assert await reconciler.handle_notification(succeeded('missing')) == [Outcome.DROPPED]
    assert not store.is_processed('missing')


@pytest.mark.asyncio
async def test_body_without_id_is_ignored(reconciler):
    assert await reconciler.handle_notification({"event": "payment.succeeded"}) == [Outcome.IGNORED]


@pytest.mark.asyncio
async def test_notifier_failure_does_not_undo_grant(store, gateway, catalog, clock):
    class BrokenNotifier:
        async def notify(self, *args, **kwargs):
            raise RuntimeError('telegram down')

    reconciler = PaymentReconciler(store, gateway, catalog, notifier=BrokenNotifier())
    gateway.add_payment('P1', session_id=S1)
    assert await reconciler.handle_notification(succeeded('P1')) == [Outcome.GRANTED]
    assert store.session(S1).is_entitled(clock.now)


@pytest.mark.parametrize('body,query,expected', [
    ({"event": "payment.succeeded", "object": {"id": "P1"}}, None, Notification(KIND_PAYMENT, 'P1')),
    ({"type": "payment", "data": {"id": 22}}, None, Notification(KIND_PAYMENT, '22')),
    ({"event": "invoice.succeeded", "object": {"id": "O1"}}, None, Notification(KIND_ORDER, 'O1')),
    ({"id": "O2", "topic": "merchant_order"}, None, Notification(KIND_ORDER, 'O2')),
    (None, {"data.id": "P3", "type": "payment"}, Notification(KIND_PAYMENT, 'P3')),
    ([1, 2], {"id": "O3", "topic": "merchant_order"}, Notification(KIND_ORDER, 'O3')),
    ({}, {}, None),
])
def test_parse_notification(body, query, expected):
    assert parse_notification(body, query) == expected

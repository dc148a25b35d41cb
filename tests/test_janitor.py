import pytest

from conftest import HOUR_MS


@pytest.mark.asyncio
async def test_sweep_after_ttl_unblocks_new_checkout(janitor, issuer, store, gateway, clock):
    t0 = clock.now
    first = await issuer.issue_checkout(3003, 'p12h')

    assert await janitor.sweep(now=t0 + HOUR_MS) == 0
    assert store.session(3003).pending_checkout is not None

    clock.now = t0 + HOUR_MS + 1
    assert await janitor.sweep() == 1
    assert store.find_pending(first.checkout_id) is None
    assert store.session(3003).pending_checkout is None

    second = await issuer.issue_checkout(3003, 'p12h')
    assert not second.reused
    assert second.checkout_id != first.checkout_id
    assert len(gateway.created) == 2


@pytest.mark.asyncio
async def test_sweep_keeps_entitlement(janitor, issuer, store, catalog, clock):
    await issuer.issue_checkout(3003, 'p12h')
    await store.grant_once('P1', 3004, catalog.get_plan('p30d'))
    clock.advance(HOUR_MS + 1)
    assert await janitor.sweep() == 1
    assert store.session(3004).is_entitled(clock.now)


@pytest.mark.asyncio
async def test_maybe_sweep_is_rate_limited(janitor, issuer, store, clock):
    await issuer.issue_checkout(3003, 'p12h')
    assert await janitor.maybe_sweep() == 0
    clock.advance(HOUR_MS + 1)
    assert await janitor.maybe_sweep() == 1

    await issuer.issue_checkout(3005, 'p12h')
    clock.advance(HOUR_MS + 1)
    # run less than interval_ms after the previous sweep
    janitor._last_sweep = clock.now - 1
    assert await janitor.maybe_sweep() == 0

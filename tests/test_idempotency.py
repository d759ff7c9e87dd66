from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

from conftest import InMemoryRedis

from idempotency import PAYMENT_EVENTS, REVOKED_TOKENS, IdempotencyGuard


def test_first_claim_wins():
    guard = IdempotencyGuard(InMemoryRedis(), PAYMENT_EVENTS)
    assert guard.claim("evt_1") is True
    assert guard.claim("evt_1") is False
    assert guard.is_claimed("evt_1")


def test_namespaces_do_not_collide():
    redis_client = InMemoryRedis()
    events = IdempotencyGuard(redis_client, PAYMENT_EVENTS)
    tokens = IdempotencyGuard(redis_client, REVOKED_TOKENS)
    assert events.claim("abc")
    assert tokens.claim("abc")
    assert not tokens.claim("abc")


def test_release_allows_new_claim():
    guard = IdempotencyGuard(InMemoryRedis(), PAYMENT_EVENTS)
    guard.claim("evt_2")
    guard.release("evt_2")
    assert not guard.is_claimed("evt_2")
    assert guard.claim("evt_2")


def test_claim_is_single_set_nx_with_ttl():
    client = MagicMock()
    client.set.return_value = True
    guard = IdempotencyGuard(client, PAYMENT_EVENTS, ttl_seconds=3600)

    assert guard.claim("evt_3")
    client.set.assert_called_once_with("payment-event:evt_3", "1", nx=True, ex=3600)
    client.get.assert_not_called()


def test_explicit_ttl_is_never_below_one_second():
    client = MagicMock()
    client.set.return_value = None
    guard = IdempotencyGuard(client, REVOKED_TOKENS)

    assert guard.claim("jti", ttl_seconds=-20) is False
    assert client.set.call_args.kwargs["ex"] == 1


def test_concurrent_claims_have_one_winner():
    guard = IdempotencyGuard(InMemoryRedis(), PAYMENT_EVENTS)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: guard.claim("evt_race"), range(32)))
    assert results.count(True) == 1

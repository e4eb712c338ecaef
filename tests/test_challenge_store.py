from security.challenge_store import InMemoryChallengeStore


def test_code_is_consumed_on_match(frozen_clock):
    store = InMemoryChallengeStore()
    store.put(1, "123456", ttl_seconds=600)

    assert store.peek(1) is not None
    assert store.take_if_match(1, "123456") is True
    assert store.take_if_match(1, "123456") is False
    assert len(store) == 0


def test_wrong_guesses_drop_the_challenge(frozen_clock):
    store = InMemoryChallengeStore(max_attempts=3)
    store.put(7, "123456", ttl_seconds=600)

    assert store.take_if_match(7, "000000") is False
    assert store.take_if_match(7, "000000") is False
    assert len(store) == 1
    assert store.take_if_match(7, "000000") is False
    assert len(store) == 0
    assert store.take_if_match(7, "123456") is False


def test_expired_code_is_rejected(frozen_clock):
    store = InMemoryChallengeStore()
    store.put("42", "654321", ttl_seconds=60)

    frozen_clock.advance(seconds=60)

    assert store.take_if_match(42, "654321") is False
    assert store.peek(42) is None


def test_sweep_and_discard(frozen_clock):
    store = InMemoryChallengeStore()
    store.put(1, "111111", ttl_seconds=30)
    store.put(2, "222222", ttl_seconds=30)
    store.put(3, "333333", ttl_seconds=600)

    frozen_clock.advance(seconds=31)
    assert store.sweep_expired() == 2
    assert len(store) == 1

    store.discard(3)
    store.discard(3)
    assert len(store) == 0


def test_put_replaces_outstanding_code(frozen_clock):
    store = InMemoryChallengeStore()
    store.put(1, "111111", ttl_seconds=600)
    store.put(1, "222222", ttl_seconds=600)

    assert store.take_if_match(1, "111111") is False
    assert store.take_if_match(1, "222222") is True

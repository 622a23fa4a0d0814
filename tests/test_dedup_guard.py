from echovault.services.dedup import DedupGuard, InMemoryDedupStore, RedisDedupStore


def test_second_claim_inside_window_is_refused(clock):
    guard = DedupGuard(300, clock=clock)
    assert guard.claim("notify:m1") is True
    clock.advance(seconds=299)
    assert guard.claim("notify:m1") is False


def test_claim_allowed_again_after_window(clock):
    guard = DedupGuard(300, clock=clock)
    guard.claim("notify:m1")
    clock.advance(seconds=300)
    assert guard.claim("notify:m1") is True


def test_keys_are_independent(clock):
    guard = DedupGuard(30, clock=clock)
    guard.mark("panic:a")
    assert guard.is_duplicate("panic:a")
    assert not guard.is_duplicate("panic:b")


def test_old_entries_are_purged(clock):
    store = InMemoryDedupStore()
    guard = DedupGuard(30, purge_after_seconds=60, store=store, clock=clock)
    guard.mark("panic:a")
    clock.advance(seconds=45)
    guard.is_duplicate("panic:b")
    assert len(store) == 1
    clock.advance(seconds=16)
    guard.is_duplicate("panic:b")
    assert len(store) == 0


def test_purge_horizon_never_shorter_than_window(clock):
    guard = DedupGuard(300, purge_after_seconds=10, clock=clock)
    assert guard.purge_after_seconds == 300


class _FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value.encode()
        self.ttls[key] = ex


def test_redis_store_uses_prefixed_keys_with_ttl(clock):
    client = _FakeRedis()
    guard = DedupGuard(30, purge_after_seconds=60, store=RedisDedupStore(client), clock=clock)
    guard.mark("panic:a")
    assert client.ttls == {"echovault:dedup:panic:a": 60}
    assert guard.is_duplicate("panic:a")

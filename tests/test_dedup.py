from inbox.dedup import RecentSendCache, message_fingerprint


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_fingerprint_trims_text_and_includes_media_type():
    assert message_fingerprint("+57300", "  hola \n") == "+57300||hola"
    assert message_fingerprint("+57300", "hola", "image") == "+57300|image|hola"
    assert message_fingerprint("+57300", None, "audio") == "+57300|audio|"


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = RecentSendCache(ttl=30, clock=clock)
    cache.add("a")
    clock.now += 29.9
    assert "a" in cache
    clock.now += 0.2
    assert "a" not in cache
    assert len(cache) == 0


def test_readding_refreshes_expiry_and_sweeps_old_entries():
    clock = FakeClock()
    cache = RecentSendCache(ttl=30, clock=clock)
    cache.add("a")
    cache.add("b")
    clock.now += 20
    cache.add("a")
    clock.now += 15
    cache.add("c")
    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2

    cache.clear()
    assert "a" not in cache

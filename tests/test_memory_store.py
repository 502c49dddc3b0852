from musicez.storage.common import TTL_KEY_MISSING, TTL_NO_EXPIRY, is_safe_key_component


async def test_expiry_follows_clock(store, clock):
    await store.set("session:u1:a", "v", 10)
    clock.advance(seconds=9)
    assert await store.get("session:u1:a") == "v"
    assert await store.ttl("session:u1:a") == 1

    clock.advance(seconds=1)
    assert await store.get("session:u1:a") is None
    assert await store.ttl("session:u1:a") == TTL_KEY_MISSING


async def test_getdel_only_once(store):
    await store.set("k", "v", 60)

    assert await store.getdel("k") == "v"
    assert await store.getdel("k") is None


async def test_keys_glob(store):
    await store.set("session:u1:a", "1", 60)
    await store.set("session:u2:a", "2", 60)
    await store.set("security_log:u1:1:x", "3", 60)

    assert sorted(await store.keys("session:*:a")) == ["session:u1:a", "session:u2:a"]
    assert await store.keys("session:u1:*") == ["session:u1:a"]


async def test_persistent_keys(store):
    await store.set_persistent("k", "v")

    assert await store.ttl("k") == TTL_NO_EXPIRY
    assert await store.delete("k") == 1
    assert await store.delete("k") == 0


def test_safe_key_component():
    assert is_safe_key_component("user-1")
    assert is_safe_key_component("6f1c2c8e-3b5a-4d2e-9f1a-0c2b3d4e5f60")
    assert not is_safe_key_component("")
    assert not is_safe_key_component("a:b")
    assert not is_safe_key_component("*")
    assert not is_safe_key_component("a[b]")

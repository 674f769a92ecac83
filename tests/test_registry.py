import json

import pytest

from homehub_mcp.config import RECENTS_KEY
from homehub_mcp.discovery import EventKind, RawAdvertisement, ScannerEvent
from homehub_mcp.models import ServerIdentity
from homehub_mcp.registry import JsonFileStore, MemoryStore, ServerRegistry


def server(n: int) -> ServerIdentity:
    return ServerIdentity(name=f"Server {n}", host=f"10.0.0.{n}", port=8080)


def test_txt_port_and_name_override():
    registry = ServerRegistry()
    identity = registry.on_added(
        RawAdvertisement(name="Den TV", host="10.0.0.9", port=0, properties={"port": "9090"})
    )
    assert identity.key == "10.0.0.9:9090"
    assert identity.name == "Den TV"
    assert registry.discovered == [identity]


def test_metadata_name_wins_over_instance_name():
    registry = ServerRegistry()
    identity = registry.on_added(
        RawAdvertisement(name="homehub-1", host="10.0.0.2", port=5000, properties={"name": "Attic"})
    )
    assert identity.name == "Attic"
    assert identity.port == 5000


def test_unresolved_port_defaults_to_8080():
    registry = ServerRegistry()
    identity = registry.on_added(RawAdvertisement(name="Box", host="10.0.0.3"))
    assert identity.port == 8080


def test_non_numeric_txt_port_is_ignored():
    registry = ServerRegistry()
    identity = registry.on_added(
        RawAdvertisement(name="Box", host="10.0.0.3", port=7000, properties={"port": "eighty"})
    )
    assert identity.port == 7000


def test_empty_txt_name_does_not_override():
    registry = ServerRegistry()
    identity = registry.on_added(
        RawAdvertisement(name="Kitchen", host="10.0.0.4", port=8080, properties={"name": ""})
    )
    assert identity.name == "Kitchen"


def test_repeated_identity_keeps_one_entry_with_latest_name():
    registry = ServerRegistry()
    registry.on_added(RawAdvertisement(name="A", host="10.0.0.1", port=8080))
    registry.on_added(RawAdvertisement(name="Other", host="10.0.0.2", port=8080))
    registry.on_added(RawAdvertisement(name="B", host="10.0.0.1", port=8080))
    registry.on_added(RawAdvertisement(name="C", host="10.0.0.1", port=0, properties={"port": "8080"}))

    discovered = registry.discovered
    assert [s.key for s in discovered] == ["10.0.0.1:8080", "10.0.0.2:8080"]
    assert discovered[0].name == "C"


def test_same_host_different_port_are_different_servers():
    registry = ServerRegistry()
    registry.on_added(RawAdvertisement(name="A", host="10.0.0.1", port=8080))
    registry.on_added(RawAdvertisement(name="A", host="10.0.0.1", port=8081))
    assert len(registry.discovered) == 2


def test_removed_events_keep_entries():
    registry = ServerRegistry()
    ad = RawAdvertisement(name="A", host="10.0.0.1", port=8080)
    registry.on_added(ad)
    registry.on_removed(ad)
    assert len(registry.discovered) == 1


def test_reset_clears_discovered_but_not_recents():
    registry = ServerRegistry()
    registry.on_added(RawAdvertisement(name="A", host="10.0.0.1", port=8080))
    registry.promote(server(1))
    registry.reset()
    assert registry.discovered == []
    assert registry.recents == [server(1)]


def test_subscribers_are_notified():
    registry = ServerRegistry()
    calls = []
    unsubscribe = registry.subscribe(lambda: calls.append(len(registry.discovered)))
    registry.on_added(RawAdvertisement(name="A", host="10.0.0.1", port=8080))
    # Same name again: nothing changed
    registry.on_added(RawAdvertisement(name="A", host="10.0.0.1", port=8080))
    unsubscribe()
    registry.on_added(RawAdvertisement(name="B", host="10.0.0.2", port=8080))
    assert calls == [1]


@pytest.mark.asyncio
async def test_follow_applies_events_in_order():
    registry = ServerRegistry()
    ad = RawAdvertisement(name="First", host="10.0.0.1", port=8080)

    async def events():
        yield ScannerEvent(EventKind.ADDED, ad)
        yield ScannerEvent(EventKind.REMOVED, ad)
        yield ScannerEvent(EventKind.ADDED, RawAdvertisement(name="Second", host="10.0.0.1", port=8080))

    await registry.follow(events())
    assert [(s.key, s.name) for s in registry.discovered] == [("10.0.0.1:8080", "Second")]


def test_promote_twice_leaves_single_entry_at_front():
    registry = ServerRegistry()
    registry.promote(server(1))
    registry.promote(server(2))
    registry.promote(server(2))
    assert registry.recents == [server(2), server(1)]


def test_promote_moves_existing_entry_to_front():
    registry = ServerRegistry()
    for n in (1, 2, 3):
        registry.promote(server(n))
    registry.promote(server(1))
    assert registry.recents == [server(1), server(3), server(2)]


def test_promote_updates_name_of_existing_entry():
    registry = ServerRegistry()
    registry.promote(server(1))
    registry.promote(server(1).with_name("Renamed"))
    assert registry.recents[0].name == "Renamed"
    assert len(registry.recents) == 1


def test_recents_capacity():
    registry = ServerRegistry()
    for n in range(1, 12):
        registry.promote(server(n))
    recents = registry.recents
    assert len(recents) == 10
    assert recents[0] == server(11)
    assert server(1) not in recents


def test_recents_are_persisted_immediately():
    store = MemoryStore()
    registry = ServerRegistry(store)
    registry.promote(server(1))
    assert json.loads(store.get(RECENTS_KEY)) == [{"name": "Server 1", "host": "10.0.0.1", "port": 8080}]


def test_recents_round_trip_through_file(tmp_path):
    path = tmp_path / "state" / "homehub.json"
    registry = ServerRegistry(JsonFileStore(path))
    registry.promote(server(1))
    registry.promote(server(2))

    reloaded = ServerRegistry(JsonFileStore(path))
    assert reloaded.load() == [server(2), server(1)]
    assert reloaded.recents[0].name == "Server 2"


def test_file_store_keeps_other_keys(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"HomeHub_BaseURL": "http://10.0.0.1:8080"}))
    ServerRegistry(JsonFileStore(path)).promote(server(1))
    data = json.loads(path.read_text())
    assert data["HomeHub_BaseURL"] == "http://10.0.0.1:8080"
    assert RECENTS_KEY in data


def test_https_recent_keeps_scheme():
    store = MemoryStore()
    ServerRegistry(store).promote(ServerIdentity(name="Vault", host="media.local", port=8443, scheme="https"))
    assert json.loads(store.get(RECENTS_KEY))[0]["scheme"] == "https"
    assert ServerRegistry(store).load()[0].base_url == "https://media.local:8443"


@pytest.mark.parametrize(
    "stored",
    [
        None,
        "",
        "{broken",
        json.dumps({"not": "a list"}),
        json.dumps([{"name": "x", "host": "10.0.0.1"}]),
        json.dumps([{"name": "x", "host": "10.0.0.1", "port": "8080"}]),
        json.dumps(["10.0.0.1:8080"]),
        json.dumps([{"name": "x", "host": "10.0.0.1", "port": 8080, "scheme": "ftp"}]),
    ],
)
def test_corrupt_recents_load_as_empty(stored):
    store = MemoryStore()
    if stored is not None:
        store.set(RECENTS_KEY, stored)
    assert ServerRegistry(store).load() == []


def test_corrupt_state_file_loads_as_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("not json at all")
    assert ServerRegistry(JsonFileStore(path)).load() == []

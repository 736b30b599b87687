import json
import threading

import pytest

from conftest import FakeTransport, connect, sent
from rchatd.errors import AuthError, DirectoryError
from rchatd.ledger import RoomRecord, StoredMessage
from rchatd.registry import SessionRegistry
from rchatd.session import Session


def test_add_and_remove_client(registry) -> None:
    alice = connect(registry, "alice")
    assert registry.sessions[alice.session_id] is alice

    removed = registry.remove_client(alice.session_id)
    assert removed is alice
    assert alice.session_id not in registry.sessions
    assert registry.remove_client(alice.session_id) is None


def test_add_client_with_same_id_replaces(registry) -> None:
    first = Session("alice", FakeTransport("a1"), session_id="s1")
    second = Session("alice", FakeTransport("a2"), session_id="s1")
    registry.add_client("s1", first)
    registry.join_room("lobby", first)

    registry.add_client("s1", second)

    assert registry.sessions["s1"] is second
    assert first.room_name is None
    assert registry.get_room("lobby").members == set()


def test_remove_client_leaves_room(registry) -> None:
    alice = connect(registry, "alice")
    bob = connect(registry, "bob")
    registry.join_room("general", alice)
    registry.join_room("general", bob)

    registry.remove_client(alice.session_id)

    room = registry.get_room("general")
    assert room.members == {bob.session_id}
    assert alice.room_name is None


def test_find_by_identity(registry) -> None:
    alice = connect(registry, "alice")
    assert registry.find_by_identity("alice") is alice
    assert registry.find_by_identity("carol") is None


def test_identities_are_distinct_and_sorted(registry) -> None:
    connect(registry, "bob")
    connect(registry, "alice")
    connect(registry, "bob")
    assert registry.identities() == ["alice", "bob"]


def test_broadcast_all_isolates_failures(registry) -> None:
    alice = connect(registry, "alice")
    bob = connect(registry, "bob")
    carol = connect(registry, "carol")
    sent(bob).fail_sends = True

    delivered = registry.broadcast_all(b"[Server]: hello")

    assert delivered == 2
    assert sent(alice).sent == [b"[Server]: hello"]
    assert sent(carol).sent == [b"[Server]: hello"]
    assert list(registry.history) == ["[Server]: hello"]
    # A failing recipient is not removed by the broadcaster.
    assert bob.session_id in registry.sessions


def test_get_or_create_room_is_cache_only(registry, ledger) -> None:
    room = registry.get_or_create_room("lobby")
    assert registry.get_or_create_room("lobby") is room
    assert room.id is None
    assert ledger.rooms == {}
    assert ledger.create_calls == 0


def test_first_join_notifies_nobody_second_join_notifies_first(registry, ledger) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")

    room = registry.join_room("general", a)
    assert sent(a).sent == []
    assert room.id == ledger.rooms["general"].id

    registry.join_room("general", b)
    notices = sent(a).messages()
    assert len(notices) == 1
    assert notices[0]["type"] == "system"
    assert notices[0]["content"] == "B has joined the room."
    assert notices[0]["room"]["name"] == "general"
    assert sent(b).sent == []

    assert a.room_name == "general" and b.room_name == "general"
    assert registry.get_room("general").members == {a.session_id, b.session_id}


def test_rejoining_same_room_is_quiet(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    registry.join_room("general", a)
    registry.join_room("general", b)
    sent(a).sent.clear()

    registry.join_room("general", b)

    assert sent(a).sent == []


def test_concurrent_joins_create_one_row(registry, ledger) -> None:
    sessions = [connect(registry, f"user{i}") for i in range(8)]
    barrier = threading.Barrier(len(sessions))

    def join(s: Session) -> None:
        barrier.wait()
        registry.join_room("fresh", s)

    threads = [threading.Thread(target=join, args=(s,)) for s in sessions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert list(ledger.rooms) == ["fresh"]
    assert ledger.create_calls == 1
    assert registry.get_room("fresh").members == {s.session_id for s in sessions}


def test_join_recovers_from_creation_conflict(registry, ledger) -> None:
    alice = connect(registry, "alice")
    real_find = ledger.find_room
    calls = {"n": 0}

    def racing_find(name):
        # The first lookup misses; meanwhile another process creates the row.
        calls["n"] += 1
        if calls["n"] == 1:
            ledger.create_room(name)
            return None
        return real_find(name)

    ledger.find_room = racing_find

    room = registry.join_room("lobby", alice)

    assert room.id == ledger.rooms["lobby"].id
    assert alice.room_name == "lobby"


def test_join_aborts_when_ledger_unavailable(registry, ledger) -> None:
    alice = connect(registry, "alice")
    registry.join_room("general", alice)
    ledger.fail_find = True

    with pytest.raises(DirectoryError):
        registry.join_room("elsewhere", alice)

    assert alice.room_name == "general"
    assert registry.get_room("elsewhere") is None
    assert alice.session_id in registry.get_room("general").members


def test_unexpected_ledger_errors_become_directory_errors(registry, ledger) -> None:
    alice = connect(registry, "alice")

    def broken(name):
        raise OSError("disk gone")

    ledger.find_room = broken
    with pytest.raises(DirectoryError):
        registry.join_room("lobby", alice)
    assert alice.room_name is None


def test_join_requires_registered_session(registry) -> None:
    stray = Session("ghost", FakeTransport("ghost"))
    with pytest.raises(ValueError):
        registry.join_room("lobby", stray)


def test_switching_rooms_leaves_the_old_one(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    registry.join_room("one", a)
    registry.join_room("one", b)
    sent(a).sent.clear()

    registry.join_room("two", b)

    assert registry.get_room("one").members == {a.session_id}
    assert registry.get_room("two").members == {b.session_id}
    assert sent(a).contents() == ["B has left the room."]


def test_persisted_id_never_changes(registry, ledger) -> None:
    a = connect(registry, "A")
    room = registry.join_room("general", a)
    first_id = room.id

    ledger.rooms["general"] = RoomRecord(id=99, name="general")
    b = connect(registry, "B")
    registry.join_room("general", b)

    assert registry.get_room("general").id == first_id


def test_broadcast_to_room_delivers_exact_bytes_and_records_once(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    c = connect(registry, "C")
    outsider = connect(registry, "D")
    for s in (a, b, c):
        registry.join_room("general", s)
    for s in (a, b, c):
        sent(s).sent.clear()

    payload = b'{"type":"regular","content":"hi","sender":"A","id":"1"}'
    delivered = registry.broadcast_to_room("general", payload, "A")

    assert delivered == 3
    for s in (a, b, c):
        assert sent(s).sent == [payload]
    assert sent(outsider).sent == []
    assert registry.room_history("general") == [payload.decode()]


def test_broadcast_to_missing_room_is_dropped(registry) -> None:
    assert registry.broadcast_to_room("nowhere", b"x", "A") == 0
    assert registry.get_room("nowhere") is None


def test_broadcast_to_room_isolates_failures(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    registry.join_room("general", a)
    registry.join_room("general", b)
    sent(a).fail_sends = True
    sent(b).sent.clear()

    assert registry.broadcast_to_room("general", b"hello", "B") == 1
    assert sent(b).sent == [b"hello"]
    assert a.session_id in registry.get_room("general").members


def test_concurrent_broadcasts_keep_history_and_delivery_order(registry) -> None:
    members = [connect(registry, f"m{i}") for i in range(4)]
    for m in members:
        registry.join_room("busy", m)
    for m in members:
        sent(m).sent.clear()

    def spam(tag: str) -> None:
        for i in range(50):
            registry.broadcast_to_room("busy", f"{tag}-{i}".encode(), tag)

    threads = [threading.Thread(target=spam, args=(f"t{n}",)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    history = registry.room_history("busy")
    assert len(history) == 200
    for m in members:
        assert [d.decode() for d in sent(m).sent] == history


def test_history_is_bounded(ledger) -> None:
    registry = SessionRegistry(ledger, history_limit=3)
    a = connect(registry, "A")
    registry.join_room("small", a)
    for i in range(5):
        registry.broadcast_to_room("small", str(i).encode(), "A")
    assert registry.room_history("small") == ["2", "3", "4"]


def test_join_replays_history_to_joiner(registry) -> None:
    a = connect(registry, "A")
    registry.join_room("general", a)
    registry.broadcast_to_room("general", b"one", "A")
    registry.broadcast_to_room("general", b"two", "A")

    b = connect(registry, "B")
    registry.join_room("general", b, replay=True)

    assert sent(b).sent == [b"one", b"two"]


def test_new_room_cache_is_seeded_from_ledger(registry, ledger) -> None:
    record = ledger.create_room("archive")
    ledger.messages.append(
        StoredMessage(
            id=1, room_id=record.id, sender="zed", content="old news", created_at="2025-12-31"
        )
    )
    a = connect(registry, "A")

    registry.join_room("archive", a, replay=True)

    replayed = sent(a).messages()
    assert len(replayed) == 1
    assert replayed[0]["content"] == "old news"
    assert replayed[0]["sender"] == "zed"
    assert replayed[0]["room"] == {"id": record.id, "name": "archive"}


def test_typing_is_deduplicated(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    registry.join_room("general", a)
    registry.join_room("general", b)
    sent(a).sent.clear()
    sent(b).sent.clear()

    assert registry.update_typing(a, True) is True
    assert registry.update_typing(a, True) is False
    assert sent(b).contents("typing") == ["is typing..."]
    assert sent(a).sent == []

    registry.update_typing(a, False)
    registry.update_typing(a, True)
    assert sent(b).contents("typing") == ["is typing...", "stopped typing", "is typing..."]
    typing = sent(b).messages()[0]
    assert typing["sender"] == "A"
    assert typing["room"]["name"] == "general"


def test_typing_without_room_is_a_noop(registry) -> None:
    a = connect(registry, "A")
    assert registry.update_typing(a, True) is False
    assert a.is_typing is False


def test_expire_typing_resets_stale_flags(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    registry.join_room("general", a)
    registry.join_room("general", b)
    registry.update_typing(a, True)
    sent(b).sent.clear()

    assert registry.expire_typing(5.0, now=a.last_typing_at + 1.0) == 0
    assert registry.expire_typing(5.0, now=a.last_typing_at + 10.0) == 1

    assert a.is_typing is False
    assert sent(b).contents("typing") == ["stopped typing"]


def test_concurrent_handle_reservation(registry) -> None:
    results: list[str] = []
    barrier = threading.Barrier(2)

    def claim() -> None:
        barrier.wait()
        try:
            registry.reserve_identity("alice")
            results.append("ok")
        except AuthError as e:
            results.append(str(e))

    threads = [threading.Thread(target=claim) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["Handle alice is already taken.", "ok"]

    registry.release_identity("alice")
    registry.reserve_identity("alice")


def test_send_to_single_session(registry) -> None:
    a = connect(registry, "A")
    assert registry.send_to(a, b"direct") is True
    sent(a).fail_sends = True
    assert registry.send_to(a, b"again") is False
    assert sent(a).sent == [b"direct"]


def test_clear_all(registry) -> None:
    a = connect(registry, "A")
    registry.join_room("general", a)
    registry.reserve_identity("A")

    cleared = registry.clear_all()

    assert cleared == [a]
    assert registry.sessions == {} and registry.rooms == {} and registry.reserved == set()
    assert a.room_name is None


def test_join_notice_is_valid_frame(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    registry.join_room("general", a)
    registry.join_room("general", b)
    frame = json.loads(sent(a).sent[0])
    assert frame["sender"] == "system"
    assert frame["id"]
    assert frame["timestamp"]


def test_switching_rooms_while_typing_stops_the_indicator(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    registry.join_room("one", a)
    registry.join_room("one", b)
    registry.update_typing(b, True)
    sent(a).sent.clear()

    registry.join_room("two", b)

    frames = sent(a).messages()
    assert [(f["type"], f["content"]) for f in frames] == [
        ("typing", "stopped typing"),
        ("system", "B has left the room."),
    ]
    assert frames[0]["sender"] == "B"
    assert b.is_typing is False


def test_disconnecting_while_typing_stops_the_indicator(registry) -> None:
    a = connect(registry, "A")
    b = connect(registry, "B")
    registry.join_room("general", a)
    registry.join_room("general", b)
    registry.update_typing(b, True)
    sent(a).sent.clear()

    registry.remove_client(b.session_id)

    assert sent(a).contents() == ["stopped typing"]
    assert b.is_typing is False

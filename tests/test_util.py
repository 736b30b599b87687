import pytest

from rchatd.util import expand_path, normalize_handle, normalize_room


def test_expand_path(monkeypatch) -> None:
    monkeypatch.setenv("RCHATD_TEST_DIR", "/srv/chat")
    assert expand_path("$RCHATD_TEST_DIR/ledger") == "/srv/chat/ledger"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("alice", "alice"),
        ("  bob  ", "bob"),
        ("", None),
        ("   ", None),
        ("two words", None),
        ("tab\there", None),
        ("a" * 33, None),
        (42, None),
        (None, None),
    ],
)
def test_normalize_handle(value, expected) -> None:
    assert normalize_handle(value) == expected


def test_normalize_handle_unlimited() -> None:
    assert normalize_handle("a" * 100, max_chars=0) == "a" * 100


def test_normalize_room() -> None:
    assert normalize_room("  lobby ") == "lobby"
    assert normalize_room("two words") == "two words"


@pytest.mark.parametrize("value", ["", "   ", "x" * 65, "bad\nname", "nul\x00"])
def test_normalize_room_rejects(value: str) -> None:
    with pytest.raises(ValueError):
        normalize_room(value)

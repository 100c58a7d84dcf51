from datetime import datetime, timedelta, timezone

from serverpanel.services.player_tracker import PlayerTracker


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: int):
        self.now += timedelta(seconds=seconds)


def test_reconciliation_replaces_roster():
    clock = _Clock()
    tracker = PlayerTracker(clock=clock)
    tracker.update_players_from_list("S", ["Alice", "Bob"])
    bob_joined = tracker.get_player("S", "Bob").join_time

    clock.advance(300)
    change = tracker.update_players_from_list("S", ["Bob", "Carol"])

    assert sorted(tracker.get_player_names("S")) == ["Bob", "Carol"]
    assert change.joined == ["Carol"]
    assert change.left == ["Alice"]

    bob = tracker.get_player("S", "Bob")
    assert bob.join_time == bob_joined
    assert bob.last_seen == clock.now

    carol = tracker.get_player("S", "Carol")
    assert carol.join_time == clock.now
    assert tracker.get_player("S", "Alice") is None


def test_servers_are_tracked_independently():
    tracker = PlayerTracker()
    tracker.update_players_from_list("A", ["Alice"])
    tracker.update_players_from_list("B", ["Bob", "Carol"])

    assert tracker.get_player_count("A") == 1
    assert tracker.get_player_count("B") == 2
    assert tracker.get_total_player_count() == 3
    assert {p.name for p in tracker.get_players()} == {"Alice", "Bob", "Carol"}


def test_empty_roster_removes_everyone():
    tracker = PlayerTracker()
    tracker.update_players_from_list("S", ["Alice", "Bob"])

    change = tracker.update_players_from_list("S", [])

    assert sorted(change.left) == ["Alice", "Bob"]
    assert tracker.get_player_count("S") == 0
    assert tracker.get_players("S") == []


def test_clear_server_players_returns_names_that_left():
    tracker = PlayerTracker()
    tracker.update_players_from_list("S", ["Alice", "Bob"])
    tracker.update_players_from_list("T", ["Zed"])

    left = tracker.clear_server_players("S")

    assert sorted(left) == ["Alice", "Bob"]
    assert tracker.get_player_count("S") == 0
    assert tracker.get_player_names("T") == ["Zed"]
    assert tracker.clear_server_players("S") == []


def test_add_and_remove_player():
    tracker = PlayerTracker()

    assert tracker.add_player("S", "Alice") is True
    assert tracker.add_player("S", "Alice") is False
    assert tracker.remove_player("S", "Alice") is True
    assert tracker.remove_player("S", "Alice") is False
    assert tracker.get_players("S") == []

import re

import pytest

from serverpanel.services.player_list import (
    PlayerListParser,
    RosterRule,
    build_parser,
    compile_roster_patterns,
)


def test_parses_count_of_max_roster():
    parser = PlayerListParser()
    assert parser.parse("There are 2 of a max of 20 players online: Alice, Bob") == ["Alice", "Bob"]


def test_parses_world_listing_roster():
    parser = PlayerListParser()
    assert "Onyxhunter" in parser.parse("default (1): : Onyxhunter (Onyxhunter)")


def test_unrelated_line_is_not_a_roster():
    parser = PlayerListParser()
    assert parser.parse("Saving world...") == []
    assert parser.match_line("Saving world...") is None


@pytest.mark.parametrize("line", [
    "[12:00:01 INFO]: Loaded 3 plugins in 120ms",
    "Unknown command. Type /help for help.",
    "> who",
    "Error: players online lookup failed",
    "Listening on 127.0.0.1, 0.0.0.0",
])
def test_non_roster_lines_do_not_match(line):
    assert PlayerListParser().match_line(line) is None


def test_parses_prefixed_multi_world_output():
    parser = PlayerListParser()
    text = "\n".join([
        "[2026/01/05 10:00:00   INFO] default (2): : Alice (Alice), Bob (Bob)",
        "[2026/01/05 10:00:00   INFO] creative (1): : Carol (Carol)",
    ])
    assert parser.parse(text) == ["Alice", "Bob", "Carol"]


def test_empty_rosters_still_match():
    parser = PlayerListParser()

    empty_world = parser.match_line("default (0): :")
    assert empty_world is not None
    assert empty_world.names == []

    none_online = parser.match_line("There are 0 of a max of 20 players online:")
    assert none_online is not None
    assert none_online.names == []

    assert parser.match_line("No players online").names == []


@pytest.mark.parametrize("line", [
    "[INFO] Heartbeat: 20 players online",
    "There are 20 players online:",
    "default (3): :",
    "Online players (4):",
    "3 players online: 12345",
])
def test_count_without_names_is_not_a_roster(line):
    assert PlayerListParser().match_line(line) is None


def test_zero_count_without_names_is_empty_roster():
    parser = PlayerListParser()

    assert parser.match_line("0 players online").names == []
    assert parser.match_line("[INFO] Heartbeat: 0 players online").names == []
    assert parser.match_line("There are 0 players online:").names == []


def test_bare_comma_list_requires_every_name_valid():
    parser = PlayerListParser()

    assert parser.parse("Alice, Bob, Carol") == ["Alice", "Bob", "Carol"]
    assert parser.parse("localhost, Bob") == []


def test_invalid_names_are_filtered_from_known_formats():
    parser = PlayerListParser()
    names = parser.parse("3 players online: Alice, 12345, QuicConnectionAddress")
    assert names == ["Alice"]


def test_duplicates_are_removed_in_order():
    parser = PlayerListParser()
    assert parser.parse("players online: Bob, Alice, Bob") == ["Bob", "Alice"]


@pytest.mark.parametrize("name,valid", [
    ("Alice", True),
    ("dark_knight-7", True),
    ("", False),
    ("x" * 33, False),
    ("1234", False),
    ("__--", False),
    ("192.168.0.1", False),
    ("null", False),
    ("(empty)", False),
    ("transitioning to setup", False),
    ("Bob!", False),
])
def test_name_validation_rules(name, valid):
    assert PlayerListParser().is_valid_name(name) is valid


def test_custom_rules_replace_defaults():
    rule = RosterRule("semicolon", re.compile(r"^Players:\s*(?P<players>.*)$"), separator=";")
    parser = PlayerListParser(rules=[rule], name_rules=[lambda name: name.isalpha()])

    assert parser.parse("Players: Alice; Bob; R2D2") == ["Alice", "Bob"]
    assert parser.parse("There are 1 of a max of 5 players online: Alice") == []


def test_compile_roster_patterns_skips_invalid_entries():
    rules = compile_roster_patterns([r"online -> (?P<players>.*)", r"no group (.*)", r"broken ("])
    assert [r.name for r in rules] == ["custom_0"]

    parser = build_parser({"roster_patterns": [r"online -> (?P<players>.*)"]})
    assert parser.parse("online -> Alice, Bob") == ["Alice", "Bob"]

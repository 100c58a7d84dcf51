# serverpanel/services/player_list.py
"""
Roster response parsing.

Game servers answer "who"-style commands in several free-form shapes:

    There are 2 of a max of 20 players online: Alice, Bob
    3 players online: Alice, Bob, Carol
    default (1): : Onyxhunter (Onyxhunter)
    Alice, Bob

Each shape is a RosterRule in an ordered table; candidate names then pass a
table of name checks. A line that matches no rule is not a roster line.
Missing a real roster for one poll is cheap, so the rules stay strict.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from serverpanel.services.console_text import strip_ansi

logger = logging.getLogger(__name__)

NAME_MIN_LEN = 1
NAME_MAX_LEN = 32

_NAME_CHARSET_RE = re.compile(r"^[A-Za-z0-9_\- ]+$")
_NAME_FILLER_RE = re.compile(r"^[\d\s_\-]+$")
_IP_LIKE_RE = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?$")

RESERVED_NAMES = frozenset({
    "empty", "(empty)", "empty)", "(empty",
    "quicconnectionaddress", "transitioning to setup", "transitioning",
    "none", "null", "undefined", "unknown",
})
RESERVED_FRAGMENTS = (
    "connectionaddress", "connection", "address",
    "localhost", "127.0.0.1", "setup", "transitioning",
)

# Lines containing these are command feedback, never rosters.
SKIP_MARKERS = ("error", "unknown command", "permission denied", "usage:")

# Optional "[time level] [source]" prefixes in front of the payload.
_PREFIX = r"^(?:\[[^\]]*\]:?\s*)*"

NameRule = Callable[[str], bool]


def _within_length(name: str) -> bool:
    return NAME_MIN_LEN <= len(name) <= NAME_MAX_LEN


def _not_reserved(name: str) -> bool:
    lowered = name.lower()
    if lowered in RESERVED_NAMES:
        return False
    return not any(fragment in lowered for fragment in RESERVED_FRAGMENTS)


def _allowed_charset(name: str) -> bool:
    return _NAME_CHARSET_RE.match(name) is not None


def _has_letter(name: str) -> bool:
    return _NAME_FILLER_RE.match(name) is None and any(c.isalpha() for c in name)


def _not_ip(name: str) -> bool:
    return _IP_LIKE_RE.match(name) is None


DEFAULT_NAME_RULES: tuple[NameRule, ...] = (
    _within_length,
    _not_reserved,
    _allowed_charset,
    _has_letter,
    _not_ip,
)


@dataclass(frozen=True)
class RosterRule:
    """A roster line shape. ``players`` group holds the separated name list."""
    name: str
    pattern: re.Pattern
    separator: str = ","
    require_all_valid: bool = False

    def extract(self, line: str) -> Optional[list[str]]:
        match = self.pattern.search(line)
        if not match:
            return None
        groups = match.groupdict()
        raw = groups.get("players") or ""
        names = []
        for part in raw.split(self.separator):
            # "Name (DisplayName)" -> "Name"
            candidate = part.split("(", 1)[0].strip()
            if candidate:
                names.append(candidate)
        if not names and "players" in self.pattern.groupindex and int(groups.get("count") or -1) != 0:
            # A count or header without names ("Heartbeat: 20 players online") is not a roster
            return None
        return names


DEFAULT_ROSTER_RULES: tuple[RosterRule, ...] = (
    RosterRule(
        "world_listing",
        re.compile(_PREFIX + r"\w+\s+\((?P<count>\d+)\):\s*:\s*(?P<players>.*)$"),
    ),
    RosterRule(
        "count_of_max",
        re.compile(
            r"\bthere\s+are\s+(?P<count>\d+)\s+(?:of\s+a\s+max\s+(?:of\s+)?\d+\s+)?players?\s+online"
            r"(?:\s*:\s*(?P<players>.*))?$",
            re.IGNORECASE,
        ),
    ),
    RosterRule(
        "count_online",
        re.compile(r"\b(?P<count>\d+)\s+players?\s+online(?:\s*:\s*(?P<players>.*))?$", re.IGNORECASE),
    ),
    RosterRule(
        "online_players",
        re.compile(r"\b(?:online\s+players?|players?\s+online)\s*(?:\((?P<count>\d+)\))?\s*:\s*(?P<players>.*)$", re.IGNORECASE),
    ),
    RosterRule(
        "no_players",
        re.compile(r"\bno\s+players\s+(?:are\s+)?(?:currently\s+)?online\b", re.IGNORECASE),
    ),
    RosterRule(
        "bare_list",
        re.compile(_PREFIX + r"(?P<players>[A-Za-z0-9_\-]+(?:,\s*[A-Za-z0-9_\-]+)+)\s*$"),
        require_all_valid=True,
    ),
)


@dataclass(frozen=True)
class RosterMatch:
    rule: str
    names: list[str]


class PlayerListParser:
    def __init__(
        self,
        rules: Optional[Sequence[RosterRule]] = None,
        name_rules: Optional[Sequence[NameRule]] = None,
    ):
        self.rules = list(rules) if rules is not None else list(DEFAULT_ROSTER_RULES)
        self.name_rules = list(name_rules) if name_rules is not None else list(DEFAULT_NAME_RULES)

    def is_valid_name(self, name: str) -> bool:
        name = name.strip()
        return all(rule(name) for rule in self.name_rules)

    def match_line(self, line: str) -> Optional[RosterMatch]:
        """Return the roster match for one cleaned line, or None if it is not a roster line."""
        line = line.strip()
        if not line or line.startswith(">"):
            return None
        lowered = line.lower()
        if any(marker in lowered for marker in SKIP_MARKERS):
            return None

        for rule in self.rules:
            candidates = rule.extract(line)
            if candidates is None:
                continue
            valid = [c for c in candidates if self.is_valid_name(c)]
            if candidates and not valid:
                continue
            if rule.require_all_valid and (not candidates or len(valid) != len(candidates)):
                continue
            return RosterMatch(rule.name, valid)
        return None

    def is_roster_line(self, line: str) -> bool:
        return self.match_line(line) is not None

    def parse(self, text: str) -> list[str]:
        """Extract unique player names from roster text, in first-seen order."""
        names: list[str] = []
        for raw_line in text.splitlines():
            match = self.match_line(strip_ansi(raw_line))
            if match is None:
                continue
            for name in match.names:
                if name not in names:
                    names.append(name)
        return names


def compile_roster_patterns(patterns: Iterable[str]) -> list[RosterRule]:
    """Build extra roster rules from user regexes; each needs a ``players`` group."""
    rules = []
    for index, raw in enumerate(patterns):
        try:
            pattern = re.compile(raw, re.IGNORECASE)
        except re.error as e:
            logger.warning(f"Skipping invalid roster pattern {raw!r}: {e}")
            continue
        if "players" not in pattern.groupindex:
            logger.warning(f"Skipping roster pattern {raw!r}: missing named group 'players'")
            continue
        rules.append(RosterRule(f"custom_{index}", pattern, require_all_valid=True))
    return rules


def build_parser(extra_rules: Optional[dict] = None) -> PlayerListParser:
    """Parser with custom roster patterns from console_rules.yml ahead of the built-ins."""
    extra_rules = extra_rules or {}
    custom = compile_roster_patterns(extra_rules.get("roster_patterns", ()))
    return PlayerListParser(rules=[*custom, *DEFAULT_ROSTER_RULES])

# serverpanel/services/console_text.py
"""
Console output sanitizing and classification.

Raw process output is cleaned of ANSI escapes before anything else looks at
it. Cleaned lines then run through ordered rule tables that pick the log
level and decide whether the line signals an authentication state change
or can be dropped.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence

logger = logging.getLogger(__name__)

# OSC (terminated by BEL or ST), then CSI, then two-byte escapes.
ANSI_ESCAPE_RE = re.compile(
    r"\x1b(?:\][^\x07\x1b]*(?:\x07|\x1b\\)|\[[0-?]*[ -/]*[@-~]|[@-Z\\-_])"
)

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"

# First match wins.
LEVEL_RULES: Sequence[tuple[tuple[str, ...], str]] = (
    (("error", "exception"), LEVEL_ERROR),
    (("warn",), LEVEL_WARNING),
)

AUTH_PROMPT_PHRASES = (
    "authentication required",
    "please authenticate",
    "auth login required",
    "use /auth login",
    "run /auth login device",
    "authentication token needed",
    "login required to continue",
    "please run /auth",
    "auth: login required",
    "server requires authentication",
)

AUTH_SUCCESS_PHRASES = (
    "authentication successful",
    "auth login successful",
    "successfully authenticated",
    "login completed",
    "authentication verified",
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences (colors, cursor moves, titles) from text."""
    return ANSI_ESCAPE_RE.sub("", text)


def classify_level(line: str, default_level: str = LEVEL_INFO) -> str:
    lowered = line.lower()
    for needles, level in LEVEL_RULES:
        if any(needle in lowered for needle in needles):
            return level
    return default_level


class LineKind(str, Enum):
    NORMAL = "normal"
    AUTH_REQUIRED = "auth_required"
    AUTH_SUCCESS = "auth_success"
    IGNORABLE = "ignorable"


@dataclass(frozen=True)
class ConsoleRule:
    kind: LineKind
    pattern: re.Pattern

    @classmethod
    def phrase(cls, kind: LineKind, text: str) -> "ConsoleRule":
        return cls(kind, re.compile(re.escape(text), re.IGNORECASE))

    def matches(self, line: str) -> bool:
        return self.pattern.search(line) is not None


@dataclass(frozen=True)
class ClassifiedLine:
    text: str
    level: str
    kind: LineKind


def default_console_rules(
    ignored: Iterable[str] = (),
    auth_prompts: Iterable[str] = (),
    auth_success: Iterable[str] = (),
) -> list[ConsoleRule]:
    rules = [ConsoleRule.phrase(LineKind.IGNORABLE, p) for p in ignored]
    rules += [ConsoleRule.phrase(LineKind.AUTH_REQUIRED, p) for p in (*AUTH_PROMPT_PHRASES, *auth_prompts)]
    rules += [ConsoleRule.phrase(LineKind.AUTH_SUCCESS, p) for p in (*AUTH_SUCCESS_PHRASES, *auth_success)]
    return rules


class OutputClassifier:
    """Ordered rule table over cleaned console lines. First matching rule wins."""

    def __init__(self, rules: Optional[Sequence[ConsoleRule]] = None):
        self.rules = list(rules) if rules is not None else default_console_rules()

    def classify(self, line: str, default_level: str = LEVEL_INFO) -> ClassifiedLine:
        if not line.strip():
            return ClassifiedLine(line, default_level, LineKind.IGNORABLE)

        kind = LineKind.NORMAL
        for rule in self.rules:
            if rule.matches(line):
                kind = rule.kind
                break
        return ClassifiedLine(line, classify_level(line, default_level), kind)


def build_classifier(extra_rules: Optional[dict] = None) -> OutputClassifier:
    """Classifier with the built-in tables plus phrases from console_rules.yml."""
    extra_rules = extra_rules or {}
    return OutputClassifier(default_console_rules(
        ignored=extra_rules.get("ignored", ()),
        auth_prompts=extra_rules.get("auth_prompts", ()),
        auth_success=extra_rules.get("auth_success", ()),
    ))

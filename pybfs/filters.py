"""Glob based include/exclude filters and copy filters.

A filter file is a list of rules, one per line::

    # compress everything ...
    + **
    # ... except the menu backgrounds
    - data/menu/bg/*

The last rule that matches a path decides, a path no rule matches is
excluded.  ``*`` and ``?`` never cross a ``/``, ``**`` does.

Copy filters use the same globs prefixed with ``N+M`` and give the number of
extra physical copies an archived file gets (``N + M``).
"""

from __future__ import annotations

import enum
import functools
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import InvalidFilter

DATA_DIR = Path(__file__).resolve().parent / "data"

FILTER_NAMES = ("all", "none")
COPY_FILTER_NAMES = ("none",)

_COPY_RULE = re.compile(r"^(\d+)\+(\d+) (.+)$")


class Decision(enum.Enum):
    INCLUDE = "+"
    EXCLUDE = "-"


@dataclass(frozen=True)
class FilterRule:
    pattern: str
    polarity: Decision

    def matches(self, path: str) -> bool:
        return glob_regex(self.pattern).fullmatch(path) is not None


@dataclass(frozen=True)
class CopyRule:
    pattern: str
    copies: int

    def matches(self, path: str) -> bool:
        return glob_regex(self.pattern).fullmatch(path) is not None


@functools.lru_cache(maxsize=None)
def glob_regex(pattern: str) -> re.Pattern:
    """Compile a glob where only ``**`` may cross path separators."""
    i, n = 0, len(pattern)
    out = []
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                after = i + 2
                whole_component = (i == 0 or pattern[i - 1] == "/") and (after == n or pattern[after] == "/")
                if not whole_component:
                    out.append("[^/]*")
                elif after == n:
                    out.append(".*")
                else:
                    # "**/x" also matches "x"
                    out.append("(?:.*/)?")
                    after += 1
                i = after
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = pattern.find("]", i + 2 if pattern.startswith("[!", i) or pattern.startswith("[^", i) else i + 1)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:j]
                negate = body[:1] in ("!", "^")
                if negate:
                    body = body[1:]
                body = body.replace("\\", "\\\\")
                out.append("(?!/)[%s%s]" % ("^" if negate else "", body))
                i = j
        elif c == "{":
            j = pattern.find("}", i)
            if j == -1:
                out.append(re.escape(c))
            else:
                choices = pattern[i + 1:j].split(",")
                out.append("(?:%s)" % "|".join(glob_regex(choice).pattern for choice in choices))
                i = j
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out), re.DOTALL)


def _content_lines(lines: Iterable[str]):
    for number, line in enumerate(lines, 1):
        line = line.rstrip("\r\n")
        if not line.strip() or line.startswith("#"):
            continue
        yield number, line


def parse_filter_rules(lines: Iterable[str] | str) -> list[FilterRule]:
    if isinstance(lines, str):
        lines = lines.splitlines()
    rules = []
    for number, line in _content_lines(lines):
        if len(line) < 3 or line[0] not in "+-" or line[1] != " " or not line[2:].strip():
            raise InvalidFilter(line, number)
        rules.append(FilterRule(line[2:].strip(), Decision(line[0])))
    return rules


def parse_copy_rules(lines: Iterable[str] | str) -> list[CopyRule]:
    if isinstance(lines, str):
        lines = lines.splitlines()
    rules = []
    for number, line in _content_lines(lines):
        match = _COPY_RULE.match(line)
        if match is None:
            raise InvalidFilter(line, number, "expected 'N+M glob'")
        copies = int(match.group(1)) + int(match.group(2))
        rules.append(CopyRule(match.group(3).strip(), copies))
    return rules


def evaluate(path: str, rules: Iterable[FilterRule]) -> Decision:
    decision = Decision.EXCLUDE
    for rule in rules:
        if rule.matches(path):
            decision = rule.polarity
    return decision


def copy_count(path: str, rules: Iterable[CopyRule]) -> int:
    copies = 0
    for rule in rules:
        if rule.matches(path):
            copies = rule.copies
    return copies


def apply_filters(paths: Iterable[str], rules: list[FilterRule]) -> list[str]:
    """Return the paths the rules include, keeping their order."""
    return [path for path in paths if evaluate(path, rules) is Decision.INCLUDE]


def _read_profile(folder: str, name: str, known: tuple[str, ...]) -> str:
    if name not in known:
        raise ValueError("Unknown filter %r, expected one of: %s" % (name, ", ".join(known)))
    return (DATA_DIR / folder / (name + ".txt")).read_text(encoding="utf-8")


def load_filter(name: str) -> list[FilterRule]:
    return parse_filter_rules(_read_profile("filters", name, FILTER_NAMES))


def load_filter_file(path) -> list[FilterRule]:
    return parse_filter_rules(Path(path).read_text(encoding="utf-8"))


def load_copy_filter(name: str) -> list[CopyRule]:
    return parse_copy_rules(_read_profile("copy_filters", name, COPY_FILTER_NAMES))


def load_copy_filter_file(path) -> list[CopyRule]:
    return parse_copy_rules(Path(path).read_text(encoding="utf-8"))

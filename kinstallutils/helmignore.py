"""Chart ignore rules: path matching in the style of a .helmignore file."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Tuple, Union

logger = logging.getLogger(__name__)

HELM_IGNORE = ".helmignore"

_BAD_PATTERN = "syntax error in pattern"


def _read_class_char(pattern: str, i: int) -> Tuple[str, int]:
    """Read one (possibly escaped) character of a bracket expression."""
    if i >= len(pattern) or pattern[i] in "-]":
        raise ValueError(_BAD_PATTERN)
    if pattern[i] == "\\":
        i += 1
        if i >= len(pattern):
            raise ValueError(_BAD_PATTERN)
    return pattern[i], i + 1


def _compile_class(pattern: str, i: int) -> Tuple[str, int]:
    """Translate a bracket expression starting just after '['."""
    negate = i < len(pattern) and pattern[i] == "^"
    if negate:
        i += 1
    ranges: List[Tuple[str, str]] = []
    while True:
        if i < len(pattern) and pattern[i] == "]" and ranges:
            i += 1
            break
        lo, i = _read_class_char(pattern, i)
        hi = lo
        if i < len(pattern) and pattern[i] == "-":
            hi, i = _read_class_char(pattern, i + 1)
        ranges.append((lo, hi))
    body = "".join(f"{re.escape(lo)}-{re.escape(hi)}" for lo, hi in ranges if lo <= hi)
    if negate:
        return (f"[^{body}]" if body else "."), i
    return (f"[{body}]" if body else "(?!)"), i


def _compile_glob(pattern: str) -> "re.Pattern[str]":
    """Compile a shell pattern where '*' and '?' never match '/'.

    Raises ValueError for malformed patterns.
    """
    out: List[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            out.append("[^/]*")
            i += 1
        elif char == "?":
            out.append("[^/]")
            i += 1
        elif char == "\\":
            if i + 1 >= len(pattern):
                raise ValueError(_BAD_PATTERN)
            out.append(re.escape(pattern[i + 1]))
            i += 2
        elif char == "[":
            translated, i = _compile_class(pattern, i + 1)
            out.append(translated)
        else:
            out.append(re.escape(char))
            i += 1
    return re.compile("".join(out), re.DOTALL)


def _base(path: str) -> str:
    """The last element of a slash-separated path."""
    if path == "":
        return "."
    stripped = path.rstrip("/")
    if stripped == "":
        return "/"
    return stripped.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class _Pattern:
    raw: str
    match: Callable[[str], bool]
    negate: bool = False
    must_dir: bool = False


def _matcher(rule: str, basename_only: bool) -> Callable[[str], bool]:
    try:
        regex = _compile_glob(rule)
    except ValueError as exc:
        logger.warning("Failed to compile %r: %s", rule, exc)
        return lambda name: False
    if basename_only:
        return lambda name: regex.fullmatch(_base(name)) is not None
    return lambda name: regex.fullmatch(name) is not None


class Rules:
    """An ordered collection of path matching rules."""

    def __init__(self) -> None:
        self._patterns: List[_Pattern] = []

    def __len__(self) -> int:
        return len(self._patterns)

    def add_defaults(self) -> None:
        """Ignore all dotfiles in templates/."""
        self._parse_rule("templates/.?*")

    def ignore(self, path: str, is_dir: bool) -> bool:
        """True if the path should be ignored.

        Rules are evaluated in order; the first match decides, and a negative
        rule that does not match also decides.
        """
        if path in ("", ".", "./"):
            return False
        for pattern in self._patterns:
            if pattern.negate:
                if pattern.must_dir and not is_dir:
                    return True
                if not pattern.match(path):
                    return True
                continue
            if pattern.must_dir and not is_dir:
                continue
            if pattern.match(path):
                return True
        return False

    def _parse_rule(self, rule: str) -> None:
        rule = rule.strip()
        if not rule or rule.startswith("#"):
            return
        if "**" in rule:
            raise ValueError("double-star (**) syntax is not supported")
        _compile_glob(rule)

        raw = rule
        negate = rule.startswith("!")
        if negate:
            rule = rule[1:]
        must_dir = rule.endswith("/")
        if must_dir:
            rule = rule[:-1]

        if rule.startswith("/"):
            match = _matcher(rule[1:], basename_only=False)
        elif "/" in rule:
            match = _matcher(rule, basename_only=False)
        else:
            match = _matcher(rule, basename_only=True)
        self._patterns.append(_Pattern(raw=raw, match=match, negate=negate, must_dir=must_dir))


def empty() -> Rules:
    """An empty rule set."""
    return Rules()


def parse(source: Union[str, Iterable[str]]) -> Rules:
    """Parse rules from text or from an iterable of lines such as an open file."""
    lines = source.splitlines() if isinstance(source, str) else source
    rules = Rules()
    for line in lines:
        rules._parse_rule(line)
    return rules


def parse_file(path: Union[str, Path]) -> Rules:
    """Parse the rules in an ignore file."""
    with open(path, encoding="utf-8") as handle:
        return parse(handle)
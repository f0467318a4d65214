"""Path normalization rules for transaction names.

WHY NORMALIZE
---------------
APM backends group transactions by name.  Naming them after the raw path
gives one group per page id:

  GET /pages/new/41
  GET /pages/new/42
  GET /pages/new/43   ... (one per page, forever)

That is a "metric grouping issue": too many unique names, so none of
them accumulates enough samples to be useful.  A rule collapses them:

  (/pages/new)/\\S+   ->   $1        GET /pages/new/42  =>  GET /pages/new

RULE SEMANTICS
----------------
- Rules apply in order, each to the output of the previous one
  (cumulative, not first-match-wins).  That lets rules compose.
- Each rule replaces the FIRST match only.
- Replacements are templates.  $1 or ${1} inserts capture group 1
  (empty if the group did not participate).  Everything else is
  literal.  Replacements are never evaluated as code.
- A rule with an empty pattern or empty replacement is ignored.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from apm_instrumenter.core.config import ConfigurationError

_BACKREF = re.compile(r"\$(?:(\d+)|\{(\d+)\})")


@dataclass(frozen=True, slots=True)
class PathRule:
    pattern: re.Pattern[str]
    replacement: str

    def apply(self, path: str) -> str:
        return self.pattern.sub(self._expand, path, count=1)

    def _expand(self, match: re.Match[str]) -> str:
        def group(ref: re.Match[str]) -> str:
            index = int(ref.group(1) or ref.group(2))
            return match.group(index) or ""

        return _BACKREF.sub(group, self.replacement)


def compile_path_rules(pairs: Iterable[tuple[str, str]]) -> tuple[PathRule, ...]:
    """Compile (pattern, replacement) pairs, preserving order.

    Raises ConfigurationError for an invalid pattern or a back-reference
    to a group the pattern does not define.
    """
    rules: list[PathRule] = []
    for pattern, replacement in pairs:
        if not pattern or not replacement:
            continue
        try:
            compiled = re.compile(pattern)
        except re.error as exc:
            raise ConfigurationError(f"Invalid path rule pattern {pattern!r}: {exc}") from None

        for ref in _BACKREF.finditer(replacement):
            index = int(ref.group(1) or ref.group(2))
            if index > compiled.groups:
                raise ConfigurationError(
                    f"Path rule replacement {replacement!r} refers to group {index}, "
                    f"but {pattern!r} has {compiled.groups}"
                )
        rules.append(PathRule(pattern=compiled, replacement=replacement))
    return tuple(rules)


def transform_path(path: str, rules: Iterable[PathRule]) -> str:
    for rule in rules:
        path = rule.apply(path)
    return path

"""
Semantic version parsing and range evaluation.

Constraint grammar (as found in vulnerability feeds):
    range      := group ( "||" group )*
    group      := comparator ( ("," | whitespace) comparator )*
    comparator := [ "<" | "<=" | ">" | ">=" | "=" | "==" | "!=" ] version

Each group becomes a packaging SpecifierSet (all comparators must hold),
a range holds when any of its groups does.
"""
import re
from dataclasses import dataclass
from typing import Tuple

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version


class ConstraintError(ValueError):
    """Raised when a constraint expression cannot be parsed"""


_COMPARATOR = re.compile(r"\s*(<=|>=|==|!=|<|>|=)?\s*([^\s,<>=!|]+)\s*,?")

# Feeds write equality as a bare version or a single "="
_EQUALITY = {None: "==", "=": "=="}

PLACEHOLDER_VERSION = "0.0.0"


def parse_version(text: str) -> Version:
    """Parse a version string, tolerating a leading 'v' (v1.2.3)"""
    if text is None:
        raise InvalidVersion("empty version")
    cleaned = str(text).strip()
    if cleaned[:1] in ("v", "V"):
        cleaned = cleaned[1:]
    if not cleaned:
        raise InvalidVersion("empty version")
    return Version(cleaned)


def branch_of(version: Version) -> Tuple[int, ...]:
    """Release line a version belongs to: the major, or 0.minor for 0.x"""
    if version.major == 0:
        return (0, version.minor)
    return (version.major,)


@dataclass(frozen=True)
class VersionRange:
    groups: Tuple[SpecifierSet, ...]

    @classmethod
    def parse(cls, expression: str) -> "VersionRange":
        if not expression or not expression.strip():
            raise ConstraintError("empty constraint")
        return cls(tuple(cls._parse_group(raw_group, expression) for raw_group in expression.split("||")))

    @staticmethod
    def _parse_group(raw_group: str, expression: str) -> SpecifierSet:
        specifiers = []
        pos = 0
        text = raw_group.strip()
        while pos < len(text):
            match = _COMPARATOR.match(text, pos)
            if not match or match.end() == pos:
                raise ConstraintError(f"unexpected input at {text[pos:]!r} in {expression!r}")
            op, raw_version = match.group(1), match.group(2)
            try:
                version = parse_version(raw_version)
            except InvalidVersion as e:
                raise ConstraintError(f"bad version {raw_version!r} in {expression!r}") from e
            specifiers.append(f"{_EQUALITY.get(op, op)}{version}")
            pos = match.end()

        if not specifiers:
            raise ConstraintError(f"empty group in {expression!r}")
        try:
            return SpecifierSet(",".join(specifiers), prereleases=True)
        except InvalidSpecifier as e:
            raise ConstraintError(f"bad specifier in {expression!r}: {e}") from e

    def contains(self, candidate: Version) -> bool:
        return any(group.contains(candidate, prereleases=True) for group in self.groups)

    def __str__(self):
        return " || ".join(str(group) for group in self.groups)

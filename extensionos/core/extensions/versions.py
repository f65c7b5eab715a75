"""Semantic version helpers for version manifests and replacement constraints"""

import re
from typing import Iterable, List, Optional

from semver import Version

_WILDCARD_RE = re.compile(r'^v?(\d+)(?:\.(\d+))?\.[*xX]$')
_OPERATOR_RE = re.compile(r'^(>=|<=|==|!=|>|<|=|\^|~)?\s*(.+)$')
_OPERATORS = {'>=', '<=', '==', '!=', '>', '<', '=', '^', '~'}


def normalize_version(version) -> str:
    """Strip whitespace and a leading 'v'/'V' from a version string"""
    text = str(version).strip()
    if text[:1] in ('v', 'V'):
        text = text[1:]
    return text


def parse_version(version) -> Version:
    """
    Parse a version string, accepting short forms such as '1.0'

    Raises:
        ValueError: If the string is not a semantic version
    """
    return Version.parse(normalize_version(version), optional_minor_and_patch=True)


def is_valid_version(version) -> bool:
    try:
        parse_version(version)
    except (TypeError, ValueError):
        return False
    return True


def compare_versions(left, right) -> int:
    """Return -1, 0 or 1 by semantic version precedence"""
    return parse_version(left).compare(parse_version(right))


def sort_versions(versions: Iterable[str]) -> List[str]:
    return sorted(versions, key=parse_version)


def is_newer(candidate, current) -> bool:
    return compare_versions(candidate, current) > 0


def _next_major(version: Version) -> Version:
    return Version(version.major + 1, 0, 0)


def _next_minor(version: Version) -> Version:
    return Version(version.major, version.minor + 1, 0)


def _split_clauses(expression: str) -> List[str]:
    """Split 'a, b' or 'a b' into clauses, keeping '>= 1.0' together"""
    clauses: List[str] = []
    pending = ''
    for token in expression.replace(',', ' ').split():
        if token in _OPERATORS:
            pending += token
            continue
        clauses.append(pending + token)
        pending = ''
    if pending:
        raise ValueError(f"Dangling operator in constraint: {expression}")
    return clauses


def _clause_matches(version: Version, clause: str) -> bool:
    if clause in ('', '*'):
        return True

    wildcard = _WILDCARD_RE.match(clause)
    if wildcard:
        if version.major != int(wildcard.group(1)):
            return False
        minor: Optional[str] = wildcard.group(2)
        return minor is None or version.minor == int(minor)

    match = _OPERATOR_RE.match(clause)
    if not match:
        raise ValueError(f"Invalid version constraint: {clause}")
    operator, raw = match.group(1) or '=', match.group(2)
    bound = parse_version(raw)

    if operator == '^':
        upper = _next_major(bound) if bound.major > 0 else _next_minor(bound)
        return bound <= version < upper
    if operator == '~':
        # ~1.2 allows any 1.x from 1.2, ~1.2.3 allows any 1.2.x from 1.2.3
        parts = normalize_version(raw).split('-')[0].split('.')
        upper = _next_major(bound) if len(parts) <= 2 else _next_minor(bound)
        return bound <= version < upper

    cmp = version.compare(bound)
    return {
        '>=': cmp >= 0,
        '<=': cmp <= 0,
        '>': cmp > 0,
        '<': cmp < 0,
        '!=': cmp != 0,
        '==': cmp == 0,
        '=': cmp == 0,
    }[operator]


def satisfies(version, constraint: Optional[str]) -> bool:
    """
    Check a version against a constraint expression

    Supports '*', comparison operators, '^' and '~' ranges and 'X.*'
    wildcards. Clauses separated by ',' or whitespace must all match;
    alternatives are separated by '||'.

    Raises:
        ValueError: If the version or constraint cannot be parsed
    """
    if constraint is None or constraint.strip() in ('', '*'):
        return True

    parsed = parse_version(version)
    for alternative in constraint.split('||'):
        clauses = _split_clauses(alternative)
        if all(_clause_matches(parsed, clause) for clause in clauses):
            return True
    return False

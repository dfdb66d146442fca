"""Tag predicate matching: decides which tiers protect a resource.

Rules inside one tier are AND-ed. Tiers are evaluated independently, so a
resource may match zero, one or several tiers at the same time.
Comparison is case-sensitive and a resource that lacks the rule's key never
matches, whatever the operator.
"""

import re

from internal.models.types import Operator, OPERATOR_ALIASES, SelectionRule


def parse_operator(value) -> Operator:
    """Accept an Operator, its name, or a backend alias like STRINGEQUALS."""
    if isinstance(value, Operator):
        return value
    raw = str(value or "EQUALS").strip().upper()
    if raw in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[raw]
    return Operator(raw)


def _like(pattern: str, value: str) -> bool:
    # only `*` is a wildcard
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.fullmatch(regex, value, flags=re.DOTALL) is not None


def matches(resource_tags: dict, rule: SelectionRule) -> bool:
    if rule.tag_key not in resource_tags:
        return False
    value = resource_tags[rule.tag_key]
    op = rule.operator
    if op == Operator.EQUALS:
        return value == rule.tag_value
    if op == Operator.NOT_EQUALS:
        return value != rule.tag_value
    if op == Operator.LIKE:
        return _like(rule.tag_value, value)
    if op == Operator.NOT_LIKE:
        return not _like(rule.tag_value, value)
    raise ValueError(f"Unsupported selection operator: {op}")


def matches_all(resource_tags: dict, rules) -> bool:
    """AND across rules. An empty rule set selects nothing."""
    rules = tuple(rules)
    if not rules:
        return False
    return all(matches(resource_tags, r) for r in rules)


def matching_tiers(resource_tags: dict, tiers) -> list:
    """Return the tiers (in the given order) whose selection matches."""
    return [t for t in tiers if matches_all(resource_tags, t.selection)]

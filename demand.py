from typing import List, Sequence

from schemas import DemandRule


def is_due(rule: DemandRule, session_number: int) -> bool:
    """A rule is due in every session whose number is a multiple of its frequency."""
    return session_number % rule.frequency == 0


def due_rules(rules: Sequence[DemandRule], session_number: int) -> List[DemandRule]:
    return [r for r in rules if is_due(r, session_number)]


def total_demand(rules: Sequence[DemandRule], session_number: int) -> int:
    return sum(r.cars_per_session for r in due_rules(rules, session_number))


def describe_rules(rules: Sequence[DemandRule]) -> str:
    if not rules:
        return "No demand configured"
    parts = []
    for r in rules:
        what = r.aar_type_id if not r.commodity_id else f"{r.aar_type_id} ({r.commodity_id}, {r.direction})"
        parts.append(f"{r.cars_per_session} {what}(s) every {r.frequency} session(s)")
    return ", ".join(parts)

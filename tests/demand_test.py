# tests/demand_test.py
from __future__ import annotations

from demand import describe_rules, due_rules, is_due, total_demand
from schemas import DemandRule


def build_rules() -> list:
    return [
        DemandRule(compatible_car_types=["XM"], cars_per_session=2, frequency=1),
        DemandRule(commodity_id="grain", compatible_car_types=["LO", "XM"], cars_per_session=1, frequency=3),
    ]


def test_every_session_rule_is_always_due():
    rule = build_rules()[0]
    assert all(is_due(rule, n) for n in range(1, 10))


def test_rule_is_due_on_multiples_of_its_frequency():
    rule = build_rules()[1]
    assert [n for n in range(1, 10) if is_due(rule, n)] == [3, 6, 9]


def test_due_rules_and_total_demand():
    rules = build_rules()
    assert due_rules(rules, 2) == [rules[0]]
    assert total_demand(rules, 2) == 2
    assert total_demand(rules, 3) == 3


def test_first_compatible_type_is_the_primary_type():
    assert build_rules()[1].aar_type_id == "LO"


def test_describe_rules():
    assert describe_rules([]) == "No demand configured"
    text = describe_rules(build_rules())
    assert "2 XM(s) every 1 session(s)" in text
    assert "LO (grain, inbound)" in text

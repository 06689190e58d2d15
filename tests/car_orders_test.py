# tests/car_orders_test.py
from __future__ import annotations

import pytest

from database import CAR_ORDER, INDUSTRY
from errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from transitions import ORDER_TRANSITIONS, check_order_transition

STATUSES = ["pending", "assigned", "in-transit", "delivered"]


# ───────────────────────────── generation ───────────────────────────── #

def test_generate_creates_one_order_per_car_for_due_rules(orders):
    result = orders.generate()

    assert result.session_number == 1
    assert len(result.created) == 2
    assert {o.industry_id for o in result.created} == {"MILL"}
    assert all(o.status == "pending" and o.aar_type_id == "XM" for o in result.created)
    assert result.summary.total_orders_generated == 2
    assert result.summary.industries_processed == 2
    assert result.summary.orders_by_aar_type == {"XM": 2}


def test_generate_honours_rule_frequency(orders):
    result = orders.generate(session_number=2)
    assert result.summary.orders_by_industry == {"MILL": 2, "TANK": 1}
    tank = [o for o in result.created if o.industry_id == "TANK"][0]
    assert tank.commodity_id == "fuel-oil"
    assert tank.compatible_car_types == ["TA"]


def test_generate_deduplicates_pending_orders_unless_forced(orders, store):
    assert len(orders.generate().created) == 2
    assert len(orders.generate().created) == 0
    assert len(orders.generate(force=True).created) == 2
    assert store.count(CAR_ORDER, {"industry_id": "MILL", "status": "pending"}) == 4


def test_generate_skips_missing_industries_and_unknown_types(orders, store):
    store.create(INDUSTRY, {
        "id": "ODD", "name": "Odd Works", "station_id": "S_A",
        "demand_rules": [{"compatible_car_types": ["ZZ"], "cars_per_session": 1}],
    })
    result = orders.generate(industry_ids=["MILL", "NOPE", "ODD"])

    assert len(result.created) == 2
    skipped = {s.industry_id: s.reason for s in result.summary.skipped_industries}
    assert skipped["NOPE"] == "industry not found"
    assert "ZZ" in skipped["ODD"]
    assert result.summary.industries_processed == 1


def test_generate_rejects_session_zero(orders):
    with pytest.raises(ValidationError):
        orders.generate(session_number=0)


def test_generated_orders_share_a_creation_time(orders):
    created = orders.generate().created
    assert len({o.created_at for o in created}) == 1


# ───────────────────────────── state machine ───────────────────────────── #

@pytest.mark.parametrize("current", STATUSES)
@pytest.mark.parametrize("new", STATUSES)
def test_order_transition_table_is_closed(current, new):
    if new in ORDER_TRANSITIONS[current]:
        check_order_transition(current, new)
    else:
        with pytest.raises(InvalidTransitionError) as err:
            check_order_transition(current, new)
        assert err.value.allowed == list(ORDER_TRANSITIONS[current])


def test_delivered_is_terminal():
    assert ORDER_TRANSITIONS["delivered"] == ()


# ───────────────────────────── single orders ───────────────────────────── #

def test_update_status_validates_transitions_and_car_type(orders):
    order = orders.generate().created[0]

    with pytest.raises(InvalidTransitionError) as err:
        orders.update_status(order.id, "in-transit")
    assert err.value.allowed == ["assigned", "delivered"]

    with pytest.raises(ValidationError):
        orders.update_status(order.id, "assigned", assigned_car_id="C3")

    updated = orders.update_status(order.id, "assigned", assigned_car_id="C1")
    assert updated.status == "assigned"
    assert updated.assigned_car_id == "C1"

    back = orders.update_status(order.id, "pending")
    assert back.assigned_car_id is None


def test_committed_orders_cannot_be_deleted(orders):
    order = orders.generate().created[0]
    orders.update_status(order.id, "assigned", assigned_car_id="C1")
    with pytest.raises(ConflictError):
        orders.delete_order(order.id)

    orders.update_status(order.id, "delivered")
    orders.delete_order(order.id)
    with pytest.raises(NotFoundError):
        orders.get_order(order.id)


def test_create_order_checks_references_and_duplicates(orders):
    with pytest.raises(NotFoundError):
        orders.create_order("NOPE", "XM")
    with pytest.raises(NotFoundError):
        orders.create_order("MILL", "ZZ")

    order = orders.create_order("MILL", "XM", compatible_car_types=["FC"])
    assert order.accepted_car_types == ["XM", "FC"]
    with pytest.raises(ConflictError):
        orders.create_order("MILL", "XM")


def test_list_orders_and_stats(orders):
    orders.generate(session_number=2)
    assert [o.industry_id for o in orders.list_orders(industry_id="TANK")] == ["TANK"]
    assert len(orders.list_orders(status="pending", session_number=2)) == 3

    stats = orders.order_stats(session_number=2)
    assert stats.total_orders == 3
    assert stats.orders_by_status == {"pending": 3}
    assert stats.orders_by_aar_type == {"XM": 2, "TA": 1}

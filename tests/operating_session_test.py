# tests/operating_session_test.py
from __future__ import annotations

import pytest
from pymongo.errors import PyMongoError

from database import CAR, CAR_ORDER, TRAIN
from errors import ConflictError, RollbackNotAllowedError, ValidationError


def world_state(store) -> dict:
    return {c: store.find_all(c) for c in (CAR, TRAIN, CAR_ORDER)}


def busy_session(orders, trains):
    """One completed train, one still running, and a leftover order."""
    orders.generate()
    orders.create_order("TANK", "TA", commodity_id="fuel-oil")
    done = trains.create_train("Local 1", "R1", ["L1"], 1)
    trains.generate_switch_list(done.id)
    trains.complete_train(done.id)
    running = trains.create_train("Local 2", "R1", ["L2"], 10)
    trains.generate_switch_list(running.id)
    return running


def test_first_use_creates_session_one(sessions):
    session = sessions.get_current()
    assert session.current_session_number == 1
    assert session.description == "Initial operating session"
    assert not session.can_rollback
    assert sessions.get_current().session_date == session.session_date


def test_advance_opens_the_next_session(orders, trains, sessions, store):
    running = busy_session(orders, trains)

    session, stats = sessions.advance()

    assert session.current_session_number == 2
    assert session.description == "Operating session 2"
    assert session.can_rollback
    assert stats["trains_deleted"] == 2
    assert stats["orders_reverted"] == 2
    assert store.count(TRAIN) == 0
    # delivered orders keep the train that delivered them
    for doc in store.find_by_query(CAR_ORDER, {"status": {"$ne": "delivered"}}):
        assert doc["status"] == "pending"
        assert doc["assigned_train_id"] is None
    assert store.count(CAR_ORDER, {"assigned_train_id": running.id}) == 0
    assert store.find_by_id(CAR, "C3")["sessions_at_current_location"] == 1
    assert store.count(CAR, {"assigned_train_id": running.id}) == 0


def test_advance_then_rollback_restores_everything(orders, trains, sessions, store):
    busy_session(orders, trains)
    before = world_state(store)

    sessions.advance("Tuesday night")
    session, stats = sessions.rollback()

    assert world_state(store) == before
    assert session.current_session_number == 1
    assert session.description == "Rolled back to session 1"
    assert stats["rolled_back_to_session"] == 1
    assert session.previous_session_snapshot is None


def test_rollback_leaves_untouched_car_documents_as_they_were(sessions, store):
    # seeded cars carry none of the per-session fields
    before = store.find_by_id(CAR, "C4")
    assert "sessions_at_current_location" not in before

    sessions.advance()
    assert store.find_by_id(CAR, "C4")["sessions_at_current_location"] == 1
    sessions.rollback()

    assert store.find_by_id(CAR, "C4") == before


def test_rollback_is_one_level_deep(sessions):
    with pytest.raises(RollbackNotAllowedError):
        sessions.rollback()

    sessions.advance()
    sessions.advance()
    sessions.rollback()
    assert sessions.get_current().current_session_number == 2
    with pytest.raises(RollbackNotAllowedError):
        sessions.rollback()


def test_interrupted_advance_is_recovered(orders, trains, sessions, store, monkeypatch):
    busy_session(orders, trains)
    before = world_state(store)

    def broken_increment(*args, **kwargs):
        raise PyMongoError("primary stepped down")

    monkeypatch.setattr(store, "increment", broken_increment)
    with pytest.raises(PyMongoError):
        sessions.advance()
    monkeypatch.undo()

    assert sessions.get_current().in_flight == "advance"
    with pytest.raises(ConflictError):
        sessions.advance()

    session, recovered = sessions.recover()

    assert recovered == "advance"
    assert session.current_session_number == 1
    assert session.in_flight is None
    assert world_state(store) == before
    sessions.advance()
    assert sessions.get_current().current_session_number == 2


def test_interrupted_rollback_is_finished(orders, sessions, store, monkeypatch):
    orders.generate()
    sessions.advance()
    real_bulk_insert = store.bulk_insert

    def broken_bulk_insert(collection, docs):
        if collection == CAR_ORDER:
            raise PyMongoError("write concern timeout")
        return real_bulk_insert(collection, docs)

    monkeypatch.setattr(store, "bulk_insert", broken_bulk_insert)
    with pytest.raises(PyMongoError):
        sessions.rollback()
    monkeypatch.undo()
    assert store.count(CAR_ORDER) == 0

    session, recovered = sessions.recover()

    assert recovered == "rollback"
    assert session.current_session_number == 1
    assert store.count(CAR_ORDER) == 2


def test_recover_without_interruption_is_a_no_op(sessions):
    session, recovered = sessions.recover()
    assert recovered is None
    assert session.current_session_number == 1


def test_update_description(sessions):
    assert sessions.update_description("Ops night #4").description == "Ops night #4"
    with pytest.raises(ValidationError):
        sessions.update_description("   ")
    with pytest.raises(ValidationError):
        sessions.update_description("x" * 501)


def test_stats(orders, trains, sessions):
    busy_session(orders, trains)
    stats = sessions.stats()
    assert stats.current_session_number == 1
    assert not stats.can_rollback
    assert stats.entity_counts == {"cars": 5, "trains": 2, "car_orders": 3}
    assert stats.trains_by_status == {"Completed": 1, "In Progress": 1}
    assert stats.orders_by_status == {"delivered": 1, "assigned": 2}

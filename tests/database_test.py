# tests/database_test.py
from __future__ import annotations

import mongomock
import pytest

import database
from config import Settings
from database import CAR, EntityStore, connect, require
from errors import NotFoundError, ValidationError
from schemas import Car


def test_connect_without_a_url_gives_no_database(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    assert connect(Settings(database_url=None)) is None
    assert database.db is None


def test_connect_uses_the_configured_database(monkeypatch):
    monkeypatch.setattr(database, "MongoClient", mongomock.MongoClient)
    monkeypatch.setattr(database, "db", None)

    db = connect(Settings(database_url="mongodb://rails.test:27017", database_name="layout"))

    assert db.name == "layout"
    assert database.db is db


def test_update_can_set_and_remove_fields(store):
    assert store.update(CAR, "C1", {"last_moved": "2026-01-05T18:00:00+00:00"})
    assert store.find_by_id(CAR, "C1")["last_moved"] == "2026-01-05T18:00:00+00:00"

    assert store.update(CAR, "C1", {"current_industry": "Y2"}, unset=["last_moved"])
    doc = store.find_by_id(CAR, "C1")
    assert "last_moved" not in doc
    assert doc["current_industry"] == "Y2"
    assert not store.update(CAR, "NOPE", {"current_industry": "Y2"})


def test_load_reports_schema_problems(store):
    store.update(CAR, "C1", {"reporting_marks": ""})
    with pytest.raises(ValidationError) as err:
        require(store, CAR, Car, "C1")
    assert any("reporting_marks" in d for d in err.value.details)
    with pytest.raises(NotFoundError):
        require(store, CAR, Car, "NOPE")


def test_bulk_insert_keeps_given_ids():
    store = EntityStore(mongomock.MongoClient()["empty"])
    store.bulk_insert(CAR, [{"id": "X1", "car_type": "XM"}])
    assert store.find_by_id(CAR, "X1") == {"id": "X1", "car_type": "XM"}

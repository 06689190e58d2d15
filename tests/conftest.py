# tests/conftest.py
"""
A tiny layout shared by every test.

    Yardville (Y1)  ->  Ashby (MILL)  ->  Brookfield (TANK)  ->  Endport (Y2)

Route R1 walks those four stations in order. MILL wants 2 boxcars (XM) every
session, TANK wants 1 tank car (TA) every second session.
"""
from __future__ import annotations

from datetime import datetime, timezone

import mongomock
import pytest

from car_orders import CarOrderService
from config import Settings
from database import AAR_TYPE, CAR, INDUSTRY, LOCOMOTIVE, ROUTE, STATION, EntityStore
from operating_session import SessionController
from switch_lists import SwitchListBuilder
from trains import TrainController

FIXED_NOW = datetime(2026, 1, 5, 18, 0, tzinfo=timezone.utc)


# ───────────────────────── helpers to build a tiny world ───────────────────────── #

def build_stations() -> list:
    return [
        {"id": "S_YARD", "name": "Yardville"},
        {"id": "S_A", "name": "Ashby"},
        {"id": "S_B", "name": "Brookfield"},
        {"id": "S_END", "name": "Endport"},
    ]


def build_industries() -> list:
    return [
        {"id": "Y1", "name": "Yardville Yard", "station_id": "S_YARD", "is_yard": True},
        {"id": "Y2", "name": "Endport Yard", "station_id": "S_END", "is_yard": True},
        {
            "id": "MILL", "name": "Ashby Mill", "station_id": "S_A",
            "demand_rules": [{"compatible_car_types": ["XM"], "cars_per_session": 2, "frequency": 1}],
        },
        {
            "id": "TANK", "name": "Brookfield Oil", "station_id": "S_B",
            "demand_rules": [{
                "commodity_id": "fuel-oil", "direction": "inbound",
                "compatible_car_types": ["TA"], "cars_per_session": 1, "frequency": 2,
            }],
        },
    ]


def build_cars() -> list:
    def car(cid, number, car_type, at, home):
        return {
            "id": cid, "reporting_marks": "ATSF", "reporting_number": number, "car_type": car_type,
            "current_industry": at, "home_yard": home,
        }
    return [
        car("C1", "1001", "XM", "Y1", "Y1"),
        car("C2", "1002", "XM", "Y1", "Y1"),
        car("C3", "2001", "TA", "Y1", "Y1"),
        car("C4", "1003", "XM", "MILL", "Y2"),
        car("C5", "1004", "XM", "TANK", "Y1"),
    ]


def build_locomotives() -> list:
    return [
        {"id": "L1", "reporting_marks": "ATSF", "reporting_number": "101", "model": "GP9"},
        {"id": "L2", "reporting_marks": "ATSF", "reporting_number": "102", "model": "GP9"},
        {"id": "L3", "reporting_marks": "ATSF", "reporting_number": "103", "model": "SW1500", "is_in_service": False},
    ]


def build_routes() -> list:
    return [{
        "id": "R1", "name": "Ashby Local", "origin_yard": "Y1", "termination_yard": "Y2",
        "station_sequence": ["S_A", "S_B"],
    }]


def seed_world(store: EntityStore) -> None:
    store.bulk_insert(STATION, build_stations())
    store.bulk_insert(AAR_TYPE, [{"id": "XM", "name": "Boxcar"}, {"id": "TA", "name": "Tank car"}, {"id": "FC", "name": "Flatcar"}])
    store.bulk_insert(INDUSTRY, build_industries())
    store.bulk_insert(CAR, build_cars())
    store.bulk_insert(LOCOMOTIVE, build_locomotives())
    store.bulk_insert(ROUTE, build_routes())


# ───────────────────────────────── fixtures ───────────────────────────────── #

@pytest.fixture
def store() -> EntityStore:
    s = EntityStore(mongomock.MongoClient()["switchlist_test"])
    seed_world(s)
    return s


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def sessions(store) -> SessionController:
    return SessionController(store)


@pytest.fixture
def orders(store, sessions) -> CarOrderService:
    return CarOrderService(store, sessions)


@pytest.fixture
def builder(store, settings) -> SwitchListBuilder:
    return SwitchListBuilder(store, settings, clock=lambda: FIXED_NOW)


@pytest.fixture
def trains(store, sessions, builder) -> TrainController:
    return TrainController(store, sessions, builder)

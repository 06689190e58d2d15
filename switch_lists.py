"""
Switch list generation.

``plan_switch_list`` is a pure function: given the train, its station walk and
the current cars/orders it returns the same SwitchList for the same inputs.
``SwitchListBuilder`` loads those inputs from the store, plans, and persists
the result as a fixed sequence of single-document writes:

    1. orders  -> assigned to the car and train
    2. cars    -> committed to the train
    3. train   -> switch list attached, status In Progress

Each step only sets fields, so repeating it is harmless. If the sequence is
interrupted, the next build on the same (still Planned) train finds the
orders and cars already committed to it, releases them and starts over.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from pymongo.errors import PyMongoError

from car_orders import release_train_orders
from config import Settings
from database import CAR, CAR_ORDER, INDUSTRY, LOCOMOTIVE, ROUTE, STATION, TRAIN, EntityStore, load, require, utcnow
from errors import ConflictError, NotFoundError, SwitchListApplyError, ValidationError
from schemas import (
    COMMITTED_ORDER_STATUSES,
    Car,
    CarOrder,
    Industry,
    Locomotive,
    Route,
    Station,
    SwitchList,
    SwitchListItem,
    SwitchListStation,
    Train,
)
from transitions import check_train_transition

logger = logging.getLogger(__name__)


@dataclass
class SwitchListPlan:
    switch_list: SwitchList
    assignments: List[Tuple[str, str]] = field(default_factory=list)  # (order_id, car_id)
    car_ids: List[str] = field(default_factory=list)

    @property
    def orders_fulfilled(self) -> int:
        return len(self.assignments)


# ---------------------------------------------------------------------------- #
# Planning
# ---------------------------------------------------------------------------- #

def station_walk(route: Route, industries: Dict[str, Industry], stations: Dict[str, Station]) -> List[Station]:
    """Origin yard's station, the route's station sequence, termination yard's station."""
    walk: List[Station] = [_yard_station(route.origin_yard, industries, stations)]
    for sid in route.station_sequence:
        if sid not in stations:
            raise NotFoundError("Station", sid)
        walk.append(stations[sid])
    walk.append(_yard_station(route.termination_yard, industries, stations))
    return walk


def _yard_station(yard_id: str, industries: Dict[str, Industry], stations: Dict[str, Station]) -> Station:
    yard = industries.get(yard_id)
    if yard is None:
        raise NotFoundError("Industry", yard_id)
    if not yard.is_yard:
        raise ValidationError(f"Route endpoint '{yard.name}' is not a yard")
    if yard.station_id not in stations:
        raise NotFoundError("Station", yard.station_id)
    return stations[yard.station_id]


class _LoadProfile:
    """
    On-train car count per stop, measured after the stop's pickups and before
    its setouts. A car picked up at stop i and set out at stop k counts at
    every stop i..k.
    """

    def __init__(self, stops: int, capacity: int):
        self.peak = [0] * stops
        self.capacity = capacity

    def fits(self, pickup: int, setout: int) -> bool:
        return all(self.peak[j] + 1 <= self.capacity for j in range(pickup, setout + 1))

    def add(self, pickup: int, setout: int) -> None:
        for j in range(pickup, setout + 1):
            self.peak[j] += 1


def plan_switch_list(
    train: Train,
    walk: Sequence[Station],
    industries: Sequence[Industry],
    orders: Sequence[CarOrder],
    cars: Sequence[Car],
    *,
    generated_at: datetime,
    max_orders_per_industry: int = 50,
    return_home_after_sessions: int = 1,
) -> SwitchListPlan:
    """
    Match pending orders to available cars along ``walk``.

    Stops are visited in walk order, industries at a stop by id, orders by
    (created_at, id) and cars by id. A car can serve an order only if it sits
    at a station the train visits before the order's station. A match is
    dropped if the pickup would put the train over ``max_capacity`` anywhere
    between the pickup and the setout; the order then stays pending.

    ``cars`` should already exclude cars committed elsewhere; out-of-service
    cars and cars held by another train are skipped here as well.
    """
    industries_by_id = {i.id: i for i in industries}
    at_station: Dict[str, List[Industry]] = {}
    for ind in sorted(industries, key=lambda i: i.id):
        at_station.setdefault(ind.station_id, []).append(ind)
    stops_of: Dict[str, List[int]] = {}
    for idx, st in enumerate(walk):
        stops_of.setdefault(st.id, []).append(idx)

    pending_by_industry: Dict[str, List[CarOrder]] = {}
    for o in sorted(orders, key=lambda o: (o.created_at, o.id)):
        if o.status != "pending" or o.session_number > train.session_number:
            continue
        bucket = pending_by_industry.setdefault(o.industry_id, [])
        if len(bucket) < max_orders_per_industry:
            bucket.append(o)

    pool = [
        c for c in sorted(cars, key=lambda c: c.id)
        if c.is_in_service and c.assigned_train_id in (None, train.id)
    ]

    load_profile = _LoadProfile(len(walk), train.max_capacity)
    pickups: List[List[SwitchListItem]] = [[] for _ in walk]
    setouts: List[List[SwitchListItem]] = [[] for _ in walk]
    used: Set[str] = set()
    matched: Set[str] = set()
    assignments: List[Tuple[str, str]] = []

    def car_station(car: Car) -> Optional[str]:
        loc = industries_by_id.get(car.current_industry)
        return loc.station_id if loc else None

    def commit(car: Car, pickup: int, setout: int, destination: Industry, order_id: Optional[str]) -> None:
        item = SwitchListItem(
            car_id=car.id,
            car_reporting_marks=car.reporting_marks,
            car_number=car.reporting_number,
            car_type=car.car_type,
            destination_industry_id=destination.id,
            destination_industry_name=destination.name,
            order_id=order_id,
        )
        load_profile.add(pickup, setout)
        pickups[pickup].append(item)
        setouts[setout].append(item)
        used.add(car.id)

    # Orders
    for k, station in enumerate(walk):
        for industry in at_station.get(station.id, []):
            for order in pending_by_industry.get(industry.id, []):
                if order.id in matched:
                    continue
                accepted = order.accepted_car_types
                for car in pool:
                    if car.id in used or car.car_type not in accepted or car.current_industry == industry.id:
                        continue
                    earlier = [i for i in stops_of.get(car_station(car), []) if i < k]
                    if not earlier:
                        continue
                    pickup = earlier[-1]
                    if not load_profile.fits(pickup, k):
                        continue
                    commit(car, pickup, k, industry, order.id)
                    matched.add(order.id)
                    assignments.append((order.id, car.id))
                    break

    # Cars idle at an industry go back to their home yard when it is further along the walk
    if return_home_after_sessions > 0:
        for car in pool:
            if car.id in used or car.current_industry == car.home_yard:
                continue
            if car.sessions_at_current_location < return_home_after_sessions:
                continue
            loc = industries_by_id.get(car.current_industry)
            home = industries_by_id.get(car.home_yard)
            if loc is None or loc.is_yard or home is None or not home.is_yard:
                continue
            wanted_here = any(car.car_type in o.accepted_car_types for o in pending_by_industry.get(loc.id, []))
            if wanted_here:
                continue
            for pickup in stops_of.get(loc.station_id, []):
                later = [k for k in stops_of.get(home.station_id, []) if k > pickup]
                if later and load_profile.fits(pickup, later[0]):
                    commit(car, pickup, later[0], home, None)
                    break

    stations_out = []
    on_train = 0
    for idx, st in enumerate(walk):
        on_train += len(pickups[idx]) - len(setouts[idx])
        stations_out.append(SwitchListStation(
            station_id=st.id,
            station_name=st.name,
            pickups=tuple(pickups[idx]),
            setouts=tuple(setouts[idx]),
        ))

    switch_list = SwitchList(
        stations=tuple(stations_out),
        total_pickups=sum(len(p) for p in pickups),
        total_setouts=sum(len(s) for s in setouts),
        final_car_count=on_train,
        generated_at=generated_at,
    )
    car_ids = [item.car_id for st in switch_list.stations for item in st.pickups]
    return SwitchListPlan(switch_list=switch_list, assignments=assignments, car_ids=car_ids)


# ---------------------------------------------------------------------------- #
# Loading + persisting
# ---------------------------------------------------------------------------- #

class SwitchListBuilder:
    def __init__(self, store: EntityStore, settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings or Settings()
        self.clock = clock

    def check_preconditions(self, train: Train) -> Route:
        if train.status != "Planned":
            raise ConflictError(
                f"Cannot generate switch list for train with status: {train.status}. "
                "Only 'Planned' trains can generate switch lists."
            )
        route = require(self.store, ROUTE, Route, train.route_id)
        inactive = []
        for loco_id in train.locomotive_ids:
            loco = require(self.store, LOCOMOTIVE, Locomotive, loco_id)
            if not loco.is_in_service:
                inactive.append(f"{loco.reporting_marks} {loco.reporting_number}")
        if inactive:
            raise ValidationError("Cannot generate switch list", details=f"Inactive locomotives: {', '.join(inactive)}")
        return route

    def resolve_walk(self, train: Train) -> Tuple[List[Station], List[Industry]]:
        """Run every precondition and route check; nothing is written."""
        route = self.check_preconditions(train)
        industries = [load(Industry, d) for d in self.store.find_all(INDUSTRY)]
        stations = {d["id"]: load(Station, d) for d in self.store.find_all(STATION)}
        return station_walk(route, {i.id: i for i in industries}, stations), industries

    def plan(self, train: Train, resolved: Optional[Tuple[List[Station], List[Industry]]] = None) -> SwitchListPlan:
        """Plan without writing anything."""
        walk, industries = resolved or self.resolve_walk(train)

        orders = [load(CarOrder, d) for d in self.store.find_by_query(CAR_ORDER, {"status": "pending"})]
        committed_cars = {
            d["assigned_car_id"]
            for d in self.store.find_by_query(CAR_ORDER, {"status": {"$in": list(COMMITTED_ORDER_STATUSES)}})
            if d.get("assigned_car_id")
        }
        cars = [
            c for c in (load(Car, d) for d in self.store.find_by_query(CAR, {"is_in_service": {"$ne": False}}))
            if c.id not in committed_cars
        ]
        return plan_switch_list(
            train, walk, industries, orders, cars,
            generated_at=self.clock(),
            max_orders_per_industry=self.settings.max_orders_per_industry,
            return_home_after_sessions=self.settings.return_home_after_sessions,
        )

    def generate(self, train: Train) -> SwitchListPlan:
        """
        Build and persist the switch list for a Planned train, moving it to
        In Progress. Holds the store lock across the whole query-and-reserve
        sequence so two builds never claim the same car.
        """
        with self.store.lock:
            current = require(self.store, TRAIN, Train, train.id)
            resolved = self.resolve_walk(current)
            self._release_interrupted_build(current)
            plan = self.plan(current, resolved)
            self._apply(current, plan)

        logger.info(
            "switch list generated for train %s (%s): %d stations, %d pickups, %d setouts, %d orders",
            current.name, current.id, len(plan.switch_list.stations),
            plan.switch_list.total_pickups, plan.switch_list.total_setouts, plan.orders_fulfilled,
        )
        return plan

    def _release_interrupted_build(self, train: Train) -> None:
        released = release_train_orders(self.store, train.id)
        held_cars = self.store.find_by_query(CAR, {"assigned_train_id": train.id})
        for doc in held_cars:
            self.store.update(CAR, doc["id"], {"assigned_train_id": None})
        if released or held_cars:
            logger.warning(
                "train %s had an interrupted switch list build: released %d order(s) and %d car(s)",
                train.id, len(released), len(held_cars),
            )

    def _apply(self, train: Train, plan: SwitchListPlan) -> None:
        applied: List[str] = []
        now = self.clock().isoformat()
        try:
            for order_id, car_id in plan.assignments:
                self.store.update(CAR_ORDER, order_id, {
                    "status": "assigned",
                    "assigned_car_id": car_id,
                    "assigned_train_id": train.id,
                    "updated_at": now,
                })
            applied.append("orders")

            for car_id in plan.car_ids:
                self.store.update(CAR, car_id, {"assigned_train_id": train.id})
            applied.append("cars")

            check_train_transition(train.status, "In Progress")
            self.store.update(TRAIN, train.id, {
                "switch_list": plan.switch_list.model_dump(mode="json"),
                "assigned_car_ids": plan.car_ids,
                "status": "In Progress",
                "updated_at": now,
            })
            applied.append("train")
        except PyMongoError as e:
            logger.error(
                "switch list for train %s partially applied (completed steps: %s): %s",
                train.id, ", ".join(applied) or "none", e,
            )
            raise SwitchListApplyError(train.id, applied, e) from e

"""
Train lifecycle.

    Planned -> In Progress -> Completed
       |            |
       +------------+-----> Cancelled

Generating the switch list is what moves a train from Planned to In Progress.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from car_orders import deliver_orders, release_train_orders
from database import CAR, LOCOMOTIVE, ROUTE, TRAIN, EntityStore, load, new_id, require, utcnow
from errors import ConflictError, ValidationError
from schemas import ACTIVE_TRAIN_STATUSES, Locomotive, Route, Train
from switch_lists import SwitchListBuilder, SwitchListPlan
from transitions import check_train_transition

if TYPE_CHECKING:
    from operating_session import SessionController

logger = logging.getLogger(__name__)


def train_summary(train: Train) -> Dict[str, object]:
    summary: Dict[str, object] = {
        "id": train.id,
        "name": train.name,
        "status": train.status,
        "session_number": train.session_number,
        "locomotive_count": len(train.locomotive_ids),
        "max_capacity": train.max_capacity,
        "assigned_cars": len(train.assigned_car_ids),
    }
    if train.switch_list is not None:
        summary["switch_list"] = {
            "total_stations": len(train.switch_list.stations),
            "total_pickups": train.switch_list.total_pickups,
            "total_setouts": train.switch_list.total_setouts,
            "max_load": train.switch_list.peak_load(),
            "final_car_count": train.switch_list.final_car_count,
        }
    return summary


class TrainController:
    def __init__(self, store: EntityStore, sessions: "SessionController", builder: SwitchListBuilder):
        self.store = store
        self.sessions = sessions
        self.builder = builder

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def get_train(self, train_id: str) -> Train:
        return require(self.store, TRAIN, Train, train_id)

    def list_trains(self, session_number: Optional[int] = None, status: Optional[str] = None) -> List[Train]:
        query = {}
        if session_number:
            query["session_number"] = session_number
        if status:
            query["status"] = status
        return [load(Train, d) for d in self.store.find_by_query(TRAIN, query)]

    # ------------------------------------------------------------------ #
    # Validation helpers
    # ------------------------------------------------------------------ #

    def _check_name(self, name: str, session_number: int, exclude_id: Optional[str] = None) -> None:
        dupes = [
            d for d in self.store.find_by_query(TRAIN, {"name": name, "session_number": session_number})
            if d["id"] != exclude_id
        ]
        if dupes:
            raise ConflictError(f"Train name '{name}' already exists in session {session_number}")

    def _check_locomotives(self, locomotive_ids: Sequence[str], exclude_id: Optional[str] = None) -> None:
        if len(set(locomotive_ids)) != len(locomotive_ids):
            raise ValidationError("Locomotive list contains duplicates")
        inactive = []
        for loco_id in locomotive_ids:
            loco = require(self.store, LOCOMOTIVE, Locomotive, loco_id)
            if not loco.is_in_service:
                inactive.append(loco.id)
        if inactive:
            raise ValidationError("Locomotives not in service", details=inactive)

        conflicts = []
        active = self.store.find_by_query(TRAIN, {
            "status": {"$in": list(ACTIVE_TRAIN_STATUSES)},
            "locomotive_ids": {"$in": list(locomotive_ids)},
        })
        for doc in active:
            if doc["id"] == exclude_id:
                continue
            for loco_id in locomotive_ids:
                if loco_id in doc["locomotive_ids"]:
                    conflicts.append({"locomotive_id": loco_id, "train_id": doc["id"], "train_name": doc["name"], "status": doc["status"]})
        if conflicts:
            raise ConflictError("Locomotive already assigned to an active train", details=conflicts)

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    def create_train(
        self,
        name: str,
        route_id: str,
        locomotive_ids: Sequence[str],
        max_capacity: int,
        session_number: Optional[int] = None,
    ) -> Train:
        with self.store.lock:
            if session_number is None:
                session_number = self.sessions.get_current().current_session_number
            train = load(Train, {
                "id": new_id(),
                "name": name,
                "route_id": route_id,
                "session_number": session_number,
                "locomotive_ids": list(locomotive_ids),
                "max_capacity": max_capacity,
            })
            require(self.store, ROUTE, Route, route_id)
            self._check_name(name, session_number)
            self._check_locomotives(train.locomotive_ids)
            self.store.create(TRAIN, train)
        logger.info("created train %s (%s) for session %d", train.name, train.id, session_number)
        return train

    def update_train(
        self,
        train_id: str,
        name: Optional[str] = None,
        route_id: Optional[str] = None,
        locomotive_ids: Optional[Sequence[str]] = None,
        max_capacity: Optional[int] = None,
    ) -> Train:
        with self.store.lock:
            train = self.get_train(train_id)
            if train.status != "Planned":
                raise ConflictError(f"Cannot edit train with status: {train.status}. Only 'Planned' trains can be edited.")
            fields: Dict[str, object] = {}
            if name is not None and name != train.name:
                self._check_name(name, train.session_number, exclude_id=train.id)
                fields["name"] = name
            if route_id is not None and route_id != train.route_id:
                require(self.store, ROUTE, Route, route_id)
                fields["route_id"] = route_id
            if locomotive_ids is not None:
                self._check_locomotives(list(locomotive_ids), exclude_id=train.id)
                fields["locomotive_ids"] = list(locomotive_ids)
            if max_capacity is not None:
                fields["max_capacity"] = max_capacity
            if not fields:
                return train
            updated = load(Train, {**train.model_dump(mode="json"), **fields, "updated_at": utcnow().isoformat()})
            self.store.update(TRAIN, train_id, updated.model_dump(mode="json"))
        return updated

    def generate_switch_list(self, train_id: str) -> SwitchListPlan:
        """Build the switch list and put the train In Progress, as one action."""
        with self.store.lock:
            train = self.get_train(train_id)
            return self.builder.generate(train)

    def complete_train(self, train_id: str) -> Dict[str, int]:
        """
        Deliver every order on the switch list, move each set-out car to its
        destination and finish the train. Orders first, then cars, then the
        train; a retry after an interruption skips what is already done.
        """
        with self.store.lock:
            train = self.get_train(train_id)
            check_train_transition(train.status, "Completed")
            now = utcnow().isoformat()

            delivered: List[str] = []
            moved = 0
            if train.switch_list is not None:
                delivered = deliver_orders(self.store, train.switch_list.order_ids())
                for st in train.switch_list.stations:
                    for setout in st.setouts:
                        self.store.update(CAR, setout.car_id, {
                            "current_industry": setout.destination_industry_id,
                            "sessions_at_current_location": 0,
                            "last_moved": now,
                            "assigned_train_id": None,
                        })
                        moved += 1
            # cars picked up but never set out stay where they were
            for doc in self.store.find_by_query(CAR, {"assigned_train_id": train.id}):
                self.store.update(CAR, doc["id"], {"assigned_train_id": None})

            self.store.update(TRAIN, train.id, {"status": "Completed", "updated_at": now})

        logger.info("train %s completed: %d car(s) moved, %d order(s) delivered", train.name, moved, len(delivered))
        return {"cars_moved": moved, "orders_delivered": len(delivered)}

    def cancel_train(self, train_id: str) -> Dict[str, int]:
        """Return the train's orders to pending and release its cars. No car moves."""
        with self.store.lock:
            train = self.get_train(train_id)
            check_train_transition(train.status, "Cancelled")
            released = release_train_orders(self.store, train.id)
            held = self.store.find_by_query(CAR, {"assigned_train_id": train.id})
            for doc in held:
                self.store.update(CAR, doc["id"], {"assigned_train_id": None})
            self.store.update(TRAIN, train.id, {"status": "Cancelled", "updated_at": utcnow().isoformat()})

        logger.info("train %s cancelled: %d order(s) reverted", train.name, len(released))
        return {"orders_reverted": len(released), "cars_released": len(held)}

    def delete_train(self, train_id: str) -> None:
        with self.store.lock:
            train = self.get_train(train_id)
            if train.status != "Planned":
                raise ConflictError(f"Cannot delete train with status: {train.status}. Only 'Planned' trains can be deleted.")
            self.store.delete(TRAIN, train_id)
        logger.info("deleted train %s", train_id)


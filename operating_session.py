"""
The operating session singleton.

There is exactly one OperatingSession document, stored under a fixed id.
Advancing snapshots every car, train and car order before touching anything;
rolling back restores that snapshot verbatim. Both are multi-document
sequences, so the session document carries an ``in_flight`` marker while one
is being applied. A marker left behind by a crash blocks further advances
and rollbacks until ``recover()`` finishes the job.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Optional, Tuple

from database import CAR, CAR_ORDER, OPERATING_SESSION, TRAIN, EntityStore, load, utcnow
from car_orders import release_train_orders
from errors import ConflictError, RollbackNotAllowedError, ValidationError
from schemas import (
    ACTIVE_TRAIN_STATUSES,
    OperatingSession,
    SessionSnapshot,
    SessionStats,
    SnapshotCar,
)

logger = logging.getLogger(__name__)

SESSION_ID = "current"
MAX_DESCRIPTION_LENGTH = 500
# Car fields an advance or a train can change
TRACKED_CAR_FIELDS = ("sessions_at_current_location", "last_moved", "assigned_train_id")


class SessionController:
    def __init__(self, store: EntityStore):
        self.store = store

    def get_current(self) -> OperatingSession:
        """Return the session, creating session 1 the first time."""
        with self.store.lock:
            doc = self.store.find_by_id(OPERATING_SESSION, SESSION_ID)
            if doc is None:
                session = OperatingSession(id=SESSION_ID, description="Initial operating session")
                self.store.create(OPERATING_SESSION, session)
                logger.info("initialized operating session 1")
                return session
            return load(OperatingSession, doc)

    def _settled(self) -> OperatingSession:
        session = self.get_current()
        if session.in_flight:
            logger.error("operating session has an interrupted %s; recover() must run first", session.in_flight)
            raise ConflictError(
                f"A previous session {session.in_flight} was interrupted",
                details="Call recover to finish it before advancing or rolling back",
            )
        return session

    # ------------------------------------------------------------------ #
    # Snapshot
    # ------------------------------------------------------------------ #

    def take_snapshot(self, session_number: int) -> SessionSnapshot:
        cars = [
            SnapshotCar(
                id=d["id"],
                current_industry=d["current_industry"],
                sessions_at_current_location=d.get("sessions_at_current_location", 0),
                last_moved=d.get("last_moved"),
                assigned_train_id=d.get("assigned_train_id"),
                absent=[f for f in TRACKED_CAR_FIELDS if f not in d],
            )
            for d in self.store.find_all(CAR)
        ]
        return SessionSnapshot(
            session_number=session_number,
            cars=cars,
            trains=self.store.find_all(TRAIN),
            car_orders=self.store.find_all(CAR_ORDER),
        )

    def _restore(self, snapshot: SessionSnapshot) -> Dict[str, int]:
        """Cars, then trains, then orders. Every step can be repeated safely."""
        restored_cars = 0
        for car in snapshot.cars:
            fields = {"current_industry": car.current_industry}
            fields.update((f, getattr(car, f)) for f in TRACKED_CAR_FIELDS if f not in car.absent)
            found = self.store.update(CAR, car.id, fields, unset=car.absent)
            if found:
                restored_cars += 1
            else:
                logger.warning("car %s from the snapshot no longer exists", car.id)

        self.store.delete_many(TRAIN, {})
        self.store.bulk_insert(TRAIN, snapshot.trains)
        self.store.delete_many(CAR_ORDER, {})
        self.store.bulk_insert(CAR_ORDER, snapshot.car_orders)
        return {
            "cars_restored": restored_cars,
            "trains_restored": len(snapshot.trains),
            "orders_restored": len(snapshot.car_orders),
        }

    # ------------------------------------------------------------------ #
    # Advance / rollback
    # ------------------------------------------------------------------ #

    def advance(self, description: Optional[str] = None) -> Tuple[OperatingSession, Dict[str, int]]:
        """
        Close the current session and open the next one.

        Trains still Planned or In Progress never ran: their orders go back to
        pending and their cars are released before the trains are removed.
        """
        with self.store.lock:
            session = self._settled()
            ended = session.current_session_number
            snapshot = self.take_snapshot(ended)
            self.store.update(OPERATING_SESSION, SESSION_ID, {
                "pending_snapshot": snapshot.model_dump(mode="json"),
                "in_flight": "advance",
            })

            orders_reverted = 0
            for doc in self.store.find_by_query(TRAIN, {"status": {"$in": list(ACTIVE_TRAIN_STATUSES)}}):
                orders_reverted += len(release_train_orders(self.store, doc["id"]))
                for car in self.store.find_by_query(CAR, {"assigned_train_id": doc["id"]}):
                    self.store.update(CAR, car["id"], {"assigned_train_id": None})

            cars_updated = self.store.increment(CAR, {}, "sessions_at_current_location", 1)
            trains_deleted = self.store.delete_many(TRAIN, {"session_number": {"$lte": ended}})

            next_number = ended + 1
            self.store.update(OPERATING_SESSION, SESSION_ID, {
                "current_session_number": next_number,
                "session_date": utcnow().isoformat(),
                "description": description or f"Operating session {next_number}",
                "previous_session_snapshot": snapshot.model_dump(mode="json"),
                "pending_snapshot": None,
                "in_flight": None,
            })
            updated = self.get_current()

        stats = {
            "cars_updated": cars_updated,
            "trains_deleted": trains_deleted,
            "orders_reverted": orders_reverted,
            "advanced_to_session": next_number,
        }
        logger.info("advanced to operating session %d: %s", next_number, stats)
        return updated, stats

    def rollback(self, description: Optional[str] = None) -> Tuple[OperatingSession, Dict[str, int]]:
        """Restore the state captured by the last advance. Only one level deep."""
        with self.store.lock:
            session = self._settled()
            if session.current_session_number <= 1:
                raise RollbackNotAllowedError("Cannot rollback from session 1")
            if session.previous_session_snapshot is None:
                raise RollbackNotAllowedError("No previous session snapshot available")

            self.store.update(OPERATING_SESSION, SESSION_ID, {"in_flight": "rollback"})
            stats = self._finish_rollback(session.previous_session_snapshot, description)
            updated = self.get_current()

        logger.info("rolled back to operating session %d: %s", updated.current_session_number, stats)
        return updated, stats

    def _finish_rollback(self, snapshot: SessionSnapshot, description: Optional[str]) -> Dict[str, int]:
        stats = self._restore(snapshot)
        self.store.update(OPERATING_SESSION, SESSION_ID, {
            "current_session_number": snapshot.session_number,
            "session_date": utcnow().isoformat(),
            "description": description or f"Rolled back to session {snapshot.session_number}",
            "previous_session_snapshot": None,
            "in_flight": None,
        })
        stats["rolled_back_to_session"] = snapshot.session_number
        return stats

    def recover(self) -> Tuple[OperatingSession, Optional[str]]:
        """
        Finish an interrupted advance or rollback.

        An interrupted advance is undone from its pending snapshot (the session
        number was never incremented). An interrupted rollback is re-run.
        Returns the session and the name of the saga that was recovered, if any.
        """
        with self.store.lock:
            session = self.get_current()
            kind = session.in_flight
            if kind is None:
                return session, None
            if kind == "advance":
                if session.pending_snapshot is None:
                    raise ConflictError("Interrupted advance has no pending snapshot to restore from")
                self._restore(session.pending_snapshot)
                self.store.update(OPERATING_SESSION, SESSION_ID, {"pending_snapshot": None, "in_flight": None})
            else:
                if session.previous_session_snapshot is None:
                    raise ConflictError("Interrupted rollback has no snapshot to restore from")
                self._finish_rollback(session.previous_session_snapshot, None)
            recovered = self.get_current()
        logger.warning("recovered interrupted session %s; now at session %d", kind, recovered.current_session_number)
        return recovered, kind

    # ------------------------------------------------------------------ #
    # Metadata
    # ------------------------------------------------------------------ #

    def update_description(self, description: str) -> OperatingSession:
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("Description is required and must be a string")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")
        with self.store.lock:
            self.get_current()
            self.store.update(OPERATING_SESSION, SESSION_ID, {"description": description})
            return self.get_current()

    def stats(self) -> SessionStats:
        session = self.get_current()
        cars = self.store.find_all(CAR)
        trains = self.store.find_all(TRAIN)
        orders = self.store.find_all(CAR_ORDER)
        return SessionStats(
            current_session_number=session.current_session_number,
            session_date=session.session_date,
            description=session.description,
            has_snapshot=session.previous_session_snapshot is not None,
            can_rollback=session.can_rollback,
            entity_counts={"cars": len(cars), "trains": len(trains), "car_orders": len(orders)},
            trains_by_status=dict(Counter(t["status"] for t in trains)),
            orders_by_status=dict(Counter(o["status"] for o in orders)),
        )

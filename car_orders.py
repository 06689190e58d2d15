"""
Car order generation and the car order status machine.

Orders are created from industry demand rules once per session. A pending
order waits for a switch list to assign it a car; train completion delivers
it and train cancellation puts it back to pending.
"""
from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Tuple

from database import AAR_TYPE, CAR, CAR_ORDER, INDUSTRY, EntityStore, load, new_id, require, utcnow
from demand import due_rules
from errors import ConflictError, NotFoundError, ValidationError
from schemas import (
    COMMITTED_ORDER_STATUSES,
    Car,
    CarOrder,
    DemandRule,
    Industry,
    OrderGenerationResult,
    OrderGenerationSummary,
    OrderStats,
    SkippedIndustry,
)
from transitions import check_order_transition

if TYPE_CHECKING:
    from operating_session import SessionController

logger = logging.getLogger(__name__)


def demand_key(industry_id: str, rule: DemandRule) -> Tuple[str, str, Optional[str], str]:
    return (industry_id, rule.aar_type_id, rule.commodity_id, rule.direction)


def _order_key(order: CarOrder) -> Tuple[str, str, Optional[str], str]:
    return (order.industry_id, order.aar_type_id, order.commodity_id, order.direction)


def release_train_orders(store: EntityStore, train_id: str) -> List[str]:
    """
    Put every order committed to ``train_id`` back to pending.

    In-transit orders step back through ``assigned`` so each hop is a legal
    transition. Setting the same fields twice is harmless, so this can be
    re-run after an interruption.
    """
    now = utcnow().isoformat()
    released: List[str] = []
    for doc in store.find_by_query(CAR_ORDER, {"assigned_train_id": train_id}):
        order = load(CarOrder, doc)
        if order.status not in COMMITTED_ORDER_STATUSES:
            continue
        status = order.status
        if status == "in-transit":
            check_order_transition(status, "assigned")
            status = "assigned"
        check_order_transition(status, "pending")
        store.update(CAR_ORDER, order.id, {
            "status": "pending",
            "assigned_car_id": None,
            "assigned_train_id": None,
            "updated_at": now,
        })
        released.append(order.id)
    return released


def deliver_orders(store: EntityStore, order_ids: Iterable[str]) -> List[str]:
    """Mark orders delivered. Orders already delivered are skipped."""
    now = utcnow().isoformat()
    delivered: List[str] = []
    for oid in order_ids:
        doc = store.find_by_id(CAR_ORDER, oid)
        if doc is None:
            logger.warning("order %s referenced by a switch list no longer exists", oid)
            continue
        order = load(CarOrder, doc)
        if order.status == "delivered":
            continue
        check_order_transition(order.status, "delivered")
        store.update(CAR_ORDER, oid, {"status": "delivered", "updated_at": now})
        delivered.append(oid)
    return delivered


def summarize_generation(orders: Sequence[CarOrder], processed: int, skipped: List[SkippedIndustry]) -> OrderGenerationSummary:
    return OrderGenerationSummary(
        total_orders_generated=len(orders),
        industries_processed=processed,
        orders_by_industry=dict(Counter(o.industry_id for o in orders)),
        orders_by_aar_type=dict(Counter(o.aar_type_id for o in orders)),
        skipped_industries=skipped,
    )


class CarOrderService:
    def __init__(self, store: EntityStore, sessions: "SessionController"):
        self.store = store
        self.sessions = sessions

    # ------------------------------------------------------------------ #
    # Generation
    # ------------------------------------------------------------------ #

    def generate(
        self,
        session_number: Optional[int] = None,
        industry_ids: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> OrderGenerationResult:
        """
        Create pending orders for every demand rule due in ``session_number``.

        Without ``force``, a rule that already has a pending order for the same
        industry, car type, commodity and session is skipped, so re-running
        generation does not flood the order pool. Industries that are missing
        or reference unknown AAR types are skipped and reported in the summary.
        """
        with self.store.lock:
            if session_number is None:
                session_number = self.sessions.get_current().current_session_number
            elif session_number < 1:
                raise ValidationError("session_number must be >= 1")

            skipped: List[SkippedIndustry] = []
            all_docs = {d["id"]: d for d in self.store.find_all(INDUSTRY)}
            if industry_ids:
                targets = []
                for iid in dict.fromkeys(industry_ids):
                    if iid in all_docs:
                        targets.append(all_docs[iid])
                    else:
                        skipped.append(SkippedIndustry(industry_id=iid, reason="industry not found"))
            else:
                targets = list(all_docs.values())

            known_types = {d["id"] for d in self.store.find_all(AAR_TYPE)}
            pending_keys = {
                _order_key(load(CarOrder, d))
                for d in self.store.find_by_query(CAR_ORDER, {"status": "pending", "session_number": session_number})
            }

            now = utcnow()
            new_orders: List[CarOrder] = []
            processed = 0
            for doc in targets:
                try:
                    industry = load(Industry, doc)
                except ValidationError as e:
                    skipped.append(SkippedIndustry(industry_id=doc["id"], reason=f"invalid industry: {e.details}"))
                    continue
                if not industry.demand_rules:
                    continue
                unknown = sorted({t for r in industry.demand_rules for t in r.compatible_car_types} - known_types)
                if unknown:
                    skipped.append(SkippedIndustry(industry_id=industry.id, reason=f"unknown AAR type(s): {', '.join(unknown)}"))
                    continue

                processed += 1
                for rule in due_rules(industry.demand_rules, session_number):
                    if not force and demand_key(industry.id, rule) in pending_keys:
                        continue
                    for _ in range(rule.cars_per_session):
                        new_orders.append(CarOrder(
                            id=new_id(),
                            industry_id=industry.id,
                            aar_type_id=rule.aar_type_id,
                            compatible_car_types=list(rule.compatible_car_types),
                            commodity_id=rule.commodity_id,
                            direction=rule.direction,
                            session_number=session_number,
                            created_at=now,
                        ))

            self.store.bulk_insert(CAR_ORDER, new_orders)

        summary = summarize_generation(new_orders, processed, skipped)
        for s in skipped:
            logger.warning("order generation skipped industry %s: %s", s.industry_id, s.reason)
        logger.info(
            "generated %d car order(s) for session %d across %d industries",
            len(new_orders), session_number, processed,
        )
        return OrderGenerationResult(session_number=session_number, created=new_orders, summary=summary)

    # ------------------------------------------------------------------ #
    # Single-order operations
    # ------------------------------------------------------------------ #

    def get_order(self, order_id: str) -> CarOrder:
        return require(self.store, CAR_ORDER, CarOrder, order_id)

    def create_order(
        self,
        industry_id: str,
        aar_type_id: str,
        session_number: Optional[int] = None,
        compatible_car_types: Optional[List[str]] = None,
        commodity_id: Optional[str] = None,
        direction: str = "inbound",
    ) -> CarOrder:
        with self.store.lock:
            if session_number is None:
                session_number = self.sessions.get_current().current_session_number
            require(self.store, INDUSTRY, Industry, industry_id)
            types = list(dict.fromkeys([aar_type_id] + list(compatible_car_types or [])))
            for t in types:
                if self.store.find_by_id(AAR_TYPE, t) is None:
                    raise NotFoundError("AarType", t)

            order = load(CarOrder, {
                "id": new_id(),
                "industry_id": industry_id,
                "aar_type_id": aar_type_id,
                "compatible_car_types": types,
                "commodity_id": commodity_id,
                "direction": direction,
                "session_number": session_number,
            })
            duplicates = self.store.find_by_query(CAR_ORDER, {
                "industry_id": industry_id,
                "aar_type_id": aar_type_id,
                "commodity_id": commodity_id,
                "direction": order.direction,
                "session_number": session_number,
                "status": "pending",
            })
            if duplicates:
                raise ConflictError(
                    "Duplicate pending order",
                    details=f"industry {industry_id} already has a pending {aar_type_id} order for session {session_number}",
                )
            self.store.create(CAR_ORDER, order)
        logger.info("created car order %s (%s for %s)", order.id, aar_type_id, industry_id)
        return order

    def update_status(self, order_id: str, status: str, assigned_car_id: Optional[str] = None) -> CarOrder:
        with self.store.lock:
            order = self.get_order(order_id)
            fields: Dict[str, object] = {}
            if status != order.status:
                check_order_transition(order.status, status)
                fields["status"] = status
                if status == "pending":
                    fields["assigned_car_id"] = None
                    fields["assigned_train_id"] = None
            if assigned_car_id is not None:
                car = require(self.store, CAR, Car, assigned_car_id)
                if not car.is_in_service:
                    raise ValidationError(f"Car {car.id} is not in service")
                if car.car_type not in order.accepted_car_types:
                    raise ValidationError(
                        f"Car type mismatch: order accepts {', '.join(order.accepted_car_types)}, car is {car.car_type}"
                    )
                fields["assigned_car_id"] = car.id
            if not fields:
                return order
            fields["updated_at"] = utcnow().isoformat()
            self.store.update(CAR_ORDER, order_id, fields)
            return self.get_order(order_id)

    def delete_order(self, order_id: str) -> None:
        with self.store.lock:
            order = self.get_order(order_id)
            if order.status in COMMITTED_ORDER_STATUSES:
                raise ConflictError(
                    f"Cannot delete car order with status '{order.status}'. Only pending or delivered orders can be deleted."
                )
            self.store.delete(CAR_ORDER, order_id)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def list_orders(
        self,
        industry_id: Optional[str] = None,
        status: Optional[str] = None,
        session_number: Optional[int] = None,
        aar_type_id: Optional[str] = None,
    ) -> List[CarOrder]:
        query = {}
        if industry_id:
            query["industry_id"] = industry_id
        if status:
            query["status"] = status
        if session_number:
            query["session_number"] = session_number
        if aar_type_id:
            query["aar_type_id"] = aar_type_id
        orders = [load(CarOrder, d) for d in self.store.find_by_query(CAR_ORDER, query)]
        # newest first
        orders.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return orders

    def order_stats(self, session_number: Optional[int] = None) -> OrderStats:
        if session_number is None:
            session_number = self.sessions.get_current().current_session_number
        orders = [load(CarOrder, d) for d in self.store.find_by_query(CAR_ORDER, {"session_number": session_number})]
        return OrderStats(
            session_number=session_number,
            total_orders=len(orders),
            orders_by_status=dict(Counter(o.status for o in orders)),
            orders_by_aar_type=dict(Counter(o.aar_type_id for o in orders)),
        )
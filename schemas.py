"""
Switch List Engine Schemas

Each class defines a MongoDB collection (lowercase class name).
"""
from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Any, Optional, List, Dict, Literal, Tuple
from datetime import datetime, timezone


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


OrderStatus = Literal["pending", "assigned", "in-transit", "delivered"]
TrainStatus = Literal["Planned", "In Progress", "Completed", "Cancelled"]
DemandDirection = Literal["inbound", "outbound"]

ACTIVE_TRAIN_STATUSES: Tuple[str, ...] = ("Planned", "In Progress")
COMMITTED_ORDER_STATUSES: Tuple[str, ...] = ("assigned", "in-transit")


# Reference data (read-only to the engine)
class Station(BaseModel):
    id: str = Field(..., description="Station identifier")
    name: str = Field(..., min_length=1, max_length=100)

class AarType(BaseModel):
    id: str = Field(..., description="AAR classification code (e.g., XM)")
    name: str = Field(..., min_length=1, max_length=100)

class DemandRule(BaseModel):
    commodity_id: Optional[str] = None
    direction: DemandDirection = "inbound"
    compatible_car_types: List[str] = Field(..., min_length=1, description="AAR type ids; the first is the primary type")
    cars_per_session: int = Field(..., ge=1)
    frequency: int = Field(1, ge=1, description="Due every N sessions")

    @property
    def aar_type_id(self) -> str:
        return self.compatible_car_types[0]

    @property
    def key(self) -> Tuple[str, str]:
        return (self.commodity_id or self.aar_type_id, self.direction)

class Industry(BaseModel):
    id: str
    name: str = Field(..., min_length=1, max_length=100)
    station_id: str
    is_yard: bool = False
    is_on_layout: bool = True
    demand_rules: List[DemandRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_demand_keys(self) -> "Industry":
        seen = set()
        for rule in self.demand_rules:
            if rule.key in seen:
                raise ValueError(f"duplicate demand rule for {rule.key[0]!r} ({rule.key[1]})")
            seen.add(rule.key)
        return self

class Car(BaseModel):
    id: str
    reporting_marks: str = Field(..., min_length=1, max_length=10)
    reporting_number: str = Field(..., min_length=1, max_length=10)
    car_type: str = Field(..., description="AAR type id")
    current_industry: str
    home_yard: str
    is_in_service: bool = True
    sessions_at_current_location: int = Field(0, ge=0)
    last_moved: Optional[datetime] = None
    assigned_train_id: Optional[str] = Field(None, description="Train whose switch list holds this car")

class Locomotive(BaseModel):
    id: str
    reporting_marks: str = Field(..., min_length=1, max_length=10)
    reporting_number: str = Field(..., min_length=1, max_length=6)
    model: str = ""
    dcc_address: Optional[int] = Field(None, ge=1, le=9999)
    is_in_service: bool = True

class Route(BaseModel):
    id: str
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    origin_yard: str = Field(..., description="Industry id of the originating yard")
    termination_yard: str = Field(..., description="Industry id of the terminating yard")
    station_sequence: List[str] = Field(default_factory=list, description="Ordered station ids between the yards")


# Orders and trains
class CarOrder(BaseModel):
    id: str
    industry_id: str
    aar_type_id: str
    compatible_car_types: List[str] = Field(default_factory=list)
    commodity_id: Optional[str] = None
    direction: DemandDirection = "inbound"
    session_number: int = Field(..., ge=1)
    status: OrderStatus = "pending"
    assigned_car_id: Optional[str] = None
    assigned_train_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None

    @property
    def accepted_car_types(self) -> List[str]:
        return self.compatible_car_types or [self.aar_type_id]

class SwitchListItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    car_id: str
    car_reporting_marks: str
    car_number: str
    car_type: str
    destination_industry_id: str
    destination_industry_name: str
    order_id: Optional[str] = None

class SwitchListStation(BaseModel):
    model_config = ConfigDict(frozen=True)

    station_id: str
    station_name: str
    pickups: Tuple[SwitchListItem, ...] = ()
    setouts: Tuple[SwitchListItem, ...] = ()

class SwitchList(BaseModel):
    model_config = ConfigDict(frozen=True)

    stations: Tuple[SwitchListStation, ...]
    total_pickups: int = Field(..., ge=0)
    total_setouts: int = Field(..., ge=0)
    final_car_count: int = Field(..., ge=0)
    generated_at: datetime

    def order_ids(self) -> List[str]:
        seen: List[str] = []
        for st in self.stations:
            for item in st.pickups:
                if item.order_id and item.order_id not in seen:
                    seen.append(item.order_id)
        return seen

    def peak_load(self) -> int:
        """Largest on-train count, measured after each station's pickups."""
        load = peak = 0
        for st in self.stations:
            load += len(st.pickups)
            peak = max(peak, load)
            load -= len(st.setouts)
        return peak

class Train(BaseModel):
    id: str
    name: str = Field(..., min_length=1, max_length=100)
    route_id: str
    session_number: int = Field(..., ge=1)
    status: TrainStatus = "Planned"
    locomotive_ids: List[str] = Field(..., min_length=1)
    max_capacity: int = Field(..., ge=1, le=100)
    assigned_car_ids: List[str] = Field(default_factory=list)
    switch_list: Optional[SwitchList] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TRAIN_STATUSES


# Operating session
class SnapshotCar(BaseModel):
    id: str
    current_industry: str
    sessions_at_current_location: int = Field(0, ge=0)
    last_moved: Optional[str] = None
    assigned_train_id: Optional[str] = None
    absent: List[str] = Field(default_factory=list, description="Tracked fields the car document did not carry")

class SessionSnapshot(BaseModel):
    session_number: int = Field(..., ge=1)
    cars: List[SnapshotCar] = Field(default_factory=list)
    trains: List[Dict[str, Any]] = Field(default_factory=list, description="Train documents, verbatim")
    car_orders: List[Dict[str, Any]] = Field(default_factory=list, description="CarOrder documents, verbatim")

    @model_validator(mode="after")
    def _documents_parse(self) -> "SessionSnapshot":
        for doc in self.trains:
            Train.model_validate(doc)
        for doc in self.car_orders:
            CarOrder.model_validate(doc)
        return self

class OperatingSession(BaseModel):
    id: str = "current"
    current_session_number: int = Field(1, ge=1)
    session_date: datetime = Field(default_factory=_utcnow)
    description: str = Field("", max_length=500)
    previous_session_snapshot: Optional[SessionSnapshot] = None
    pending_snapshot: Optional[SessionSnapshot] = Field(None, description="Snapshot taken by an advance that has not finished")
    in_flight: Optional[Literal["advance", "rollback"]] = Field(None, description="Set while an advance or rollback is being applied")

    @property
    def can_rollback(self) -> bool:
        return self.current_session_number > 1 and self.previous_session_snapshot is not None


# Audit
class AuditEvent(BaseModel):
    action: str
    actor: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    payload: Dict = Field(default_factory=dict)


# Operation results
class SkippedIndustry(BaseModel):
    industry_id: str
    reason: str

class OrderGenerationSummary(BaseModel):
    total_orders_generated: int = 0
    industries_processed: int = 0
    orders_by_industry: Dict[str, int] = Field(default_factory=dict)
    orders_by_aar_type: Dict[str, int] = Field(default_factory=dict)
    skipped_industries: List[SkippedIndustry] = Field(default_factory=list)

class OrderGenerationResult(BaseModel):
    session_number: int
    created: List[CarOrder]
    summary: OrderGenerationSummary

class OrderStats(BaseModel):
    session_number: Optional[int] = None
    total_orders: int
    orders_by_status: Dict[str, int] = Field(default_factory=dict)
    orders_by_aar_type: Dict[str, int] = Field(default_factory=dict)

class SessionStats(BaseModel):
    current_session_number: int
    session_date: datetime
    description: str
    has_snapshot: bool
    can_rollback: bool
    entity_counts: Dict[str, int] = Field(default_factory=dict)
    trains_by_status: Dict[str, int] = Field(default_factory=dict)
    orders_by_status: Dict[str, int] = Field(default_factory=dict)

import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

from car_orders import CarOrderService
from config import Settings
from database import AUDIT_EVENT, EntityStore, connect, create_document, get_documents
from errors import RailOpsError
from operating_session import SessionController
from schemas import (
    AuditEvent,
    CarOrder,
    DemandDirection,
    OperatingSession,
    OrderGenerationResult,
    OrderStats,
    OrderStatus,
    SessionStats,
    Train,
    TrainStatus,
)
from switch_lists import SwitchListBuilder
from trains import TrainController, train_summary

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# ------------------ Request bodies ------------------

class SessionUpdateRequest(BaseModel):
    description: str

class SessionAdvanceRequest(BaseModel):
    description: Optional[str] = Field(None, max_length=500)

class GenerateOrdersRequest(BaseModel):
    session_number: Optional[int] = Field(None, ge=1)
    industry_ids: Optional[List[str]] = None
    force: bool = False

class CreateOrderRequest(BaseModel):
    industry_id: str
    aar_type_id: str
    session_number: Optional[int] = Field(None, ge=1)
    compatible_car_types: Optional[List[str]] = None
    commodity_id: Optional[str] = None
    direction: DemandDirection = "inbound"

class UpdateOrderRequest(BaseModel):
    status: OrderStatus
    assigned_car_id: Optional[str] = None

class CreateTrainRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    route_id: str
    locomotive_ids: List[str] = Field(..., min_length=1)
    max_capacity: int = Field(..., ge=1, le=100)
    session_number: Optional[int] = Field(None, ge=1)

class UpdateTrainRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    route_id: Optional[str] = None
    locomotive_ids: Optional[List[str]] = Field(None, min_length=1)
    max_capacity: Optional[int] = Field(None, ge=1, le=100)


class Services:
    def __init__(self, store: EntityStore, settings: Settings):
        self.store = store
        self.sessions = SessionController(store)
        self.orders = CarOrderService(store, self.sessions)
        self.builder = SwitchListBuilder(store, settings)
        self.trains = TrainController(store, self.sessions, self.builder)


def create_app(store: Optional[EntityStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    if store is None:
        database = connect(settings)
        if database is not None:
            store = EntityStore(database)
    services = Services(store, settings) if store is not None else None

    app = FastAPI(title="Switch List Engine API", version=VERSION)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RailOpsError)
    async def rail_ops_error(request: Request, exc: RailOpsError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        details = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": details})

    def svc() -> Services:
        if services is None:
            raise HTTPException(503, "Database not available. Check DATABASE_URL and DATABASE_NAME.")
        return services

    def audit(action: str, **payload) -> None:
        if services is None:
            return
        try:
            create_document(AUDIT_EVENT, AuditEvent(action=action, payload=payload), database=services.store.database)
        except PyMongoError as e:
            logger.warning("could not record audit event %s: %s", action, e)

    @app.get("/")
    def root():
        return {"service": "Switch List Engine API", "version": VERSION}

    # ------------------ Operating session ------------------

    @app.get("/api/session", response_model=OperatingSession)
    def get_session():
        return svc().sessions.get_current()

    @app.patch("/api/session", response_model=OperatingSession)
    def update_session(req: SessionUpdateRequest):
        session = svc().sessions.update_description(req.description)
        audit("session_update", description=req.description)
        return session

    @app.post("/api/session/advance")
    def advance_session(req: Optional[SessionAdvanceRequest] = None):
        session, stats = svc().sessions.advance(req.description if req else None)
        audit("session_advance", **stats)
        return {"session": session.model_dump(mode="json", exclude={"previous_session_snapshot", "pending_snapshot"}), "stats": stats}

    @app.post("/api/session/rollback")
    def rollback_session(req: Optional[SessionAdvanceRequest] = None):
        session, stats = svc().sessions.rollback(req.description if req else None)
        audit("session_rollback", **stats)
        return {"session": session.model_dump(mode="json", exclude={"previous_session_snapshot", "pending_snapshot"}), "stats": stats}

    @app.post("/api/session/recover")
    def recover_session():
        session, recovered = svc().sessions.recover()
        if recovered:
            audit("session_recover", recovered=recovered)
        return {"session": session.model_dump(mode="json", exclude={"previous_session_snapshot", "pending_snapshot"}), "recovered": recovered}

    @app.get("/api/session/stats", response_model=SessionStats)
    def session_stats():
        return svc().sessions.stats()

    # ------------------ Car orders ------------------

    @app.post("/api/car-orders/generate", response_model=OrderGenerationResult, status_code=201)
    def generate_orders(req: Optional[GenerateOrdersRequest] = None):
        req = req or GenerateOrdersRequest()
        result = svc().orders.generate(req.session_number, req.industry_ids, req.force)
        audit("orders_generate", session_number=result.session_number, created=len(result.created))
        return result

    @app.get("/api/car-orders", response_model=List[CarOrder])
    def list_orders(
        industry_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        session_number: Optional[int] = None,
        aar_type_id: Optional[str] = None,
    ):
        return svc().orders.list_orders(industry_id, status, session_number, aar_type_id)

    @app.post("/api/car-orders", response_model=CarOrder, status_code=201)
    def create_order(req: CreateOrderRequest):
        order = svc().orders.create_order(
            req.industry_id, req.aar_type_id, req.session_number,
            req.compatible_car_types, req.commodity_id, req.direction,
        )
        audit("order_create", order_id=order.id)
        return order

    @app.get("/api/car-orders/stats", response_model=OrderStats)
    def order_stats(session_number: Optional[int] = None):
        return svc().orders.order_stats(session_number)

    @app.get("/api/car-orders/{order_id}", response_model=CarOrder)
    def get_order(order_id: str):
        return svc().orders.get_order(order_id)

    @app.patch("/api/car-orders/{order_id}", response_model=CarOrder)
    def update_order(order_id: str, req: UpdateOrderRequest):
        order = svc().orders.update_status(order_id, req.status, req.assigned_car_id)
        audit("order_update", order_id=order_id, status=req.status)
        return order

    @app.delete("/api/car-orders/{order_id}", status_code=204)
    def delete_order(order_id: str):
        svc().orders.delete_order(order_id)
        audit("order_delete", order_id=order_id)

    # ------------------ Trains ------------------

    @app.get("/api/trains", response_model=List[Train])
    def list_trains(session_number: Optional[int] = None, status: Optional[TrainStatus] = None):
        return svc().trains.list_trains(session_number, status)

    @app.post("/api/trains", response_model=Train, status_code=201)
    def create_train(req: CreateTrainRequest):
        train = svc().trains.create_train(req.name, req.route_id, req.locomotive_ids, req.max_capacity, req.session_number)
        audit("train_create", train_id=train.id)
        return train

    @app.get("/api/trains/{train_id}", response_model=Train)
    def get_train(train_id: str):
        return svc().trains.get_train(train_id)

    @app.put("/api/trains/{train_id}", response_model=Train)
    def update_train(train_id: str, req: UpdateTrainRequest):
        train = svc().trains.update_train(train_id, req.name, req.route_id, req.locomotive_ids, req.max_capacity)
        audit("train_update", train_id=train_id)
        return train

    @app.delete("/api/trains/{train_id}", status_code=204)
    def delete_train(train_id: str):
        svc().trains.delete_train(train_id)
        audit("train_delete", train_id=train_id)

    @app.post("/api/trains/{train_id}/switch-list")
    def generate_switch_list(train_id: str):
        s = svc()
        plan = s.trains.generate_switch_list(train_id)
        train = s.trains.get_train(train_id)
        audit("switch_list_generate", train_id=train_id, orders_fulfilled=plan.orders_fulfilled)
        return {
            "train": train_summary(train),
            "switch_list": plan.switch_list.model_dump(mode="json"),
            "orders_fulfilled": plan.orders_fulfilled,
        }

    @app.post("/api/trains/{train_id}/complete")
    def complete_train(train_id: str):
        s = svc()
        result = s.trains.complete_train(train_id)
        audit("train_complete", train_id=train_id, **result)
        return {"train": train_summary(s.trains.get_train(train_id)), **result}

    @app.post("/api/trains/{train_id}/cancel")
    def cancel_train(train_id: str):
        s = svc()
        result = s.trains.cancel_train(train_id)
        audit("train_cancel", train_id=train_id, **result)
        return {"train": train_summary(s.trains.get_train(train_id)), **result}

    # ------------------ Audit + health ------------------

    @app.get("/api/audit")
    def audit_log(limit: int = 50):
        if services is None:
            return {"items": []}
        items = get_documents(AUDIT_EVENT, {}, database=services.store.database)
        # Sort by timestamp desc if present
        items_sorted = sorted(items, key=lambda i: i.get("timestamp") or i.get("created_at") or "", reverse=True)
        return {"items": items_sorted[:limit]}

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
            "database_name": None,
            "connection_status": "Not Connected",
            "collections": [],
        }
        if services is None:
            return response
        try:
            response["database_name"] = services.store.database.name
            response["collections"] = services.store.collection_names()[:10]
            response["connection_status"] = "Connected"
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:80]}"
        return response

    return app


settings = Settings.from_env()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
app = create_app(settings=settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)

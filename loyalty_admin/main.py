from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from loyalty_admin.admin import (
    AdminDashboardService,
    NewRestaurant,
    filter_customers,
    filter_restaurants,
    filter_transactions,
)
from loyalty_admin.analytics import LoyaltyAnalyticsService, ROISettings, parse_date_range
from loyalty_admin.data_service import DataService
from loyalty_admin.db import SessionLocal
from loyalty_admin.exceptions import AdminActionError, DataServiceError
from loyalty_admin.logger import log_error, setup_logger
from loyalty_admin.models import TICKET_PRIORITIES
from loyalty_admin.realtime import ChangeFeed
from loyalty_admin.support import SupportService

logger = setup_logger(__name__)

app = FastAPI(title="Loyalty Admin")

change_feed = ChangeFeed()


class Meta(BaseModel):
    request_id: str
    warnings: list[str]


class Envelope(BaseModel):
    data: Any
    meta: Meta


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_data_service() -> DataService:
    return DataService(SessionLocal, change_feed)


def get_admin(data: DataService = Depends(get_data_service)) -> AdminDashboardService:
    return AdminDashboardService(data)


def get_support(data: DataService = Depends(get_data_service)) -> SupportService:
    return SupportService(data)


def get_analytics(data: DataService = Depends(get_data_service)) -> LoyaltyAnalyticsService:
    return LoyaltyAnalyticsService(data)


def _require_confirmation(confirm: bool) -> None:
    if not confirm:
        raise HTTPException(status_code=400, detail="confirmation required")


def _action_failed(exc: AdminActionError) -> HTTPException:
    return HTTPException(status_code=400, detail=f"{exc.action.replace('_', ' ')} failed: {exc.message}")


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


@app.get("/api/v1/admin/overview", tags=["Admin"], response_model=Envelope)
def get_overview(admin: AdminDashboardService = Depends(get_admin)) -> dict:
    return {"data": admin.fetch_all().model_dump(), "meta": _meta()}


@app.get("/api/v1/admin/stats", tags=["Admin"], response_model=Envelope)
def get_system_stats(admin: AdminDashboardService = Depends(get_admin)) -> dict:
    return {"data": admin.fetch_system_stats().model_dump(), "meta": _meta()}


@app.get("/api/v1/admin/restaurants", tags=["Admin - Restaurants"], response_model=Envelope)
def list_restaurants(
    q: str = Query(default=""),
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    restaurants = filter_restaurants(admin.fetch_restaurants(), q)
    return {"data": [r.model_dump() for r in restaurants], "meta": _meta()}


@app.post("/api/v1/admin/restaurants", tags=["Admin - Restaurants"], response_model=Envelope)
def create_restaurant(
    payload: NewRestaurant,
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    try:
        restaurant = admin.create_restaurant(payload)
    except AdminActionError as exc:
        raise _action_failed(exc) from exc
    return {"data": restaurant.model_dump(), "meta": _meta()}


@app.delete("/api/v1/admin/restaurants/{restaurant_id}", tags=["Admin - Restaurants"], response_model=Envelope)
def delete_restaurant(
    restaurant_id: str,
    confirm: bool = Query(default=False),
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    _require_confirmation(confirm)
    try:
        deleted = admin.delete_restaurant(restaurant_id)
    except AdminActionError as exc:
        raise _action_failed(exc) from exc
    return {"data": {"restaurant_id": restaurant_id, "deleted": deleted}, "meta": _meta()}


@app.post("/api/v1/admin/restaurants/{restaurant_id}/reset", tags=["Admin - Restaurants"], response_model=Envelope)
def reset_restaurant(
    restaurant_id: str,
    confirm: bool = Query(default=False),
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    _require_confirmation(confirm)
    try:
        deleted = admin.reset_restaurant_data(restaurant_id)
    except AdminActionError as exc:
        raise _action_failed(exc) from exc
    return {"data": {"restaurant_id": restaurant_id, "deleted": deleted}, "meta": _meta()}


@app.get("/api/v1/admin/customers", tags=["Admin - Customers"], response_model=Envelope)
def list_customers(
    q: str = Query(default=""),
    restaurant_id: str = Query(default="all"),
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    customers = filter_customers(admin.fetch_customers(limit), q, restaurant_id)
    return {"data": [c.model_dump() for c in customers], "meta": _meta()}


class PointsAdjustment(BaseModel):
    model_config = {"json_schema_extra": {"example": {"points": 150, "reason": "Service recovery"}}}
    points: int
    reason: str = Field(min_length=1)


@app.post("/api/v1/admin/customers/{customer_id}/points-adjustments", tags=["Admin - Customers"], response_model=Envelope)
def adjust_customer_points(
    customer_id: str,
    payload: PointsAdjustment,
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    try:
        result = admin.adjust_customer_points(customer_id, payload.points, payload.reason)
    except AdminActionError as exc:
        raise _action_failed(exc) from exc
    if result is None:
        raise HTTPException(status_code=404, detail="customer not found")
    return {"data": result, "meta": _meta()}


@app.get("/api/v1/admin/transactions", tags=["Admin - Transactions"], response_model=Envelope)
def list_transactions(
    q: str = Query(default=""),
    restaurant_id: str = Query(default="all"),
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    transactions = filter_transactions(admin.fetch_transactions(limit), q, restaurant_id)
    return {"data": [t.model_dump() for t in transactions], "meta": _meta()}


class TicketCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "restaurant_id": "5a0c4f9e-8f4e-4a53-9d0e-1f2b3c4d5e6f",
                "subject": "Points not credited",
                "description": "A customer's purchase yesterday earned no points.",
                "priority": "high",
                "category": "points",
            }
        }
    }
    restaurant_id: str
    subject: str = Field(min_length=1)
    description: str = ""
    priority: str = "medium"
    category: str = "general"
    created_by: Optional[str] = None


class TicketStatusUpdate(BaseModel):
    status: str


class MessageCreate(BaseModel):
    message: str


@app.get("/api/v1/support/tickets", tags=["Support"], response_model=Envelope)
def list_tickets(
    status: Optional[str] = Query(default=None),
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    tickets = admin.fetch_support_tickets()
    if status is not None:
        tickets = [t for t in tickets if t["status"] == status]
    return {"data": tickets, "meta": _meta()}


@app.post("/api/v1/support/tickets", tags=["Support"], response_model=Envelope)
def create_ticket(payload: TicketCreate, support: SupportService = Depends(get_support)) -> dict:
    if payload.priority not in TICKET_PRIORITIES:
        raise HTTPException(status_code=400, detail="invalid priority")
    try:
        ticket = support.create_ticket(
            payload.restaurant_id,
            payload.subject,
            payload.description,
            priority=payload.priority,
            category=payload.category,
            created_by=payload.created_by,
        )
    except (ValueError, DataServiceError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"data": ticket, "meta": _meta()}


@app.patch("/api/v1/support/tickets/{ticket_id}/status", tags=["Support"], response_model=Envelope)
def update_ticket_status(
    ticket_id: str,
    payload: TicketStatusUpdate,
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    try:
        ticket = admin.update_ticket_status(ticket_id, payload.status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except AdminActionError as exc:
        raise _action_failed(exc) from exc
    if ticket is None:
        raise HTTPException(status_code=404, detail="ticket not found")
    return {"data": ticket, "meta": _meta()}


@app.get("/api/v1/support/tickets/{ticket_id}/messages", tags=["Support"], response_model=Envelope)
def list_ticket_messages(ticket_id: str, admin: AdminDashboardService = Depends(get_admin)) -> dict:
    return {"data": admin.fetch_messages(ticket_id), "meta": _meta()}


@app.post("/api/v1/support/tickets/{ticket_id}/messages", tags=["Support"], response_model=Envelope)
def send_ticket_message(
    ticket_id: str,
    payload: MessageCreate,
    admin: AdminDashboardService = Depends(get_admin),
) -> dict:
    try:
        ticket = admin.support.get_ticket(ticket_id)
    except DataServiceError as exc:
        log_error(logger, exc, "Error looking up ticket")
        raise HTTPException(status_code=400, detail=f"send message failed: {exc.message}") from exc
    if ticket is None:
        raise HTTPException(status_code=404, detail="ticket not found")
    try:
        message = admin.send_message(ticket_id, payload.message)
    except AdminActionError as exc:
        raise _action_failed(exc) from exc
    if message is None:
        raise HTTPException(status_code=400, detail="message text is required")
    return {"data": message, "meta": _meta()}


@app.get("/api/v1/restaurants/{restaurant_id}/roi-settings", tags=["ROI Analytics"], response_model=Envelope)
def get_roi_settings(
    restaurant_id: str,
    analytics: LoyaltyAnalyticsService = Depends(get_analytics),
) -> dict:
    return {"data": analytics.get_roi_settings(restaurant_id).model_dump(), "meta": _meta()}


@app.put("/api/v1/restaurants/{restaurant_id}/roi-settings", tags=["ROI Analytics"], response_model=Envelope)
def update_roi_settings(
    restaurant_id: str,
    payload: ROISettings,
    analytics: LoyaltyAnalyticsService = Depends(get_analytics),
) -> dict:
    try:
        stored = analytics.update_roi_settings(restaurant_id, payload)
    except DataServiceError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    return {"data": stored.model_dump(), "meta": _meta()}


@app.get("/api/v1/restaurants/{restaurant_id}/analytics/roi", tags=["ROI Analytics"], response_model=Envelope)
def get_roi_metrics(
    restaurant_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    analytics: LoyaltyAnalyticsService = Depends(get_analytics),
) -> dict:
    date_range = parse_date_range(start, end)
    metrics = analytics.get_loyalty_roi_metrics(restaurant_id, date_range)
    return {"data": metrics.model_dump(), "meta": _meta()}


@app.get("/api/v1/restaurants/{restaurant_id}/analytics/revenue-breakdown", tags=["ROI Analytics"], response_model=Envelope)
def get_revenue_breakdown(
    restaurant_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    analytics: LoyaltyAnalyticsService = Depends(get_analytics),
) -> dict:
    date_range = parse_date_range(start, end)
    rows = analytics.get_revenue_breakdown(restaurant_id, date_range)
    return {"data": [row.model_dump() for row in rows], "meta": _meta()}


@app.get("/api/v1/restaurants/{restaurant_id}/analytics/customer-behavior", tags=["ROI Analytics"], response_model=Envelope)
def get_customer_behavior(
    restaurant_id: str,
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    analytics: LoyaltyAnalyticsService = Depends(get_analytics),
) -> dict:
    date_range = parse_date_range(start, end)
    metrics = analytics.get_customer_behavior_metrics(restaurant_id, date_range)
    return {"data": metrics.model_dump(), "meta": _meta()}

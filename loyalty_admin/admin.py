"""
Super-admin dashboard data access.

One service backs every admin screen: platform statistics, restaurant,
customer and transaction listings, support tickets, and the administrative
mutations (tenant creation and deletion, data resets, point adjustments).

Reads never raise: a failed read is logged and replaced by an empty or
zero-valued result. Mutations raise ``AdminActionError`` after logging.
"""

import re
import time
from datetime import datetime, timedelta
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from loyalty_admin.config import settings as app_settings
from loyalty_admin.data_service import DataService
from loyalty_admin.exceptions import AdminActionError, DataServiceError
from loyalty_admin.logger import log_error, setup_logger
from loyalty_admin.models import DEFAULT_RESTAURANT_SETTINGS, DEFAULT_ROI_SETTINGS, utcnow
from loyalty_admin.support import SupportService

logger = setup_logger(__name__)

SystemHealth = Literal["healthy", "warning", "critical"]

ADMIN_SENDER_TYPE = "super_admin"
ADMIN_SENDER_ID = "super-admin"

SAMPLE_REWARDS = [
    {"name": "Free Appetizer", "description": "Choose any appetizer", "points_required": 100, "category": "food", "min_tier": "bronze"},
    {"name": "Free Dessert", "description": "Complimentary dessert", "points_required": 150, "category": "food", "min_tier": "bronze"},
    {"name": "10% Off Next Visit", "description": "Get 10% discount", "points_required": 200, "category": "discount", "min_tier": "bronze"},
]


class SystemStats(BaseModel):
    total_restaurants: int = 0
    active_restaurants: int = 0
    total_customers: int = 0
    total_transactions: int = 0
    total_points_issued: int = 0
    total_revenue: float = 0
    total_redemptions: int = 0
    system_health: SystemHealth = "critical"


class RestaurantSummary(BaseModel):
    id: str
    name: str
    slug: str
    owner_id: Optional[str] = None
    settings: Optional[dict[str, Any]] = None
    roi_settings: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    owner_email: str = ""
    owner_name: str = ""
    customer_count: int = 0
    revenue: float = 0
    points_issued: int = 0
    redemptions: int = 0
    last_activity: Optional[datetime] = None


class CustomerRow(BaseModel):
    id: str
    restaurant_id: str
    first_name: str
    last_name: str = ""
    email: str = ""
    total_points: int = 0
    current_tier: str = "bronze"
    total_spent: float = 0
    visit_count: int = 0
    created_at: datetime
    restaurant_name: str = "Unknown Restaurant"


class TransactionRow(BaseModel):
    id: str
    restaurant_id: str
    customer_id: str
    type: str
    points: int
    amount_spent: Optional[float] = None
    description: Optional[str] = None
    created_at: datetime
    restaurant_name: str = "Unknown Restaurant"
    customer_name: str = "Unknown Customer"


class DashboardSnapshot(BaseModel):
    stats: SystemStats
    restaurants: list[RestaurantSummary]
    customers: list[CustomerRow]
    transactions: list[TransactionRow]
    support_tickets: list[dict[str, Any]]
    open_tickets: int


class NewRestaurant(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Saffron House",
                "owner_email": "owner@saffron.example",
                "owner_password": "change-me-123",
                "owner_first_name": "Layla",
                "owner_last_name": "Haddad",
            }
        }
    }
    name: str = Field(min_length=1)
    owner_email: str = Field(min_length=3)
    owner_password: str = Field(min_length=6)
    owner_first_name: str = ""
    owner_last_name: str = ""


def make_slug(name: str, stamp_ms: Optional[int] = None) -> str:
    stamp_ms = stamp_ms if stamp_ms is not None else int(time.time() * 1000)
    return f"{re.sub(r'[^a-z0-9]+', '-', name.lower())}-{stamp_ms}"


def owner_display_name(user: dict[str, Any]) -> str:
    metadata = user.get("user_metadata") or {}
    first, last = metadata.get("first_name"), metadata.get("last_name")
    if first and last:
        return f"{first} {last}"
    return (user.get("email") or "").split("@")[0]


def _contains(value: Optional[str], query: str) -> bool:
    return bool(value) and query in value.lower()


def filter_restaurants(rows: list[RestaurantSummary], query: str = "") -> list[RestaurantSummary]:
    q = query.lower()
    return [r for r in rows if _contains(r.name, q) or _contains(r.owner_email, q) or not q]


def filter_customers(rows: list[CustomerRow], query: str = "", restaurant_id: str = "all") -> list[CustomerRow]:
    q = query.lower()
    return [
        c
        for c in rows
        if (not q or _contains(c.first_name, q) or _contains(c.last_name, q) or _contains(c.email, q))
        and (restaurant_id == "all" or c.restaurant_id == restaurant_id)
    ]


def filter_transactions(
    rows: list[TransactionRow],
    query: str = "",
    restaurant_id: str = "all",
) -> list[TransactionRow]:
    q = query.lower()
    return [
        t
        for t in rows
        if (not q or _contains(t.customer_name, q) or _contains(t.description, q))
        and (restaurant_id == "all" or t.restaurant_id == restaurant_id)
    ]


def count_open_tickets(tickets: list[dict[str, Any]]) -> int:
    return sum(1 for ticket in tickets if ticket.get("status") == "open")


class AdminDashboardService:
    def __init__(self, data: DataService, support: Optional[SupportService] = None):
        self.data = data
        self.support = support or SupportService(data)

    # Reads

    def fetch_system_stats(self) -> SystemStats:
        try:
            restaurants = self.data.table("restaurants").select("id", "created_at").execute()
            customers = self.data.table("customers").select("id", "total_spent").execute()
            transactions = self.data.table("transactions").select("points", "amount_spent", "type").execute()

            cutoff = utcnow() - timedelta(days=app_settings.active_window_days)
            total_restaurants = len(restaurants)
            active_restaurants = sum(1 for r in restaurants if r["created_at"] > cutoff)

            if total_restaurants == 0:
                health: SystemHealth = "critical"
            elif active_restaurants < total_restaurants * 0.5:
                health = "warning"
            else:
                health = "healthy"

            return SystemStats(
                total_restaurants=total_restaurants,
                active_restaurants=active_restaurants,
                total_customers=len(customers),
                total_transactions=len(transactions),
                total_points_issued=sum(t["points"] for t in transactions if t["points"] > 0),
                total_revenue=sum(c["total_spent"] or 0 for c in customers),
                total_redemptions=sum(1 for t in transactions if t["type"] == "redemption"),
                system_health=health,
            )
        except Exception as exc:
            log_error(logger, exc, "Error fetching system stats")
            return SystemStats()

    def fetch_restaurants(self) -> list[RestaurantSummary]:
        try:
            restaurants = self.data.table("restaurants").select().order("created_at", desc=True).execute()
        except Exception as exc:
            log_error(logger, exc, "Error fetching restaurants")
            return []
        return [self._enrich_restaurant(restaurant) for restaurant in restaurants]

    def _owner_details(self, restaurant: dict[str, Any]) -> tuple[str, str]:
        if not restaurant.get("owner_id"):
            return "", ""
        try:
            user = self.data.auth.get_user_by_id(restaurant["owner_id"])
        except Exception:
            logger.warning(f"Could not fetch owner data for restaurant: {restaurant['id']}")
            return "", ""
        if not user:
            return "", ""
        return user.get("email") or "", owner_display_name(user)

    def _enrich_restaurant(self, restaurant: dict[str, Any]) -> RestaurantSummary:
        try:
            owner_email, owner_name = self._owner_details(restaurant)
            customers = (
                self.data.table("customers")
                .select("id", "total_spent")
                .eq("restaurant_id", restaurant["id"])
                .execute()
            )
            transactions = (
                self.data.table("transactions")
                .select("points", "type", "created_at")
                .eq("restaurant_id", restaurant["id"])
                .order("created_at", desc=True)
                .execute()
            )
            return RestaurantSummary(
                **restaurant,
                owner_email=owner_email,
                owner_name=owner_name,
                customer_count=len(customers),
                revenue=sum(c["total_spent"] or 0 for c in customers),
                points_issued=sum(t["points"] for t in transactions if t["points"] > 0),
                redemptions=sum(1 for t in transactions if t["type"] == "redemption"),
                last_activity=transactions[0]["created_at"] if transactions else restaurant["updated_at"],
            )
        except Exception as exc:
            log_error(logger, exc, f"Error enhancing restaurant data for {restaurant.get('id')}")
            return RestaurantSummary(**restaurant)

    def fetch_customers(self, limit: Optional[int] = None) -> list[CustomerRow]:
        try:
            customers = (
                self.data.table("customers")
                .select(embed={"restaurant": ["name"]})
                .order("created_at", desc=True)
                .limit(limit or app_settings.admin_list_limit)
                .execute()
            )
            rows = []
            for customer in customers:
                restaurant = customer.pop("restaurant", None)
                rows.append(
                    CustomerRow(
                        **customer,
                        restaurant_name=(restaurant or {}).get("name") or "Unknown Restaurant",
                    )
                )
            return rows
        except Exception as exc:
            log_error(logger, exc, "Error fetching customers")
            return []

    def fetch_transactions(self, limit: Optional[int] = None) -> list[TransactionRow]:
        try:
            transactions = (
                self.data.table("transactions")
                .select(embed={"restaurant": ["name"], "customer": ["first_name", "last_name"]})
                .order("created_at", desc=True)
                .limit(limit or app_settings.admin_list_limit)
                .execute()
            )
            rows = []
            for transaction in transactions:
                restaurant = transaction.pop("restaurant", None)
                customer = transaction.pop("customer", None)
                rows.append(
                    TransactionRow(
                        **transaction,
                        restaurant_name=(restaurant or {}).get("name") or "Unknown Restaurant",
                        customer_name=(
                            f"{customer['first_name']} {customer['last_name']}"
                            if customer
                            else "Unknown Customer"
                        ),
                    )
                )
            return rows
        except Exception as exc:
            log_error(logger, exc, "Error fetching transactions")
            return []

    def fetch_support_tickets(self) -> list[dict[str, Any]]:
        try:
            return self.support.get_all_tickets()
        except Exception as exc:
            log_error(logger, exc, "Error fetching support tickets")
            return []

    def fetch_messages(self, ticket_id: str) -> list[dict[str, Any]]:
        if not ticket_id:
            return []
        try:
            return self.support.get_ticket_messages(ticket_id)
        except Exception as exc:
            log_error(logger, exc, "Error fetching messages")
            return []

    def fetch_all(self) -> DashboardSnapshot:
        tickets = self.fetch_support_tickets()
        return DashboardSnapshot(
            stats=self.fetch_system_stats(),
            restaurants=self.fetch_restaurants(),
            customers=self.fetch_customers(),
            transactions=self.fetch_transactions(),
            support_tickets=tickets,
            open_tickets=count_open_tickets(tickets),
        )

    # Mutations

    def create_restaurant(self, payload: NewRestaurant) -> RestaurantSummary:
        try:
            owner = self.data.auth.create_user(
                payload.owner_email,
                payload.owner_password,
                {
                    "first_name": payload.owner_first_name,
                    "last_name": payload.owner_last_name,
                    "restaurant_name": payload.name,
                },
            )
        except DataServiceError as exc:
            log_error(logger, exc, "Error creating restaurant owner")
            raise AdminActionError(exc.message, "create_restaurant") from exc

        try:
            restaurant = self.data.table("restaurants").insert(
                {
                    "name": payload.name,
                    "owner_id": owner["id"],
                    "slug": make_slug(payload.name),
                    "settings": DEFAULT_RESTAURANT_SETTINGS,
                    "roi_settings": DEFAULT_ROI_SETTINGS,
                }
            )[0]
        except DataServiceError as exc:
            log_error(logger, exc, "Error creating restaurant")
            self._discard_owner(owner["id"])
            raise AdminActionError(exc.message, "create_restaurant") from exc

        try:
            self.data.table("rewards").insert(
                [{**reward, "restaurant_id": restaurant["id"]} for reward in SAMPLE_REWARDS]
            )
        except DataServiceError as exc:
            log_error(logger, exc, f"Sample rewards not created for restaurant {restaurant['id']}")

        logger.info(f"Created restaurant {restaurant['id']} ({payload.name}) for {owner['email']}")
        return RestaurantSummary(
            **restaurant,
            owner_email=owner["email"],
            owner_name=owner_display_name(owner),
            last_activity=restaurant["updated_at"],
        )

    def _discard_owner(self, user_id: str) -> None:
        try:
            self.data.auth.delete_user(user_id)
        except DataServiceError as exc:
            log_error(logger, exc, f"Could not remove orphaned owner account {user_id}")

    def delete_restaurant(self, restaurant_id: str) -> dict[str, int]:
        try:
            counts = self.data.rpc("delete_restaurant_cascade", restaurant_id=restaurant_id)
        except DataServiceError as exc:
            log_error(logger, exc, "Error deleting restaurant")
            raise AdminActionError(exc.message, "delete_restaurant") from exc
        logger.info(f"Deleted restaurant {restaurant_id}: {counts}")
        return counts

    def reset_restaurant_data(self, restaurant_id: str) -> dict[str, int]:
        try:
            counts = self.data.rpc("reset_restaurant_data", restaurant_id=restaurant_id)
        except DataServiceError as exc:
            log_error(logger, exc, "Error resetting restaurant data")
            raise AdminActionError(exc.message, "reset_restaurant_data") from exc
        logger.info(f"Reset restaurant {restaurant_id}: {counts}")
        return counts

    def adjust_customer_points(self, customer_id: str, points: int, reason: str) -> Optional[dict[str, Any]]:
        try:
            customer = (
                self.data.table("customers")
                .select("id", "restaurant_id")
                .eq("id", customer_id)
                .maybe_single()
            )
            if customer is None:
                return None
            return self.data.rpc(
                "process_point_transaction",
                restaurant_id=customer["restaurant_id"],
                customer_id=customer_id,
                type="bonus" if points > 0 else "redemption",
                points=points,
                description=f"Admin adjustment: {reason}",
                amount_spent=0,
                reward_id=None,
                branch_id=None,
            )
        except DataServiceError as exc:
            log_error(logger, exc, "Error adjusting customer points")
            raise AdminActionError(exc.message, "adjust_customer_points") from exc

    def send_message(self, ticket_id: str, text: str) -> Optional[dict[str, Any]]:
        if not ticket_id or not text.strip():
            return None
        try:
            return self.support.send_message(ticket_id, ADMIN_SENDER_TYPE, ADMIN_SENDER_ID, text)
        except DataServiceError as exc:
            log_error(logger, exc, "Error sending message")
            raise AdminActionError(exc.message, "send_message") from exc

    def update_ticket_status(self, ticket_id: str, status: str) -> Optional[dict[str, Any]]:
        try:
            return self.support.update_ticket_status(ticket_id, status, ADMIN_SENDER_ID)
        except DataServiceError as exc:
            log_error(logger, exc, "Error updating ticket status")
            raise AdminActionError(exc.message, "update_ticket_status") from exc

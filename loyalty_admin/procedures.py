"""
Stored procedures of the loyalty data store.

Each procedure receives an open session and runs inside the single
transaction opened by ``DataService.rpc``: either every write it makes is
committed or none is. Business-rule violations raise ``ProcedureError``.
"""

import math
from typing import Any, Callable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from loyalty_admin.exceptions import ProcedureError
from loyalty_admin.models import (
    DEFAULT_POINT_VALUE_AED,
    DEFAULT_RESTAURANT_SETTINGS,
    DEFAULT_ROI_SETTINGS,
    TRANSACTION_TYPES,
    Branch,
    Customer,
    MenuItem,
    Restaurant,
    Reward,
    RewardRedemption,
    SupportMessage,
    SupportTicket,
    Transaction,
    parse_timestamp,
    utcnow,
)

PROCEDURES: dict[str, Callable[..., Any]] = {}


def procedure(name: str):
    def register(func):
        PROCEDURES[name] = func
        return func

    return register


def _get_restaurant(session: Session, restaurant_id: str) -> Restaurant:
    restaurant = session.get(Restaurant, restaurant_id) if restaurant_id else None
    if restaurant is None:
        raise ProcedureError(f"restaurant {restaurant_id} not found")
    return restaurant


def _tier_for(settings: dict, lifetime_points: int) -> str:
    thresholds = settings.get("tierThresholds") or DEFAULT_RESTAURANT_SETTINGS["tierThresholds"]
    tier = "bronze"
    for name, threshold in sorted(thresholds.items(), key=lambda item: item[1]):
        if lifetime_points >= threshold:
            tier = name
    return tier


def _blanket_points(settings: dict, tier: str, amount: float) -> int:
    blanket = settings.get("blanketMode") or {}
    if not blanket.get("enabled"):
        return 0
    rate = float((blanket.get("manualSettings") or {}).get("pointsPerAED") or 0)
    multiplier = float((settings.get("tierMultipliers") or {}).get(tier, 1.0))
    return int(math.floor(round(amount * rate * multiplier, 6)))


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    return numerator / denominator * scale if denominator else 0.0


@procedure("process_point_transaction")
def process_point_transaction(
    session: Session,
    restaurant_id: str,
    customer_id: str,
    type: str,
    points: Optional[int] = None,
    description: Optional[str] = None,
    amount_spent: float = 0,
    reward_id: Optional[str] = None,
    branch_id: Optional[str] = None,
) -> dict[str, Any]:
    if type not in TRANSACTION_TYPES:
        raise ProcedureError(f"unknown transaction type {type!r}")
    restaurant = _get_restaurant(session, restaurant_id)
    customer = session.get(Customer, customer_id)
    if customer is None or customer.restaurant_id != restaurant.id:
        raise ProcedureError(f"customer {customer_id} not found for restaurant {restaurant_id}")

    amount = float(amount_spent or 0)
    if amount < 0:
        raise ProcedureError("amount_spent cannot be negative")

    settings = restaurant.settings or {}
    if points is None:
        if type != "purchase":
            raise ProcedureError(f"points are required for {type} transactions")
        points = _blanket_points(settings, customer.current_tier, amount)
    points = int(points)
    if type == "redemption":
        points = -abs(points)

    new_balance = customer.total_points + points
    if new_balance < 0:
        raise ProcedureError(
            f"insufficient points: balance {customer.total_points}, requested {points}"
        )

    now = utcnow()
    customer.total_points = new_balance
    if points > 0:
        customer.lifetime_points = customer.lifetime_points + points
    if amount > 0:
        customer.total_spent = float(customer.total_spent or 0) + amount
        customer.visit_count = customer.visit_count + 1
        customer.last_visit = now
    customer.current_tier = _tier_for(settings, customer.lifetime_points)
    customer.updated_at = now

    transaction = Transaction(
        restaurant_id=restaurant.id,
        customer_id=customer.id,
        branch_id=branch_id,
        reward_id=reward_id,
        type=type,
        points=points,
        amount_spent=amount,
        description=description,
        created_at=now,
    )
    session.add(transaction)

    if type == "redemption" and reward_id:
        reward = session.get(Reward, reward_id)
        if reward is None or reward.restaurant_id != restaurant.id:
            raise ProcedureError(f"reward {reward_id} not found for restaurant {restaurant_id}")
        session.add(
            RewardRedemption(
                restaurant_id=restaurant.id,
                customer_id=customer.id,
                reward_id=reward.id,
                points_used=-points,
                created_at=now,
            )
        )

    session.flush()
    return {
        "transaction_id": transaction.id,
        "points": points,
        "new_balance": customer.total_points,
        "lifetime_points": customer.lifetime_points,
        "tier": customer.current_tier,
    }


@procedure("calculate_comprehensive_roi")
def calculate_comprehensive_roi(
    session: Session,
    restaurant_id: str,
    start_date: str,
    end_date: str,
) -> dict[str, Any]:
    restaurant = _get_restaurant(session, restaurant_id)
    start = parse_timestamp(start_date)
    end = parse_timestamp(end_date)

    settings = restaurant.settings or {}
    roi_settings = {**DEFAULT_ROI_SETTINGS, **(restaurant.roi_settings or {})}
    point_value = float(settings.get("pointValueAED") or DEFAULT_POINT_VALUE_AED)

    transactions = session.scalars(
        select(Transaction).where(
            Transaction.restaurant_id == restaurant.id,
            Transaction.created_at >= start,
            Transaction.created_at <= end,
        )
    ).all()

    orders = [t for t in transactions if (t.amount_spent or 0) > 0]
    total_revenue = sum(float(t.amount_spent) for t in orders)
    total_orders = len(orders)

    customer_ids = {t.customer_id for t in transactions}
    total_customers = len(customer_ids)
    returning_customers = 0
    if customer_ids:
        returning_customers = session.scalar(
            select(func.count()).select_from(Customer).where(
                Customer.id.in_(list(customer_ids)), Customer.visit_count > 1
            )
        ) or 0

    points_issued = sum(t.points for t in transactions if t.points > 0)
    points_redeemed = sum(-t.points for t in transactions if t.type == "redemption")
    outstanding_points = session.scalar(
        select(func.coalesce(func.sum(Customer.total_points), 0)).where(
            Customer.restaurant_id == restaurant.id
        )
    ) or 0

    reward_cost = points_redeemed * point_value
    cogs = total_revenue * float(roi_settings["estimated_cogs_percentage"])
    gross_profit = total_revenue - cogs
    net_profit = gross_profit - reward_cost

    return {
        "revenue_metrics": {
            "total_revenue": round(total_revenue, 2),
            "total_orders": total_orders,
            "average_order_value": round(_ratio(total_revenue, total_orders), 2),
            "revenue_per_customer": round(_ratio(total_revenue, total_customers), 2),
        },
        "cost_metrics": {
            "total_reward_cost": round(reward_cost, 2),
            "estimated_cogs": round(cogs, 2),
            "reward_cost_percentage": round(_ratio(reward_cost, total_revenue, 100), 2),
            "estimated_gross_profit": round(gross_profit, 2),
        },
        "loyalty_metrics": {
            "total_points_issued": points_issued,
            "total_points_redeemed": points_redeemed,
            "outstanding_liability": round(outstanding_points * point_value, 2),
            "point_redemption_rate": round(_ratio(points_redeemed, points_issued, 100), 2),
        },
        "customer_metrics": {
            "total_customers": total_customers,
            "returning_customers": returning_customers,
            "retention_rate": round(_ratio(returning_customers, total_customers, 100), 2),
        },
        "profitability": {
            "roi_percentage": round(_ratio(net_profit, reward_cost, 100), 2),
            "net_profit_after_rewards": round(net_profit, 2),
            "gross_profit_margin": round(_ratio(gross_profit, total_revenue, 100), 2),
        },
        "settings_used": {"point_value_aed": point_value, **roi_settings},
    }


@procedure("update_restaurant_roi_settings")
def update_restaurant_roi_settings(
    session: Session,
    restaurant_id: str,
    roi_settings: dict[str, Any],
) -> dict[str, Any]:
    restaurant = _get_restaurant(session, restaurant_id)
    unknown = set(roi_settings) - set(DEFAULT_ROI_SETTINGS)
    if unknown:
        raise ProcedureError(f"unknown ROI setting(s): {sorted(unknown)}")
    for key, value in roi_settings.items():
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ProcedureError(f"ROI setting {key} must be a non-negative number")
        if key != "target_roi_percentage" and value > 1:
            raise ProcedureError(f"ROI setting {key} must be a fraction between 0 and 1")

    merged = {**DEFAULT_ROI_SETTINGS, **(restaurant.roi_settings or {}), **roi_settings}
    restaurant.roi_settings = merged
    restaurant.updated_at = utcnow()
    session.flush()
    return merged


def _delete_where(session: Session, model, *criteria) -> int:
    stmt = delete(model).where(*criteria).execution_options(synchronize_session=False)
    return session.execute(stmt).rowcount or 0


def _delete_customer_data(session: Session, restaurant: Restaurant) -> dict[str, int]:
    return {
        "reward_redemptions": _delete_where(
            session, RewardRedemption, RewardRedemption.restaurant_id == restaurant.id
        ),
        "transactions": _delete_where(
            session, Transaction, Transaction.restaurant_id == restaurant.id
        ),
        "customers": _delete_where(session, Customer, Customer.restaurant_id == restaurant.id),
    }


@procedure("reset_restaurant_data")
def reset_restaurant_data(session: Session, restaurant_id: str) -> dict[str, int]:
    restaurant = _get_restaurant(session, restaurant_id)
    counts = _delete_customer_data(session, restaurant)
    restaurant.updated_at = utcnow()
    return counts


@procedure("delete_restaurant_cascade")
def delete_restaurant_cascade(session: Session, restaurant_id: str) -> dict[str, int]:
    restaurant = _get_restaurant(session, restaurant_id)
    ticket_ids = select(SupportTicket.id).where(SupportTicket.restaurant_id == restaurant.id)
    counts = {
        "support_messages": _delete_where(
            session, SupportMessage, SupportMessage.ticket_id.in_(ticket_ids)
        ),
        "support_tickets": _delete_where(
            session, SupportTicket, SupportTicket.restaurant_id == restaurant.id
        ),
    }
    counts.update(_delete_customer_data(session, restaurant))
    counts["rewards"] = _delete_where(session, Reward, Reward.restaurant_id == restaurant.id)
    counts["menu_items"] = _delete_where(session, MenuItem, MenuItem.restaurant_id == restaurant.id)
    counts["branches"] = _delete_where(session, Branch, Branch.restaurant_id == restaurant.id)
    counts["restaurants"] = _delete_where(session, Restaurant, Restaurant.id == restaurant.id)
    return counts

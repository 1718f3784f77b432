"""
Loyalty ROI analytics.

Turns a restaurant id and a date range into the reports shown on the ROI
dashboard. The headline report is computed by the ``calculate_comprehensive_roi``
procedure and reshaped here. The monthly revenue breakdown and the customer
behavior summary are built from plain table queries.

Every report degrades to a zero-valued structure when the data store fails:
errors are logged, never raised to the caller.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, field_validator

from loyalty_admin.data_service import DataService
from loyalty_admin.logger import log_error, setup_logger
from loyalty_admin.models import DEFAULT_POINT_VALUE_AED, DEFAULT_ROI_SETTINGS

logger = setup_logger(__name__)

RoiStatus = Literal["high-performing", "profitable", "losing-money"]

HIGH_PERFORMING_ROI = 200
LIFETIME_MONTHS = 12
DAYS_PER_MONTH = 30
DEFAULT_POINTS_PER_UNIT = 1
DEFAULT_COGS_PERCENTAGE = 0.3

NO_REWARDS_TEXT = (
    "No loyalty rewards have been redeemed yet. "
    "Start rewarding customers to see ROI analysis."
)
NO_DATA_TEXT = "No data available yet."

# Month labels stay English whatever the process locale.
MONTH_ABBR = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class DateRange(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class ROISettings(BaseModel):
    default_profit_margin: float = DEFAULT_ROI_SETTINGS["default_profit_margin"]
    estimated_cogs_percentage: float = DEFAULT_ROI_SETTINGS["estimated_cogs_percentage"]
    labor_cost_percentage: float = DEFAULT_ROI_SETTINGS["labor_cost_percentage"]
    overhead_percentage: float = DEFAULT_ROI_SETTINGS["overhead_percentage"]
    target_roi_percentage: float = DEFAULT_ROI_SETTINGS["target_roi_percentage"]


class LoyaltyROIMetrics(BaseModel):
    roi: float = 0
    roi_status: RoiStatus = "profitable"
    roi_summary_text: str = NO_DATA_TEXT

    gross_revenue: float = 0
    reward_cost: float = 0
    net_revenue: float = 0
    cogs: float = 0
    net_profit: float = 0
    total_reward_liability: float = 0

    repeat_purchase_rate: float = 0
    average_order_value: float = 0
    loyalty_aov: float = 0
    purchase_frequency: float = 0
    customer_lifetime_value: float = 0

    total_points_issued: float = 0
    total_points_redeemed: float = 0
    active_customers: int = 0
    loyalty_customers: int = 0

    point_redemption_rate: float = 0
    reward_cost_percentage: float = 0
    estimated_gross_profit: float = 0
    profit_margin: float = 0


class RevenueBreakdown(BaseModel):
    month: str
    gross_revenue: float
    reward_cost: float
    net_revenue: float
    net_profit: float


class CustomerBehaviorMetrics(BaseModel):
    new_customers: int = 0
    returning_customers: int = 0
    loyalty_participation: float = 0
    average_points_earned: float = 0
    average_points_redeemed: float = 0


class RevenueSettings(BaseModel):
    point_value: float = DEFAULT_POINT_VALUE_AED
    points_per_unit: float = DEFAULT_POINTS_PER_UNIT
    cogs_percentage: float = DEFAULT_COGS_PERCENTAGE


def classify_roi(roi: float) -> RoiStatus:
    if roi >= HIGH_PERFORMING_ROI:
        return "high-performing"
    if roi >= 0:
        return "profitable"
    return "losing-money"


def roi_summary_text(point_value: float, net_profit: float, reward_cost: float) -> str:
    if reward_cost > 0:
        return (
            f"For every {point_value:g} AED you invest in loyalty rewards, "
            f"you generate {net_profit / reward_cost:.2f} AED in net profit."
        )
    return NO_REWARDS_TEXT


def months_in_range(start: datetime, end: datetime) -> int:
    """Number of 30-day buckets the range touches, never less than one."""
    days = (end - start).total_seconds() / 86400
    return max(1, math.ceil(days / DAYS_PER_MONTH))


def purchase_frequency(total_orders: float, total_customers: int, months: int) -> float:
    return total_orders / max(total_customers, 1) / max(months, 1)


def customer_lifetime_value(average_order_value: float, frequency: float) -> float:
    return average_order_value * frequency * LIFETIME_MONTHS


def month_buckets(start: datetime, end: datetime) -> list[tuple[datetime, datetime, str]]:
    """
    Calendar months overlapping ``[start, end]`` as ``(first_day, next_first_day, label)``.

    Boundary months are included even when only partly covered. Bounds are
    half-open so the last day of each month is counted in full.
    """
    tz = start.tzinfo or timezone.utc
    if end.tzinfo is not None:
        end = end.astimezone(tz)
    current = datetime(start.year, start.month, 1, tzinfo=tz)
    last = datetime(end.year, end.month, 1, tzinfo=tz)
    buckets = []
    while current <= last:
        following = current + relativedelta(months=1)
        buckets.append((current, following, f"{MONTH_ABBR[current.month - 1]} {current.year}"))
        current = following
    return buckets


class LoyaltyAnalyticsService:
    def __init__(self, data: DataService):
        self.data = data

    def get_roi_settings(self, restaurant_id: str) -> ROISettings:
        try:
            row = (
                self.data.table("restaurants")
                .select("roi_settings")
                .eq("id", restaurant_id)
                .single()
            )
            return ROISettings(**(row.get("roi_settings") or {}))
        except Exception as exc:
            log_error(logger, exc, "Error fetching ROI settings")
            return ROISettings()

    def update_roi_settings(self, restaurant_id: str, settings: ROISettings) -> ROISettings:
        try:
            stored = self.data.rpc(
                "update_restaurant_roi_settings",
                restaurant_id=restaurant_id,
                roi_settings=settings.model_dump(),
            )
        except Exception as exc:
            log_error(logger, exc, "Error updating ROI settings")
            raise
        return ROISettings(**stored)

    def get_loyalty_roi_metrics(self, restaurant_id: str, date_range: DateRange) -> LoyaltyROIMetrics:
        try:
            if not restaurant_id:
                return LoyaltyROIMetrics()

            report = self.data.rpc(
                "calculate_comprehensive_roi",
                restaurant_id=restaurant_id,
                start_date=date_range.start.isoformat(),
                end_date=date_range.end.isoformat(),
            )
            if not report:
                return LoyaltyROIMetrics()

            return self._map_report(report, date_range)
        except Exception as exc:
            log_error(logger, exc, "Error calculating loyalty ROI metrics")
            return LoyaltyROIMetrics()

    @staticmethod
    def _map_report(report: dict[str, Any], date_range: DateRange) -> LoyaltyROIMetrics:
        revenue = report["revenue_metrics"]
        costs = report["cost_metrics"]
        loyalty = report["loyalty_metrics"]
        customers = report["customer_metrics"]
        profitability = report["profitability"]
        settings = report["settings_used"]

        roi = profitability["roi_percentage"]
        frequency = purchase_frequency(
            revenue["total_orders"],
            customers["total_customers"],
            months_in_range(date_range.start, date_range.end),
        )

        return LoyaltyROIMetrics(
            roi=roi,
            roi_status=classify_roi(roi),
            roi_summary_text=roi_summary_text(
                settings["point_value_aed"],
                profitability["net_profit_after_rewards"],
                costs["total_reward_cost"],
            ),
            gross_revenue=revenue["total_revenue"],
            reward_cost=costs["total_reward_cost"],
            net_revenue=revenue["total_revenue"] - costs["total_reward_cost"],
            cogs=costs["estimated_cogs"],
            net_profit=profitability["net_profit_after_rewards"],
            total_reward_liability=loyalty["outstanding_liability"],
            repeat_purchase_rate=customers["retention_rate"],
            average_order_value=revenue["average_order_value"],
            loyalty_aov=revenue["revenue_per_customer"],
            purchase_frequency=frequency,
            customer_lifetime_value=customer_lifetime_value(revenue["average_order_value"], frequency),
            total_points_issued=loyalty["total_points_issued"],
            total_points_redeemed=loyalty["total_points_redeemed"],
            active_customers=customers["total_customers"],
            loyalty_customers=customers["returning_customers"],
            point_redemption_rate=loyalty["point_redemption_rate"],
            reward_cost_percentage=costs["reward_cost_percentage"],
            estimated_gross_profit=costs["estimated_gross_profit"],
            profit_margin=profitability["gross_profit_margin"],
        )

    def _revenue_settings(self, restaurant_id: str) -> RevenueSettings:
        row = (
            self.data.table("restaurants")
            .select("settings")
            .eq("id", restaurant_id)
            .maybe_single()
        )
        settings = (row or {}).get("settings") or {}
        return RevenueSettings(
            point_value=settings.get("pointValueAED") or DEFAULT_POINT_VALUE_AED,
            points_per_unit=settings.get("points_per_dollar") or DEFAULT_POINTS_PER_UNIT,
            cogs_percentage=settings.get("cogs_percentage") or DEFAULT_COGS_PERCENTAGE,
        )

    def get_revenue_breakdown(self, restaurant_id: str, date_range: DateRange) -> list[RevenueBreakdown]:
        try:
            if not restaurant_id:
                return []

            settings = self._revenue_settings(restaurant_id)
            breakdown = []
            for month_start, month_end, label in month_buckets(date_range.start, date_range.end):
                customers = (
                    self.data.table("customers")
                    .select("total_spent")
                    .eq("restaurant_id", restaurant_id)
                    .gte("created_at", month_start)
                    .lt("created_at", month_end)
                    .execute()
                )
                redemptions = (
                    self.data.table("transactions")
                    .select("points")
                    .eq("restaurant_id", restaurant_id)
                    .eq("type", "redemption")
                    .gte("created_at", month_start)
                    .lt("created_at", month_end)
                    .execute()
                )

                gross_revenue = sum(c["total_spent"] or 0 for c in customers)
                reward_cost = sum(abs(t["points"]) for t in redemptions) * settings.point_value
                net_revenue = gross_revenue - reward_cost
                cogs = gross_revenue * settings.cogs_percentage
                breakdown.append(
                    RevenueBreakdown(
                        month=label,
                        gross_revenue=gross_revenue,
                        reward_cost=reward_cost,
                        net_revenue=net_revenue,
                        net_profit=net_revenue - cogs,
                    )
                )
            return breakdown
        except Exception as exc:
            log_error(logger, exc, "Error getting revenue breakdown")
            return []

    def get_customer_behavior_metrics(
        self,
        restaurant_id: str,
        date_range: DateRange,
    ) -> CustomerBehaviorMetrics:
        try:
            if not restaurant_id:
                return CustomerBehaviorMetrics()

            # Cohort is keyed on account creation, not first visit.
            customers = (
                self.data.table("customers")
                .select("visit_count", "lifetime_points", "total_points")
                .eq("restaurant_id", restaurant_id)
                .gte("created_at", date_range.start)
                .lte("created_at", date_range.end)
                .execute()
            )
            total = len(customers)
            if total == 0:
                return CustomerBehaviorMetrics()

            new_customers = sum(1 for c in customers if c["visit_count"] == 1)
            returning_customers = sum(1 for c in customers if c["visit_count"] > 1)
            earned = sum(c["lifetime_points"] for c in customers)
            redeemed = sum(c["lifetime_points"] - c["total_points"] for c in customers)

            return CustomerBehaviorMetrics(
                new_customers=new_customers,
                returning_customers=returning_customers,
                loyalty_participation=returning_customers / total * 100,
                average_points_earned=earned / total,
                average_points_redeemed=redeemed / total,
            )
        except Exception as exc:
            log_error(logger, exc, "Error getting customer behavior metrics")
            return CustomerBehaviorMetrics()


def parse_date_range(start: Optional[datetime], end: Optional[datetime], default_days: int = 30) -> DateRange:
    """Fill a missing bound: ``end`` defaults to now, ``start`` to ``default_days`` before ``end``."""
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(days=default_days)
    return DateRange(start=start, end=end)

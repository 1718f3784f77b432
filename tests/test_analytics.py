import locale
from datetime import datetime, timedelta, timezone

import pytest

from loyalty_admin.analytics import (
    NO_DATA_TEXT,
    NO_REWARDS_TEXT,
    CustomerBehaviorMetrics,
    DateRange,
    LoyaltyAnalyticsService,
    LoyaltyROIMetrics,
    ROISettings,
    classify_roi,
    customer_lifetime_value,
    month_buckets,
    months_in_range,
    purchase_frequency,
    roi_summary_text,
)
from loyalty_admin.exceptions import DataServiceError


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class CannedReportData:
    """Returns a fixed aggregate report and records the procedure calls."""

    def __init__(self, report):
        self.report = report
        self.calls = []

    def rpc(self, name, **params):
        self.calls.append((name, params))
        return self.report


def _report(**overrides):
    report = {
        "revenue_metrics": {
            "total_revenue": 8000.0,
            "total_orders": 100,
            "average_order_value": 80.0,
            "revenue_per_customer": 160.0,
        },
        "cost_metrics": {
            "total_reward_cost": 120.0,
            "estimated_cogs": 3200.0,
            "reward_cost_percentage": 1.5,
            "estimated_gross_profit": 4800.0,
        },
        "loyalty_metrics": {
            "total_points_issued": 800,
            "total_points_redeemed": 2400,
            "outstanding_liability": 45.5,
            "point_redemption_rate": 30.0,
        },
        "customer_metrics": {
            "total_customers": 50,
            "returning_customers": 20,
            "retention_rate": 40.0,
        },
        "profitability": {
            "roi_percentage": 3900.0,
            "net_profit_after_rewards": 4680.0,
            "gross_profit_margin": 60.0,
        },
        "settings_used": {"point_value_aed": 0.05},
    }
    for section, values in overrides.items():
        report[section] = {**report[section], **values}
    return report


@pytest.mark.parametrize(
    "roi, expected",
    [
        (450.0, "high-performing"),
        (200, "high-performing"),
        (199.99, "profitable"),
        (0, "profitable"),
        (-0.01, "losing-money"),
        (-250, "losing-money"),
    ],
)
def test_classify_roi_thresholds(roi, expected) -> None:
    assert classify_roi(roi) == expected


def test_summary_text_embeds_profit_to_cost_ratio() -> None:
    text = roi_summary_text(0.05, 300.0, 120.0)
    assert text == (
        "For every 0.05 AED you invest in loyalty rewards, "
        "you generate 2.50 AED in net profit."
    )
    assert "3.33 AED" in roi_summary_text(0.1, 10.0, 3.0)


def test_summary_text_prints_whole_point_values_without_decimals() -> None:
    text = roi_summary_text(1.0, 50.0, 10.0)
    assert text.startswith("For every 1 AED you invest")
    assert "you generate 5.00 AED" in text
    assert roi_summary_text(0.25, 1.0, 1.0).startswith("For every 0.25 AED")


def test_summary_text_without_reward_cost_is_fixed() -> None:
    assert roi_summary_text(0.05, 5000.0, 0) == NO_REWARDS_TEXT
    assert roi_summary_text(1.0, -20.0, 0.0) == NO_REWARDS_TEXT


def test_months_in_range_uses_thirty_day_buckets() -> None:
    start = utc(2024, 1, 1)
    assert months_in_range(start, start + timedelta(days=60)) == 2
    assert months_in_range(start, start + timedelta(days=61)) == 3
    assert months_in_range(start, start + timedelta(days=10)) == 1
    assert months_in_range(start, start) == 1
    assert months_in_range(start, start - timedelta(days=45)) == 1


def test_frequency_and_lifetime_value_example() -> None:
    start = utc(2024, 3, 1)
    months = months_in_range(start, start + timedelta(days=60))
    frequency = purchase_frequency(100, 50, months)
    assert months == 2
    assert frequency == pytest.approx(1.0)
    assert customer_lifetime_value(80, frequency) == pytest.approx(960.0)


def test_frequency_guards_against_zero_customers() -> None:
    assert purchase_frequency(0, 0, 1) == 0
    assert purchase_frequency(12, 0, 3) == pytest.approx(4.0)


def test_month_buckets_cover_partial_boundary_months() -> None:
    buckets = month_buckets(utc(2023, 12, 20), utc(2024, 2, 3))
    assert [label for _, _, label in buckets] == ["Dec 2023", "Jan 2024", "Feb 2024"]
    assert buckets[0][0] == utc(2023, 12, 1)
    assert buckets[0][1] == utc(2024, 1, 1)
    assert buckets[-1][1] == utc(2024, 3, 1)


def test_month_labels_are_english_abbreviations() -> None:
    saved = locale.setlocale(locale.LC_TIME)
    try:
        try:
            locale.setlocale(locale.LC_TIME, "de_DE.UTF-8")
        except locale.Error:
            pass
        labels = [label for _, _, label in month_buckets(utc(2024, 1, 10), utc(2024, 12, 5))]
    finally:
        locale.setlocale(locale.LC_TIME, saved)

    assert labels == [
        "Jan 2024", "Feb 2024", "Mar 2024", "Apr 2024", "May 2024", "Jun 2024",
        "Jul 2024", "Aug 2024", "Sep 2024", "Oct 2024", "Nov 2024", "Dec 2024",
    ]


def test_month_buckets_do_not_skip_short_months() -> None:
    buckets = month_buckets(utc(2024, 1, 31), utc(2024, 3, 1))
    assert [label for _, _, label in buckets] == ["Jan 2024", "Feb 2024", "Mar 2024"]


def test_roi_metrics_map_the_aggregate_report() -> None:
    data = CannedReportData(_report())
    service = LoyaltyAnalyticsService(data)
    start = utc(2024, 1, 1)
    metrics = service.get_loyalty_roi_metrics("rest-1", DateRange(start=start, end=start + timedelta(days=60)))

    name, params = data.calls[0]
    assert name == "calculate_comprehensive_roi"
    assert params["restaurant_id"] == "rest-1"
    assert params["start_date"] == start.isoformat()

    assert metrics.roi == 3900.0
    assert metrics.roi_status == "high-performing"
    assert metrics.roi_summary_text.endswith("you generate 39.00 AED in net profit.")
    assert metrics.gross_revenue == 8000.0
    assert metrics.net_revenue == pytest.approx(7880.0)
    assert metrics.net_profit == 4680.0
    assert metrics.total_reward_liability == 45.5
    assert metrics.repeat_purchase_rate == 40.0
    assert metrics.loyalty_aov == 160.0
    assert metrics.active_customers == 50
    assert metrics.loyalty_customers == 20
    assert metrics.purchase_frequency == pytest.approx(1.0)
    assert metrics.customer_lifetime_value == pytest.approx(960.0)
    assert metrics.profit_margin == 60.0


def test_roi_metrics_losing_money_without_rewards() -> None:
    report = _report(
        cost_metrics={"total_reward_cost": 0},
        profitability={"roi_percentage": -15.0, "net_profit_after_rewards": -300.0},
    )
    service = LoyaltyAnalyticsService(CannedReportData(report))
    now = datetime.now(timezone.utc)
    metrics = service.get_loyalty_roi_metrics("rest-1", DateRange(start=now - timedelta(days=5), end=now))
    assert metrics.roi_status == "losing-money"
    assert metrics.roi_summary_text == NO_REWARDS_TEXT


def test_roi_metrics_short_circuit_on_empty_restaurant_id() -> None:
    data = CannedReportData(_report())
    now = datetime.now(timezone.utc)
    metrics = LoyaltyAnalyticsService(data).get_loyalty_roi_metrics("", DateRange(start=now, end=now))
    assert metrics == LoyaltyROIMetrics()
    assert data.calls == []


def test_roi_metrics_empty_report_gives_zero_metrics() -> None:
    now = datetime.now(timezone.utc)
    metrics = LoyaltyAnalyticsService(CannedReportData(None)).get_loyalty_roi_metrics(
        "rest-1", DateRange(start=now, end=now)
    )
    assert metrics.roi_summary_text == NO_DATA_TEXT
    assert metrics.roi_status == "profitable"


def test_malformed_report_degrades_to_zero_metrics() -> None:
    now = datetime.now(timezone.utc)
    metrics = LoyaltyAnalyticsService(CannedReportData({"revenue_metrics": {}})).get_loyalty_roi_metrics(
        "rest-1", DateRange(start=now, end=now)
    )
    assert metrics == LoyaltyROIMetrics()


def test_every_report_degrades_when_the_store_fails(failing_data) -> None:
    service = LoyaltyAnalyticsService(failing_data)
    now = datetime.now(timezone.utc)
    date_range = DateRange(start=now - timedelta(days=40), end=now)

    metrics = service.get_loyalty_roi_metrics("rest-1", date_range)
    assert metrics == LoyaltyROIMetrics()
    assert metrics.roi == 0 and metrics.customer_lifetime_value == 0
    assert service.get_revenue_breakdown("rest-1", date_range) == []
    assert service.get_customer_behavior_metrics("rest-1", date_range) == CustomerBehaviorMetrics()
    assert service.get_roi_settings("rest-1") == ROISettings()


def test_update_roi_settings_propagates_failure(failing_data) -> None:
    with pytest.raises(DataServiceError):
        LoyaltyAnalyticsService(failing_data).update_roi_settings("rest-1", ROISettings())


def test_roi_settings_round_trip_through_procedure(data_service, seed) -> None:
    restaurant = seed.restaurant(roi_settings=None)
    service = LoyaltyAnalyticsService(data_service)
    assert service.get_roi_settings(restaurant["id"]) == ROISettings()

    stored = service.update_roi_settings(
        restaurant["id"], ROISettings(estimated_cogs_percentage=0.35, target_roi_percentage=150)
    )
    assert stored.estimated_cogs_percentage == 0.35
    assert service.get_roi_settings(restaurant["id"]).target_roi_percentage == 150


def test_revenue_breakdown_two_partial_months(data_service, seed) -> None:
    restaurant = seed.restaurant(settings={"pointValueAED": 0.1, "cogs_percentage": 0.25})
    rid = restaurant["id"]
    jan = seed.customer(rid, "Amira", total_spent=200.0, created_at=utc(2024, 1, 20, 12))
    feb = seed.customer(rid, "Omar", total_spent=100.0, created_at=utc(2024, 2, 5, 9))
    seed.customer(rid, "Zain", total_spent=999.0, created_at=utc(2024, 3, 1, 0, 0, 1))
    seed.transaction(rid, jan["id"], "redemption", -100, created_at=utc(2024, 1, 25))
    seed.transaction(rid, feb["id"], "redemption", -50, created_at=utc(2024, 2, 29, 23))
    seed.transaction(rid, feb["id"], "bonus", 500, created_at=utc(2024, 2, 10))

    rows = LoyaltyAnalyticsService(data_service).get_revenue_breakdown(
        rid, DateRange(start=utc(2024, 1, 15), end=utc(2024, 2, 10))
    )

    assert [row.month for row in rows] == ["Jan 2024", "Feb 2024"]
    january, february = rows
    assert january.gross_revenue == pytest.approx(200.0)
    assert january.reward_cost == pytest.approx(10.0)
    assert february.gross_revenue == pytest.approx(100.0)
    assert february.reward_cost == pytest.approx(5.0)
    for row in rows:
        assert row.net_revenue == pytest.approx(row.gross_revenue - row.reward_cost)
        assert row.net_profit == pytest.approx(row.net_revenue - row.gross_revenue * 0.25)


def test_revenue_breakdown_uses_default_settings(data_service, seed) -> None:
    restaurant = seed.restaurant(settings={})
    seed.customer(restaurant["id"], total_spent=100.0, created_at=utc(2024, 5, 2))
    rows = LoyaltyAnalyticsService(data_service).get_revenue_breakdown(
        restaurant["id"], DateRange(start=utc(2024, 5, 1), end=utc(2024, 5, 31))
    )
    assert len(rows) == 1
    assert rows[0].net_profit == pytest.approx(100.0 - 100.0 * 0.3)


def test_revenue_breakdown_empty_restaurant_id(data_service) -> None:
    now = datetime.now(timezone.utc)
    assert LoyaltyAnalyticsService(data_service).get_revenue_breakdown("", DateRange(start=now, end=now)) == []


def test_customer_behavior_for_creation_cohort(data_service, seed) -> None:
    rid = seed.restaurant()["id"]
    seed.customer(rid, "Amira", visit_count=1, lifetime_points=100, total_points=100, created_at=utc(2024, 4, 2))
    seed.customer(rid, "Omar", visit_count=3, lifetime_points=500, total_points=200, created_at=utc(2024, 4, 10))
    seed.customer(rid, "Sara", visit_count=0, lifetime_points=0, total_points=0, created_at=utc(2024, 4, 20))
    seed.customer(rid, "Zain", visit_count=9, lifetime_points=900, total_points=0, created_at=utc(2024, 6, 1))

    metrics = LoyaltyAnalyticsService(data_service).get_customer_behavior_metrics(
        rid, DateRange(start=utc(2024, 4, 1), end=utc(2024, 4, 30))
    )

    assert metrics.new_customers == 1
    assert metrics.returning_customers == 1
    assert metrics.loyalty_participation == pytest.approx(100 / 3)
    assert metrics.average_points_earned == pytest.approx(200.0)
    assert metrics.average_points_redeemed == pytest.approx(100.0)


def test_customer_behavior_without_customers_is_zero(data_service, seed) -> None:
    rid = seed.restaurant()["id"]
    metrics = LoyaltyAnalyticsService(data_service).get_customer_behavior_metrics(
        rid, DateRange(start=utc(2024, 4, 1), end=utc(2024, 4, 30))
    )
    assert metrics == CustomerBehaviorMetrics()


def test_end_to_end_roi_from_point_transactions(data_service, seed) -> None:
    rid = seed.restaurant()["id"]
    amira = seed.customer(rid, "Amira")
    omar = seed.customer(rid, "Omar")
    for customer_id, amount in ((amira["id"], 400), (amira["id"], 600), (omar["id"], 200)):
        data_service.rpc(
            "process_point_transaction",
            restaurant_id=rid,
            customer_id=customer_id,
            type="purchase",
            amount_spent=amount,
        )
    data_service.rpc(
        "process_point_transaction",
        restaurant_id=rid,
        customer_id=amira["id"],
        type="redemption",
        points=80,
        description="Free Dessert",
    )

    now = datetime.now(timezone.utc)
    metrics = LoyaltyAnalyticsService(data_service).get_loyalty_roi_metrics(
        rid, DateRange(start=now - timedelta(days=10), end=now + timedelta(minutes=1))
    )

    assert metrics.gross_revenue == pytest.approx(1200.0)
    assert metrics.average_order_value == pytest.approx(400.0)
    assert metrics.total_points_issued == 120
    assert metrics.total_points_redeemed == 80
    assert metrics.reward_cost == pytest.approx(4.0)
    assert metrics.total_reward_liability == pytest.approx(2.0)
    assert metrics.cogs == pytest.approx(480.0)
    assert metrics.net_profit == pytest.approx(716.0)
    assert metrics.roi == pytest.approx(17900.0)
    assert metrics.roi_status == "high-performing"
    assert "you generate 179.00 AED" in metrics.roi_summary_text
    assert metrics.active_customers == 2
    assert metrics.loyalty_customers == 1
    assert metrics.repeat_purchase_rate == pytest.approx(50.0)
    assert metrics.purchase_frequency == pytest.approx(1.5)
    assert metrics.customer_lifetime_value == pytest.approx(7200.0)

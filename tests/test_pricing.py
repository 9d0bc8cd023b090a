from datetime import UTC, date, datetime, timedelta

import pytest

from pricing import (
    PLAN_CATALOGUE,
    RateTable,
    auto_invoice_lines,
    calculate_cloud_price,
    calculate_intervention_price,
    filter_services_for_location,
    generate_quote,
    get_maintenance_price,
    get_website_price,
    plan_price,
    round_currency,
    subscription_period_end,
    to_cents,
)


def test_intervention_price_with_travel_and_urgency():
    price = calculate_intervention_price(90, travel_km=10, is_urgent=True)
    assert price.subtotal == 112.5
    assert price.travel == 6.5
    assert price.urgent == 50.0
    assert price.tax == 25.35
    assert price.total == 194.35


def test_intervention_price_defaults_to_no_travel():
    price = calculate_intervention_price(60)
    assert price.to_dict() == {
        "subtotal": 75.0,
        "travel": 0.0,
        "urgent": 0.0,
        "tax": 11.25,
        "total": 86.25,
    }


def test_intervention_price_uses_custom_rates():
    rates = RateTable(intervention_hourly_rate=100, tax_rate=0)
    price = calculate_intervention_price(30, rates=rates)
    assert price.subtotal == 50.0
    assert price.total == 50.0


@pytest.mark.parametrize(
    ("storage_gb", "expected"),
    [(0, 10.0), (10, 10.0), (50, 10.0), (51, 12.0), (100, 110.0)],
)
def test_cloud_price_free_tier_boundary(storage_gb, expected):
    assert calculate_cloud_price(storage_gb) == expected


def test_unknown_plans_and_site_types_fall_back_to_entry_prices():
    assert get_maintenance_price("platinum") == 25.0
    assert get_maintenance_price(None) == 25.0
    assert get_maintenance_price("prestige") == 120.0
    assert get_website_price("blog") == 25.0
    assert get_website_price("ecommerce") == 90.0
    assert plan_price("standard") == 45.0


def test_rate_table_from_mapping_accepts_camel_case_and_ignores_garbage():
    rates = RateTable.from_mapping(
        {
            "interventionHourlyRate": "80",
            "travel_rate": 0.7,
            "taxRate": "not a number",
            "websitePME": None,
            "unknown": 5,
        }
    )
    assert rates.intervention_hourly_rate == 80.0
    assert rates.travel_rate == 0.7
    assert rates.tax_rate == 15.0
    assert rates.website_pme == 60.0


def test_rate_table_from_empty_mapping_uses_defaults():
    assert RateTable.from_mapping(None) == RateTable()
    assert RateTable.from_mapping({}).to_dict()["maintenance_plus"] == 75.0


def test_generate_quote_combines_one_time_and_monthly_items():
    now = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
    quote = generate_quote(
        {
            "intervention": {"duration_minutes": 90, "travel_km": 10, "is_urgent": True},
            "cloud": {"storage_gb": 60},
        },
        now=now,
    )

    assert [item.item_type for item in quote.items] == ["intervention", "cloud"]
    assert quote.items[0].price == 112.5
    assert quote.items[0].recurring is None
    assert quote.items[1].recurring == "monthly"
    assert quote.one_time_subtotal == 169.0
    assert quote.recurring_subtotal == 30.0
    assert quote.subtotal == 199.0
    assert quote.tax == 29.85
    assert quote.total == 228.85
    assert quote.valid_until == now + timedelta(days=30)


def test_generate_quote_with_website_and_maintenance():
    quote = generate_quote({"website": {"type": "pme"}, "maintenance": {"plan": "plus"}})
    payload = quote.to_dict()
    assert [item["type"] for item in payload["items"]] == ["website", "maintenance"]
    assert payload["subtotal"] == 135.0
    assert payload["tax"] == 20.25
    assert payload["total"] == 155.25


def test_generate_quote_without_services_is_empty():
    quote = generate_quote({})
    assert quote.items == []
    assert quote.subtotal == 0.0
    assert quote.total == 0.0


def test_filter_services_drops_interventions_outside_islands():
    services = {"intervention": {"duration_minutes": 60}, "cloud": {"storage_gb": 20}}

    allowed, rejected = filter_services_for_location(services, is_in_islands=False)
    assert allowed == {"cloud": {"storage_gb": 20}}
    assert rejected == ["intervention"]
    assert "intervention" in services

    allowed, rejected = filter_services_for_location(services, is_in_islands=True)
    assert allowed == services
    assert rejected == []


def test_auto_invoice_lines_bill_actual_minutes():
    lines = auto_invoice_lines(90, "Router replacement")
    assert lines["description"] == "Intervention: Router replacement"
    assert lines["amount"] == 112.5
    assert lines["tax"] == 16.88
    assert lines["total"] == 129.38
    assert lines["items"] == [
        {
            "description": "Technical intervention - 90 minutes",
            "quantity": 1,
            "unit_price": 112.5,
            "total": 112.5,
        }
    ]


def test_subscription_period_end_clamps_month_end():
    assert subscription_period_end(date(2026, 1, 31), "monthly") == date(2026, 2, 28)
    assert subscription_period_end(date(2026, 12, 15), "monthly") == date(2027, 1, 15)
    assert subscription_period_end(date(2028, 2, 29), "annual") == date(2029, 2, 28)


def test_round_currency_rounds_half_up():
    assert round_currency(2.675) == 2.68
    assert round_currency(0.125) == 0.13
    assert to_cents(19.99) == 1999
    assert to_cents(0.005) == 1


@pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan"), "abc"])
def test_round_currency_returns_zero_for_non_finite_values(value):
    assert round_currency(value) == 0.0


def test_intervention_price_with_infinite_duration_does_not_raise():
    price = calculate_intervention_price(float("inf"))
    assert price.subtotal == 0.0
    assert price.total == 0.0


def test_plan_catalogue_lists_every_tier():
    assert [PLAN_CATALOGUE[plan]["cloud_storage_gb"] for plan in PLAN_CATALOGUE] == [
        10,
        50,
        100,
        250,
    ]
    assert PLAN_CATALOGUE["prestige"]["interventions_included"] is None

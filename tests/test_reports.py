from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from reports import (
    build_intervention_report,
    clean_work_details,
    dashboard_stats,
    monthly_report,
    render_intervention_report,
)


def make_ticket(**overrides):
    values = {
        "id": 7,
        "client_id": 1,
        "assigned_to_id": 3,
        "title": "Router replacement",
        "description": "Router keeps rebooting",
        "completion_notes": "Router replaced.",
        "status": "resolved",
        "ticket_type": "intervention",
        "actual_duration": 90,
        "created_at": datetime(2026, 3, 2, 8, 0, tzinfo=UTC),
        "resolved_at": datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_build_report_from_ticket_and_work_details():
    report = build_intervention_report(
        make_ticket(),
        {"work_performed": ["Swapped router"], "parts_used": [{"name": "Router"}]},
    )
    assert report["ticket_id"] == 7
    assert report["technician_id"] == 3
    assert report["title"] == "Intervention report - Router replacement"
    assert report["summary"] == "Router replaced."
    assert report["time_spent"] == 90
    assert report["work_performed"] == ["Swapped router"]
    assert report["technician_signature"] == "Electronic signature"
    assert report["completed_at"] == datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def test_rendered_report_escapes_user_content():
    report = build_intervention_report(
        make_ticket(),
        {
            "summary": "<script>alert(1)</script>",
            "parts_used": [{"name": "Cable", "quantity": 2, "unit_price": 4.5, "total": 9}],
            "recommendations": ["Replace UPS battery"],
        },
    )
    client = SimpleNamespace(
        first_name="Marie",
        last_name="Cormier",
        email="marie@example.com",
        phone=None,
        address="12 chemin du Quai",
        city="Cap-aux-Meules",
    )
    html = render_intervention_report(
        report, client, "TechÎle Solutions", datetime(2026, 3, 3, 9, 15, tzinfo=UTC)
    )
    assert "&lt;script&gt;" in html
    assert "<script>" not in html
    assert "Marie Cormier" in html
    assert "12 chemin du Quai, Cap-aux-Meules" in html
    assert "9.00$" in html
    assert "Replace UPS battery" in html
    assert "Date: 2026-03-02" in html
    assert "Report generated 2026-03-03 09:15" in html


def test_monthly_report_aggregates_resolved_work():
    tickets = [
        make_ticket(),
        make_ticket(id=8, client_id=2, ticket_type="support", actual_duration=None,
                    resolved_at=datetime(2026, 3, 3, 8, 0, tzinfo=UTC)),
        make_ticket(id=9, client_id=2, status="open", resolved_at=None),
        make_ticket(id=10, resolved_at=datetime(2026, 4, 1, 9, 0, tzinfo=UTC)),
    ]
    invoices = [
        SimpleNamespace(status="paid", total=115.0, paid_at=datetime(2026, 3, 10, tzinfo=UTC)),
        SimpleNamespace(status="paid", total=50.0, paid_at=datetime(2026, 2, 28, tzinfo=UTC)),
        SimpleNamespace(status="sent", total=999.0, paid_at=None),
    ]

    report = monthly_report(tickets, invoices, 2026, 3)
    assert report["period"] == "3/2026"
    assert report["total_interventions"] == 1
    assert report["total_revenue"] == 115.0
    assert report["clients_served"] == 2
    assert report["average_resolution_hours"] == 14.0
    assert report["top_issues"][0] == {"type": "intervention", "count": 3}


def test_monthly_report_with_no_activity():
    report = monthly_report([], [], 2026, 1)
    assert report["average_resolution_hours"] == 0
    assert report["top_issues"] == []


def test_dashboard_stats_counts_current_month_and_cloud_usage():
    clients = [
        SimpleNamespace(status="active", cloud_quota_gb=100, cloud_used_gb=30),
        SimpleNamespace(status="cancelled", cloud_quota_gb=100, cloud_used_gb=10),
    ]
    tickets = [
        SimpleNamespace(status="open"),
        SimpleNamespace(status="in_progress"),
        SimpleNamespace(status="closed"),
    ]
    invoices = [
        SimpleNamespace(status="paid", total_cents=11500, paid_at=datetime(2026, 5, 2)),
        SimpleNamespace(status="paid", total_cents=5000, paid_at=datetime(2026, 4, 30)),
        SimpleNamespace(status="overdue", total_cents=2000, paid_at=None),
    ]

    stats = dashboard_stats(clients, tickets, invoices, datetime(2026, 5, 20, tzinfo=UTC))
    assert stats == {
        "total_clients": 2,
        "active_clients": 1,
        "monthly_revenue": 115.0,
        "pending_tickets": 2,
        "overdue_invoices": 1,
        "cloud_usage_percent": 20.0,
    }


def test_clean_work_details_coerces_parts_and_accepts_camel_case():
    details = clean_work_details(
        {
            "work_performed": ["  Ran new cable ", ""],
            "parts_used": [
                {"name": "Cable cat6", "quantity": "2", "unitPrice": "12.50"},
                {"name": "Connector", "quantity": 4, "unit_price": 0.5, "total": "2"},
            ],
            "issues": [{"description": "Damaged jack", "severity": "High", "resolved": True}],
        }
    )
    assert details["work_performed"] == ["Ran new cable"]
    assert details["parts_used"] == [
        {"name": "Cable cat6", "quantity": 2, "unit_price": 12.5, "total": 25.0},
        {"name": "Connector", "quantity": 4, "unit_price": 0.5, "total": 2.0},
    ]
    assert details["issues"] == [
        {"description": "Damaged jack", "severity": "high", "resolved": True, "solution": None}
    ]
    assert details["recommendations"] == []
    assert details["technician_signature"] is None


@pytest.mark.parametrize(
    "raw",
    [
        {"work_performed": "Replaced router"},
        {"work_performed": [{"step": "x"}]},
        {"parts_used": ["Cable cat6"]},
        {"parts_used": {"name": "Cable"}},
        {"parts_used": [{"quantity": 1}]},
        {"parts_used": [{"name": "Cable", "unit_price": "twelve"}]},
        {"parts_used": [{"name": "Cable", "quantity": -1}]},
        {"parts_used": [{"name": "Cable", "unit_price": "NaN"}]},
        {"issues": ["loose cable"]},
        {"issues": [{"description": "Loose cable", "severity": "urgent"}]},
        {"recommendations": "Buy a UPS"},
    ],
)
def test_clean_work_details_rejects_malformed_entries(raw):
    with pytest.raises(ValueError):
        clean_work_details(raw)


def test_rendering_tolerates_loosely_shaped_stored_details():
    report = build_intervention_report(make_ticket())
    report.update(
        {
            "work_performed": "Replaced router",
            "parts_used": [
                "Cable cat6",
                {"name": "Router", "unitPrice": "80"},
                {"name": "Patch panel", "quantity": 1, "unit_price": None},
            ],
            "issues": ["Loose jack"],
        }
    )
    client = SimpleNamespace(first_name="Marie", last_name="Cormier", email="m@example.com")

    html = render_intervention_report(report, client, "TechÎle Solutions")
    assert "Replaced router" in html
    assert "Cable cat6" in html
    assert "80.00$" in html
    assert "Loose jack" in html

import math
from collections import Counter
from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime

from jinja2 import Environment, select_autoescape

from pricing import coerce_number, round_currency

ISSUE_SEVERITIES = ("low", "medium", "high", "critical")

REPORT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>Intervention report - {{ report.title }}</title>
  <style>
    body { font-family: Arial, sans-serif; margin: 40px; }
    .header { text-align: center; border-bottom: 2px solid #333; padding-bottom: 20px; }
    .section { margin: 20px 0; }
    .client-info { background: #f5f5f5; padding: 15px; border-radius: 5px; }
    .parts-table { width: 100%; border-collapse: collapse; margin: 15px 0; }
    .parts-table th, .parts-table td { border: 1px solid #ddd; padding: 8px; text-align: left; }
    .signature-section { margin-top: 40px; display: flex; justify-content: space-between; }
    .signature-box { width: 200px; height: 80px; border: 1px solid #333; text-align: center; padding-top: 60px; }
  </style>
</head>
<body>
  <div class="header">
    <h1>{{ company_name }}</h1>
    <h2>Intervention report</h2>
    <p>Date: {{ completed_on }}</p>
  </div>

  <div class="section client-info">
    <h3>Client information</h3>
    <p><strong>Name:</strong> {{ client_name }}</p>
    <p><strong>Email:</strong> {{ client_email }}</p>
    <p><strong>Phone:</strong> {{ client_phone or "N/A" }}</p>
    <p><strong>Address:</strong> {{ client_address }}</p>
  </div>

  <div class="section">
    <h3>Intervention details</h3>
    <p><strong>Title:</strong> {{ report.title }}</p>
    <p><strong>Type:</strong> {{ report.report_type }}</p>
    <p><strong>Duration:</strong> {{ report.time_spent }} minutes</p>
    <p><strong>Summary:</strong> {{ report.summary }}</p>
  </div>

  <div class="section">
    <h3>Work performed</h3>
    <ul>
    {% for work in report.work_performed %}
      <li>{{ work }}</li>
    {% endfor %}
    </ul>
  </div>

  {% if report.parts_used %}
  <div class="section">
    <h3>Parts used</h3>
    <table class="parts-table">
      <thead>
        <tr><th>Part</th><th>Quantity</th><th>Unit price</th><th>Total</th></tr>
      </thead>
      <tbody>
      {% for part in report.parts_used %}
        <tr>
          <td>{{ part.name }}</td>
          <td>{{ part.quantity }}</td>
          <td>{{ "%.2f"|format(part.unit_price or 0) }}$</td>
          <td>{{ "%.2f"|format(part.total or 0) }}$</td>
        </tr>
      {% endfor %}
      </tbody>
    </table>
  </div>
  {% endif %}

  {% if report.issues %}
  <div class="section">
    <h3>Issues found</h3>
    <ul>
    {% for issue in report.issues %}
      <li>
        <strong>{{ issue.description }}</strong>
        (Severity: {{ issue.severity }}) - {{ "Resolved" if issue.resolved else "Unresolved" }}
        {% if issue.solution %}<br>Solution: {{ issue.solution }}{% endif %}
      </li>
    {% endfor %}
    </ul>
  </div>
  {% endif %}

  {% if report.recommendations %}
  <div class="section">
    <h3>Recommendations</h3>
    <ul>
    {% for recommendation in report.recommendations %}
      <li>{{ recommendation }}</li>
    {% endfor %}
    </ul>
  </div>
  {% endif %}

  <div class="signature-section">
    <div>
      <p>Technician signature:</p>
      <div class="signature-box">{{ report.technician_signature }}</div>
    </div>
    <div>
      <p>Client signature:</p>
      <div class="signature-box">{{ report.client_signature or "" }}</div>
    </div>
  </div>

  <div style="margin-top: 40px; text-align: center; font-size: 12px; color: #666;">
    <p>{{ company_name }}</p>
    <p>Report generated {{ generated_at }}</p>
  </div>
</body>
</html>
"""

_environment = Environment(autoescape=select_autoescape(default_for_string=True))


def _get(record: object, name: str, default: object = None) -> object:
    if isinstance(record, Mapping):
        return record.get(name, default)
    return getattr(record, name, default)


def _as_utc(value: object) -> datetime | None:
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        if cleaned.endswith("Z"):
            cleaned = cleaned[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(cleaned)
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    return None


def _invoice_total(invoice: object) -> float:
    total = _get(invoice, "total")
    if isinstance(total, (int, float)):
        return float(total)
    cents = _get(invoice, "total_cents")
    if isinstance(cents, int):
        return cents / 100
    return 0.0


def _in_month(value: object, year: int, month: int) -> bool:
    moment = _as_utc(value)
    return moment is not None and moment.year == year and moment.month == month


def _first(record: Mapping[str, object], *names: str) -> object:
    for name in names:
        if record.get(name) not in (None, ""):
            return record.get(name)
    return None


def _amount(value: object, label: str, default: float) -> float:
    if value is None or value == "":
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"{label} must be a number.")
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"{label} must be a number.") from None
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"{label} must be a positive number.")
    return number


def _text(value: object) -> str:
    if value is None or isinstance(value, (Mapping, list)):
        return ""
    return str(value).strip()


def _text_entries(value: object, label: str) -> list[str]:
    if value is None or value == "":
        return []
    if not isinstance(value, list):
        raise ValueError(f"{label} must be a list.")
    entries = []
    for entry in value:
        if entry is None or isinstance(entry, (Mapping, list)):
            raise ValueError(f"Each {label} entry must be text.")
        text = str(entry).strip()
        if text:
            entries.append(text)
    return entries


def clean_part(part: object) -> dict[str, object]:
    if not isinstance(part, Mapping):
        raise ValueError("Each part must be an object with a name.")
    name = _text(part.get("name"))
    if not name:
        raise ValueError("Each part needs a name.")
    quantity = _amount(part.get("quantity"), "Part quantity", 1)
    unit_price = _amount(_first(part, "unit_price", "unitPrice"), "Part unit price", 0)
    total = _amount(part.get("total"), "Part total", quantity * unit_price)
    return {
        "name": name,
        "quantity": int(quantity) if quantity.is_integer() else quantity,
        "unit_price": round_currency(unit_price),
        "total": round_currency(total),
    }


def clean_issue(issue: object) -> dict[str, object]:
    if not isinstance(issue, Mapping):
        raise ValueError("Each issue must be an object with a description.")
    description = _text(issue.get("description"))
    if not description:
        raise ValueError("Each issue needs a description.")
    severity = _text(issue.get("severity")).lower() or "low"
    if severity not in ISSUE_SEVERITIES:
        raise ValueError("Issue severity must be low, medium, high or critical.")
    return {
        "description": description,
        "severity": severity,
        "resolved": bool(issue.get("resolved")),
        "solution": _text(issue.get("solution")) or None,
    }


def clean_work_details(raw: Mapping[str, object]) -> dict[str, object]:
    """Validate the work details a technician submits when closing an intervention.

    Raises ValueError with a message fit for the client when an entry is malformed.
    """

    parts = raw.get("parts_used")
    if parts not in (None, "") and not isinstance(parts, list):
        raise ValueError("parts_used must be a list.")
    issues = raw.get("issues")
    if issues not in (None, "") and not isinstance(issues, list):
        raise ValueError("issues must be a list.")

    return {
        "work_performed": _text_entries(raw.get("work_performed"), "work_performed"),
        "parts_used": [clean_part(part) for part in parts or []],
        "issues": [clean_issue(issue) for issue in issues or []],
        "recommendations": _text_entries(raw.get("recommendations"), "recommendations"),
        "technician_signature": _text(raw.get("technician_signature")) or None,
        "client_signature": _text(raw.get("client_signature")) or None,
    }


def _display_part(part: object) -> dict[str, object]:
    if not isinstance(part, Mapping):
        return {"name": _text(part), "quantity": 1, "unit_price": 0.0, "total": 0.0}
    quantity = coerce_number(part.get("quantity"))
    if quantity is None:
        quantity = 1
    unit_price = coerce_number(_first(part, "unit_price", "unitPrice")) or 0.0
    total = coerce_number(part.get("total"))
    return {
        "name": _text(part.get("name")),
        "quantity": quantity,
        "unit_price": unit_price,
        "total": quantity * unit_price if total is None else total,
    }


def _display_issue(issue: object) -> dict[str, object]:
    if not isinstance(issue, Mapping):
        return {"description": _text(issue), "severity": "low", "resolved": False}
    return issue


def _display_entries(value: object) -> list[object]:
    if isinstance(value, list):
        return value
    return [value] if _text(value) else []


def build_intervention_report(
    ticket: object, work_details: Mapping[str, object] | None = None
) -> dict[str, object]:
    details = work_details or {}
    completed_at = _as_utc(_get(ticket, "resolved_at")) or datetime.now(UTC)
    return {
        "ticket_id": _get(ticket, "id"),
        "client_id": _get(ticket, "client_id"),
        "technician_id": _get(ticket, "assigned_to_id"),
        "report_type": details.get("report_type") or "intervention",
        "title": f"Intervention report - {_get(ticket, 'title', '')}",
        "summary": details.get("summary")
        or _get(ticket, "completion_notes")
        or _get(ticket, "description")
        or "",
        "work_performed": list(details.get("work_performed") or []),
        "parts_used": list(details.get("parts_used") or []),
        "issues": list(details.get("issues") or []),
        "recommendations": list(details.get("recommendations") or []),
        "time_spent": _get(ticket, "actual_duration") or 0,
        "technician_signature": details.get("technician_signature") or "Electronic signature",
        "client_signature": details.get("client_signature"),
        "completed_at": completed_at,
    }


def render_intervention_report(
    report: Mapping[str, object],
    client: object,
    company_name: str,
    generated_at: datetime | None = None,
) -> str:
    generated = generated_at or datetime.now(UTC)
    completed = _as_utc(report.get("completed_at")) or generated
    first_name = _get(client, "first_name") or ""
    last_name = _get(client, "last_name") or ""
    address_parts = [
        part for part in (_get(client, "address"), _get(client, "city")) if part
    ]

    shown = {
        **report,
        "work_performed": _display_entries(report.get("work_performed")),
        "parts_used": [_display_part(part) for part in _display_entries(report.get("parts_used"))],
        "issues": [_display_issue(issue) for issue in _display_entries(report.get("issues"))],
        "recommendations": _display_entries(report.get("recommendations")),
    }

    template = _environment.from_string(REPORT_TEMPLATE)
    return template.render(
        report=shown,
        company_name=company_name,
        completed_on=completed.strftime("%Y-%m-%d"),
        generated_at=generated.strftime("%Y-%m-%d %H:%M"),
        client_name=f"{first_name} {last_name}".strip(),
        client_email=_get(client, "email") or "",
        client_phone=_get(client, "phone"),
        client_address=", ".join(str(part) for part in address_parts),
    )


def monthly_report(
    tickets: Iterable[object], invoices: Iterable[object], year: int, month: int
) -> dict[str, object]:
    tickets = list(tickets)
    resolved = [
        ticket
        for ticket in tickets
        if _get(ticket, "status") in {"resolved", "closed"}
        and _in_month(_get(ticket, "resolved_at"), year, month)
    ]
    interventions = [
        ticket for ticket in resolved if _get(ticket, "ticket_type") == "intervention"
    ]

    durations: list[float] = []
    for ticket in resolved:
        created = _as_utc(_get(ticket, "created_at"))
        finished = _as_utc(_get(ticket, "resolved_at"))
        if created and finished and finished >= created:
            durations.append((finished - created).total_seconds() / 3600)

    revenue = sum(
        _invoice_total(invoice)
        for invoice in invoices
        if _get(invoice, "status") == "paid" and _in_month(_get(invoice, "paid_at"), year, month)
    )

    opened_types = Counter(
        _get(ticket, "ticket_type")
        for ticket in tickets
        if _in_month(_get(ticket, "created_at"), year, month)
    )

    return {
        "period": f"{month}/{year}",
        "total_interventions": len(interventions),
        "total_revenue": round_currency(revenue),
        "clients_served": len({_get(ticket, "client_id") for ticket in resolved}),
        "average_resolution_hours": round_currency(sum(durations) / len(durations))
        if durations
        else 0,
        "top_issues": [
            {"type": ticket_type, "count": count}
            for ticket_type, count in opened_types.most_common(3)
        ],
    }


def dashboard_stats(
    clients: Iterable[object],
    tickets: Iterable[object],
    invoices: Iterable[object],
    now: datetime | None = None,
) -> dict[str, object]:
    moment = _as_utc(now) or datetime.now(UTC)
    clients = list(clients)
    invoices = list(invoices)

    total_quota = sum(float(_get(client, "cloud_quota_gb") or 0) for client in clients)
    total_used = sum(float(_get(client, "cloud_used_gb") or 0) for client in clients)

    monthly_revenue = sum(
        _invoice_total(invoice)
        for invoice in invoices
        if _get(invoice, "status") == "paid"
        and _in_month(_get(invoice, "paid_at"), moment.year, moment.month)
    )

    return {
        "total_clients": len(clients),
        "active_clients": sum(1 for client in clients if _get(client, "status") == "active"),
        "monthly_revenue": round_currency(monthly_revenue),
        "pending_tickets": sum(
            1 for ticket in tickets if _get(ticket, "status") in {"open", "in_progress"}
        ),
        "overdue_invoices": sum(1 for invoice in invoices if _get(invoice, "status") == "overdue"),
        "cloud_usage_percent": round_currency(total_used / total_quota * 100)
        if total_quota > 0
        else 0,
    }

import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

FREE_CLOUD_TIER_GB = 50
QUOTE_VALIDITY_DAYS = 30

PLAN_TIERS = ("base", "standard", "plus", "prestige")
WEBSITE_TYPES = ("vitrine", "pme", "ecommerce")
BILLING_CYCLES = ("monthly", "annual")

CENT = Decimal("0.01")

PLAN_CATALOGUE: dict[str, dict[str, object]] = {
    "base": {
        "label": "Base",
        "description": "Perfect for getting started",
        "interventions_included": 1,
        "cloud_storage_gb": 10,
        "features": [
            "1 intervention per month",
            "10 GB of cloud backup",
            "Ticket support",
            "Client portal access",
        ],
    },
    "standard": {
        "label": "Standard",
        "description": "Most popular",
        "interventions_included": 2,
        "cloud_storage_gb": 50,
        "features": [
            "2 interventions per month",
            "50 GB of cloud backup",
            "Priority support",
            "10% off website projects",
        ],
    },
    "plus": {
        "label": "Plus",
        "description": "For professionals",
        "interventions_included": 4,
        "cloud_storage_gb": 100,
        "features": [
            "4 interventions per month",
            "100 GB of cloud backup",
            "Proactive maintenance",
            "Free web domain",
        ],
    },
    "prestige": {
        "label": "Prestige",
        "description": "Full service",
        "interventions_included": None,
        "cloud_storage_gb": 250,
        "features": [
            "Unlimited interventions",
            "250 GB of cloud backup",
            "24/7 priority support",
            "Website included",
        ],
    },
}

_CAMEL_CASE_KEYS = {
    "interventionHourlyRate": "intervention_hourly_rate",
    "travelRate": "travel_rate",
    "urgentSurcharge": "urgent_surcharge",
    "cloudStorageBase": "cloud_storage_base",
    "cloudStoragePerGB": "cloud_storage_per_gb",
    "websiteVitrine": "website_vitrine",
    "websitePME": "website_pme",
    "websiteEcommerce": "website_ecommerce",
    "maintenanceBase": "maintenance_base",
    "maintenanceStandard": "maintenance_standard",
    "maintenancePlus": "maintenance_plus",
    "maintenancePrestige": "maintenance_prestige",
    "taxRate": "tax_rate",
}


def round_currency(value: float | int | Decimal) -> float:
    """Round half-up to two decimals, the way invoices are printed."""

    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return 0.0
    if not amount.is_finite():
        return 0.0
    return float(amount)


def to_cents(value: float | int | Decimal) -> int:
    return int(Decimal(str(round_currency(value))) * 100)


def coerce_number(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


@dataclass(frozen=True)
class RateTable:
    intervention_hourly_rate: float = 75.0
    travel_rate: float = 0.65
    urgent_surcharge: float = 50.0
    cloud_storage_base: float = 10.0
    cloud_storage_per_gb: float = 2.0
    website_vitrine: float = 25.0
    website_pme: float = 60.0
    website_ecommerce: float = 90.0
    maintenance_base: float = 25.0
    maintenance_standard: float = 45.0
    maintenance_plus: float = 75.0
    maintenance_prestige: float = 120.0
    tax_rate: float = 15.0

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, object] | None) -> "RateTable":
        if not mapping:
            return cls()

        values: dict[str, float] = {}
        known = {rate_field.name for rate_field in fields(cls)}
        for key, raw in mapping.items():
            name = _CAMEL_CASE_KEYS.get(key, key)
            if name not in known:
                continue
            number = coerce_number(raw)
            if number is not None:
                values[name] = number
        return cls(**values)

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class InterventionPrice:
    subtotal: float
    travel: float
    urgent: float
    tax: float
    total: float

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class QuoteItem:
    item_type: str
    description: str
    price: float
    recurring: str | None = None
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.item_type,
            "description": self.description,
            "price": self.price,
            "recurring": self.recurring,
            "details": dict(self.details),
        }


@dataclass
class Quote:
    items: list[QuoteItem]
    subtotal: float
    tax: float
    total: float
    one_time_subtotal: float
    recurring_subtotal: float
    valid_until: datetime
    created_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "items": [item.to_dict() for item in self.items],
            "subtotal": self.subtotal,
            "tax": self.tax,
            "total": self.total,
            "one_time_subtotal": self.one_time_subtotal,
            "recurring_subtotal": self.recurring_subtotal,
            "valid_until": self.valid_until.isoformat(),
            "created_at": self.created_at.isoformat(),
        }


def calculate_intervention_price(
    duration_minutes: float,
    travel_km: float = 0,
    is_urgent: bool = False,
    rates: RateTable | None = None,
) -> InterventionPrice:
    rates = rates or RateTable()

    hours = duration_minutes / 60
    subtotal = hours * rates.intervention_hourly_rate
    travel = travel_km * rates.travel_rate
    urgent = rates.urgent_surcharge if is_urgent else 0
    before_tax = subtotal + travel + urgent
    tax = before_tax * (rates.tax_rate / 100)
    total = before_tax + tax

    return InterventionPrice(
        subtotal=round_currency(subtotal),
        travel=round_currency(travel),
        urgent=round_currency(urgent),
        tax=round_currency(tax),
        total=round_currency(total),
    )


def calculate_cloud_price(storage_gb: float, rates: RateTable | None = None) -> float:
    rates = rates or RateTable()
    if storage_gb <= FREE_CLOUD_TIER_GB:
        return rates.cloud_storage_base

    extra_gb = storage_gb - FREE_CLOUD_TIER_GB
    return rates.cloud_storage_base + extra_gb * rates.cloud_storage_per_gb


def get_maintenance_price(plan: str | None, rates: RateTable | None = None) -> float:
    rates = rates or RateTable()
    prices = {
        "base": rates.maintenance_base,
        "standard": rates.maintenance_standard,
        "plus": rates.maintenance_plus,
        "prestige": rates.maintenance_prestige,
    }
    return prices.get(plan, rates.maintenance_base)


def get_website_price(site_type: str | None, rates: RateTable | None = None) -> float:
    rates = rates or RateTable()
    prices = {
        "vitrine": rates.website_vitrine,
        "pme": rates.website_pme,
        "ecommerce": rates.website_ecommerce,
    }
    return prices.get(site_type, rates.website_vitrine)


def plan_price(plan: str | None, rates: RateTable | None = None) -> float:
    """Monthly price of a subscription tier; tiers share the maintenance rates."""

    return get_maintenance_price(plan, rates)


def _service_section(services: Mapping[str, object], key: str) -> Mapping[str, object] | None:
    section = services.get(key)
    if isinstance(section, Mapping):
        return section
    return None


def generate_quote(
    services: Mapping[str, object] | None,
    rates: RateTable | None = None,
    now: datetime | None = None,
) -> Quote:
    rates = rates or RateTable()
    services = services or {}
    created_at = now or datetime.now(UTC)

    items: list[QuoteItem] = []
    one_time = 0.0
    recurring = 0.0

    intervention = _service_section(services, "intervention")
    if intervention is not None:
        duration = coerce_number(intervention.get("duration_minutes")) or 0
        travel_km = coerce_number(intervention.get("travel_km")) or 0
        is_urgent = bool(intervention.get("is_urgent"))
        price = calculate_intervention_price(duration, travel_km, is_urgent, rates)
        items.append(
            QuoteItem(
                item_type="intervention",
                description=f"Technical intervention ({duration:g} min)",
                price=price.subtotal,
                details={
                    "duration": duration,
                    "travel": price.travel,
                    "urgent": price.urgent,
                },
            )
        )
        one_time += price.subtotal + price.travel + price.urgent

    cloud = _service_section(services, "cloud")
    if cloud is not None:
        storage_gb = coerce_number(cloud.get("storage_gb")) or 0
        price = calculate_cloud_price(storage_gb, rates)
        items.append(
            QuoteItem(
                item_type="cloud",
                description=f"Cloud backup ({storage_gb:g} GB)",
                price=round_currency(price),
                recurring="monthly",
            )
        )
        recurring += price

    website = _service_section(services, "website")
    if website is not None:
        site_type = website.get("type")
        price = get_website_price(site_type, rates)
        label = site_type if site_type in WEBSITE_TYPES else "vitrine"
        items.append(
            QuoteItem(
                item_type="website",
                description=f"Website {label}",
                price=round_currency(price),
                recurring="monthly",
            )
        )
        recurring += price

    maintenance = _service_section(services, "maintenance")
    if maintenance is not None:
        plan = maintenance.get("plan")
        price = get_maintenance_price(plan, rates)
        label = plan if plan in PLAN_TIERS else "base"
        items.append(
            QuoteItem(
                item_type="maintenance",
                description=f"Maintenance plan {label}",
                price=round_currency(price),
                recurring="monthly",
            )
        )
        recurring += price

    # One-time and monthly amounts share a single taxed subtotal.
    subtotal = one_time + recurring
    tax = subtotal * (rates.tax_rate / 100)

    return Quote(
        items=items,
        subtotal=round_currency(subtotal),
        tax=round_currency(tax),
        total=round_currency(subtotal + tax),
        one_time_subtotal=round_currency(one_time),
        recurring_subtotal=round_currency(recurring),
        valid_until=created_at + timedelta(days=QUOTE_VALIDITY_DAYS),
        created_at=created_at,
    )


def filter_services_for_location(
    services: Mapping[str, object] | None, is_in_islands: bool
) -> tuple[dict[str, object], list[str]]:
    """Physical interventions are only dispatched inside the islands."""

    allowed = dict(services or {})
    rejected: list[str] = []
    if not is_in_islands and "intervention" in allowed:
        allowed.pop("intervention")
        rejected.append("intervention")
    return allowed, rejected


def auto_invoice_lines(
    actual_duration_minutes: float, title: str, rates: RateTable | None = None
) -> dict[str, object]:
    rates = rates or RateTable()
    amount = round_currency(actual_duration_minutes / 60 * rates.intervention_hourly_rate)
    tax = round_currency(amount * rates.tax_rate / 100)
    return {
        "description": f"Intervention: {title}",
        "amount": amount,
        "tax": tax,
        "total": round_currency(amount + tax),
        "items": [
            {
                "description": f"Technical intervention - {actual_duration_minutes:g} minutes",
                "quantity": 1,
                "unit_price": amount,
                "total": amount,
            }
        ],
    }


def _add_months(value: date | datetime, months: int) -> date | datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp to the last day of the target month.
    next_month = date(year + (month == 12), month % 12 + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def subscription_period_end(start: date | datetime, billing_cycle: str | None) -> date | datetime:
    if billing_cycle == "annual":
        return _add_months(start, 12)
    return _add_months(start, 1)

import math
from collections.abc import Mapping
from dataclasses import dataclass, field

REQUIRED_PROFILE_FIELDS = ("first_name", "last_name", "phone", "address", "city")
COMPLETION_FIELDS = REQUIRED_PROFILE_FIELDS + ("postal_code",)

_CAMEL_CASE_ALIASES = {
    "first_name": "firstName",
    "last_name": "lastName",
    "postal_code": "postalCode",
}


@dataclass(frozen=True)
class ProfileStatus:
    is_complete: bool
    missing_fields: list[str] = field(default_factory=list)
    can_purchase: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "is_complete": self.is_complete,
            "missing_fields": list(self.missing_fields),
            "can_purchase": self.can_purchase,
        }


def _field_value(client: object, name: str) -> object:
    if isinstance(client, Mapping):
        if name in client:
            return client.get(name)
        return client.get(_CAMEL_CASE_ALIASES.get(name, name))
    return getattr(client, name, None)


def _is_filled(value: object) -> bool:
    if value is None:
        return False
    return bool(str(value).strip())


def validate_client_profile(client: object) -> ProfileStatus:
    missing = [
        name for name in REQUIRED_PROFILE_FIELDS if not _is_filled(_field_value(client, name))
    ]
    complete = not missing
    # Purchases are gated on the same five fields as completeness.
    return ProfileStatus(is_complete=complete, missing_fields=missing, can_purchase=complete)


def profile_completion_percentage(client: object) -> int:
    filled = sum(1 for name in COMPLETION_FIELDS if _is_filled(_field_value(client, name)))
    return math.floor(100 * filled / len(COMPLETION_FIELDS) + 0.5)

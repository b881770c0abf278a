"""Input validation for cluster assembly and API triggers.

Every validator raises :class:`~dbplane.core.errors.ValidationError` with a
field → message map.  :class:`Validator` collects several failures so a
caller sees all problems with one request.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

from dbplane.core.errors import ValidationError

NAME_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
DOMAIN_PATTERN = re.compile(r"^(?=.{1,253}$)(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")

PROVIDER_LOCATIONS: dict[str, tuple[str, ...]] = {
    "gcp": ("us-central1", "us-east1", "us-west1", "europe-west1", "asia-northeast1"),
}

VM_SIZES: dict[str, int] = {f"n1-standard-{cores}": cores for cores in (1, 2, 4, 8, 16, 32)}

HA_STANDBY_COUNTS: dict[str, int] = {"none": 0, "async": 1, "sync": 2}

MIN_STORAGE_GIB = 10
MAX_STORAGE_GIB = 4096


def required_standby_count(ha_type: str) -> int:
    """Standbys required by an HA type: none → 0, async → 1, sync → 2."""
    try:
        return HA_STANDBY_COUNTS[ha_type]
    except KeyError:
        raise ValidationError(details={"ha_type": f"unknown HA type {ha_type!r}"}) from None


def validate_name(name: str, field: str = "name") -> str:
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ValidationError(
            details={
                field: "Name must only contain lowercase letters, numbers, and hyphens "
                "and have max length 63."
            }
        )
    return name


def validate_location(location: str, provider: str = "gcp") -> str:
    locations = PROVIDER_LOCATIONS.get(provider, ())
    if location not in locations:
        raise ValidationError(
            details={"provider": f"Given location is not a valid {provider} location: {', '.join(locations)}"}
        )
    return location


def validate_vm_size(size: str) -> str:
    if size not in VM_SIZES:
        raise ValidationError(details={"size": f"{size} is not a valid size: {', '.join(VM_SIZES)}"})
    return size


def validate_ha_type(ha_type: str) -> str:
    if ha_type not in HA_STANDBY_COUNTS:
        raise ValidationError(details={"ha_type": f"HA type must be one of {', '.join(HA_STANDBY_COUNTS)}"})
    return ha_type


def validate_storage_size(size_gib: int) -> int:
    if not isinstance(size_gib, int) or not MIN_STORAGE_GIB <= size_gib <= MAX_STORAGE_GIB:
        raise ValidationError(
            details={"storage_size_gib": f"Storage size must be between {MIN_STORAGE_GIB} and {MAX_STORAGE_GIB} GiB"}
        )
    return size_gib


def validate_domain(domain: str | None) -> str | None:
    if domain is None:
        return None
    if not DOMAIN_PATTERN.match(domain.lower()):
        raise ValidationError(details={"domain": f"{domain} is not a valid domain name"})
    return domain.lower()


def validate_date(value: str | datetime, field: str = "date") -> datetime:
    if isinstance(value, datetime):
        return _to_naive_utc(value) if value.tzinfo else value
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise ValidationError(details={field: f"{value!r} is not a valid date"}) from None
    return _to_naive_utc(parsed) if parsed.tzinfo else parsed


def _to_naive_utc(value: datetime) -> datetime:
    return value.astimezone(UTC).replace(tzinfo=None)


def validate_password(password: str, field: str = "password") -> str:
    problems = []
    if len(password) < 12:
        problems.append("must have 12 characters minimum")
    if len(password) > 72:
        problems.append("must have 72 characters maximum")
    if not re.search(r"[a-z]", password):
        problems.append("must have at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("must have at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("must have at least one digit")
    if problems:
        raise ValidationError(details={field: "Password " + "; ".join(problems)})
    return password


class Validator:
    """Collect failures from several validators into one ValidationError.

    Example:
        >>> v = Validator()
        >>> v.check(validate_name, "Bad Name")
        >>> v.check(validate_vm_size, "huge")
        >>> v.raise_if_failed()
        Traceback (most recent call last):
        ...
        ValidationError: Validation failed (name: ..., size: ...)
    """

    def __init__(self) -> None:
        self.details: dict[str, str] = {}

    def check(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationError as exc:
            self.details.update(exc.details)
            return None

    def add(self, field: str, message: str) -> None:
        self.details[field] = message

    def raise_if_failed(self) -> None:
        if self.details:
            raise ValidationError(details=self.details)

"""Tests for dbplane.validation."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from dbplane.core.errors import ValidationError
from dbplane.validation import (
    Validator,
    required_standby_count,
    validate_date,
    validate_domain,
    validate_ha_type,
    validate_location,
    validate_name,
    validate_password,
    validate_storage_size,
    validate_vm_size,
)


class TestStandbyCount:
    @pytest.mark.parametrize("ha_type, expected", [("none", 0), ("async", 1), ("sync", 2)])
    def test_counts(self, ha_type, expected):
        assert required_standby_count(ha_type) == expected

    def test_unknown_type(self):
        with pytest.raises(ValidationError) as exc:
            required_standby_count("quorum")
        assert "ha_type" in exc.value.details


class TestFieldValidators:
    @pytest.mark.parametrize("name", ["orders", "a", "orders-eu-1", "x" * 63])
    def test_valid_names(self, name):
        assert validate_name(name) == name

    @pytest.mark.parametrize("name", ["", "Orders", "-orders", "orders-", "ord_ers", "x" * 64])
    def test_invalid_names(self, name):
        with pytest.raises(ValidationError):
            validate_name(name)

    def test_name_field_label(self):
        with pytest.raises(ValidationError) as exc:
            validate_name("BAD", field="label")
        assert "label" in exc.value.details

    def test_location(self):
        assert validate_location("us-central1") == "us-central1"
        with pytest.raises(ValidationError) as exc:
            validate_location("mars-north1")
        assert "provider" in exc.value.details

    def test_vm_size(self):
        assert validate_vm_size("n1-standard-4") == "n1-standard-4"
        with pytest.raises(ValidationError):
            validate_vm_size("n1-standard-3")

    def test_ha_type(self):
        with pytest.raises(ValidationError):
            validate_ha_type("multi")

    @pytest.mark.parametrize("size", [10, 50, 4096])
    def test_storage_in_range(self, size):
        assert validate_storage_size(size) == size

    @pytest.mark.parametrize("size", [9, 4097, "50"])
    def test_storage_out_of_range(self, size):
        with pytest.raises(ValidationError):
            validate_storage_size(size)

    def test_domain_is_lowercased(self):
        assert validate_domain("DB.Example.COM") == "db.example.com"
        assert validate_domain(None) is None

    @pytest.mark.parametrize("domain", ["localhost", "bad_domain.com", "-x.example.com"])
    def test_invalid_domain(self, domain):
        with pytest.raises(ValidationError):
            validate_domain(domain)


class TestDates:
    def test_iso_with_zulu_becomes_naive_utc(self):
        assert validate_date("2026-03-01T10:00:00Z") == datetime(2026, 3, 1, 10, 0)

    def test_offset_is_normalised(self):
        value = datetime(2026, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert validate_date(value) == datetime(2026, 3, 1, 10, 0)

    def test_naive_passthrough(self):
        value = datetime(2026, 3, 1, 10, 0)
        assert validate_date(value) is value

    def test_aware_utc(self):
        assert validate_date(datetime(2026, 3, 1, tzinfo=UTC)).tzinfo is None

    def test_garbage(self):
        with pytest.raises(ValidationError) as exc:
            validate_date("yesterday", "restore_target")
        assert "restore_target" in exc.value.details


class TestPasswords:
    def test_strong_password(self):
        assert validate_password("Correct-Horse-9") == "Correct-Horse-9"

    def test_reports_every_problem(self):
        with pytest.raises(ValidationError) as exc:
            validate_password("short")
        message = exc.value.details["password"]
        assert "12 characters minimum" in message
        assert "uppercase" in message
        assert "digit" in message

    def test_too_long(self):
        with pytest.raises(ValidationError) as exc:
            validate_password("Aa1" + "x" * 80, field="db_user_password")
        assert "72 characters maximum" in exc.value.details["db_user_password"]


class TestValidator:
    def test_collects_all_failures(self):
        v = Validator()
        v.check(validate_name, "Bad Name")
        v.check(validate_vm_size, "huge")
        v.add("parent_id", "no representative")
        with pytest.raises(ValidationError) as exc:
            v.raise_if_failed()
        assert set(exc.value.details) == {"name", "size", "parent_id"}

    def test_returns_value_on_success(self):
        v = Validator()
        assert v.check(validate_domain, "A.example.com") == "a.example.com"
        v.raise_if_failed()

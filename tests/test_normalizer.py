"""Tests for entitlement normalization."""

import json
from datetime import date, datetime

import pytest

from entitlement_recon.models import EntitlementCategory, ProvisioningRecord
from entitlement_recon.normalizer import (
    normalize_block,
    normalize_date,
    normalize_entitlement,
    normalize_entitlements,
    normalize_quantity,
    parse_license_entitlements,
    parse_provisioning_entitlements,
    parse_tenant_entitlements,
)

APPS = EntitlementCategory.APPS
MODELS = EntitlementCategory.MODELS


class TestNormalizeDate:
    """Tests for date normalization."""

    @pytest.mark.parametrize(
        "value",
        [
            "2025-01-01",
            "2025-01-01T00:00:00",
            "2025-01-01T10:30:00Z",
            "2025/01/01",
            "01/01/2025",
            "01-Jan-2025",
            "Jan 01, 2025",
        ],
    )
    def test_accepted_formats(self, value: str) -> None:
        """Test the date layouts seen in both sources."""
        assert normalize_date(value) == date(2025, 1, 1)

    def test_zone_aware_timestamp_converted_to_utc(self) -> None:
        """Test truncation happens after conversion to UTC."""
        assert normalize_date("2025-01-01T23:30:00-05:00") == date(2025, 1, 2)

    @pytest.mark.parametrize("value", [None, "", "   ", "not a date", "2025-13-45", 42, [], {}])
    def test_unparsable_is_none(self, value: object) -> None:
        """Test bad dates become None instead of raising."""
        assert normalize_date(value) is None

    def test_date_and_datetime_objects(self) -> None:
        """Test already-parsed values."""
        assert normalize_date(date(2025, 3, 1)) == date(2025, 3, 1)
        assert normalize_date(datetime(2025, 3, 1, 12, 0)) == date(2025, 3, 1)


class TestNormalizeQuantity:
    """Tests for quantity normalization."""

    def test_missing_is_none(self) -> None:
        """Test absent quantity stays distinct from zero."""
        assert normalize_quantity(None) is None
        assert normalize_quantity("") is None

    def test_zero_is_kept(self) -> None:
        """Test a quantity of zero is not treated as missing."""
        assert normalize_quantity(0) == 0
        assert normalize_quantity("0") == 0

    def test_numeric_strings(self) -> None:
        """Test numeric strings are parsed."""
        assert normalize_quantity("10") == 10
        assert isinstance(normalize_quantity("10"), int)
        assert normalize_quantity("2.5") == 2.5

    def test_garbage_is_none(self) -> None:
        """Test non-numeric values."""
        assert normalize_quantity("ten") is None
        assert normalize_quantity(True) is None
        assert normalize_quantity({"n": 1}) is None

    @pytest.mark.parametrize(
        "value", ["nan", "NaN", "inf", "-Infinity", float("nan"), float("inf"), float("-inf")]
    )
    def test_non_finite_is_none(self, value: object) -> None:
        """Test NaN and infinity are not quantities."""
        assert normalize_quantity(value) is None

    def test_nan_quantity_still_matches(self) -> None:
        """Test identical entitlements with a NaN quantity land in matching."""
        raw = {"productCode": "X", "packageName": "Gold", "quantity": "nan"}
        license_side = normalize_entitlement(raw, APPS)
        provisioning_side = normalize_entitlement(dict(raw), APPS)

        assert license_side.quantity is None
        assert license_side == provisioning_side


class TestNormalizeEntitlement:
    """Tests for single entitlement normalization."""

    def test_missing_product_code_is_empty(self) -> None:
        """Test that a missing code never raises."""
        entitlement = normalize_entitlement({}, APPS)
        assert entitlement.product_code == ""
        assert entitlement.package_name == ""
        assert entitlement.quantity is None

    def test_fields_trimmed(self) -> None:
        """Test surrounding whitespace is removed."""
        entitlement = normalize_entitlement(
            {"productCode": " RI-APP ", "packageName": "Gold ", "productModifier": " "}, APPS
        )
        assert entitlement.product_code == "RI-APP"
        assert entitlement.package_name == "Gold"
        assert entitlement.product_modifier == ""

    def test_fixed_point(self) -> None:
        """Test re-normalizing the canonical form changes nothing."""
        raw = {
            "productCode": "RI-APP",
            "packageName": "Gold",
            "quantity": 5,
            "startDate": "2025-01-01T08:00:00Z",
            "endDate": "2025-12-31",
        }
        once = normalize_entitlement(raw, APPS)
        twice = normalize_entitlement(once.to_dict(), APPS)

        assert twice == once
        assert once.to_dict()["startDate"] == "2025-01-01"


class TestExpansionPacks:
    """Tests for expansion pack flattening."""

    def test_packs_become_siblings_after_parent(self) -> None:
        """Test nested packs are emitted right after their parent."""
        result = normalize_entitlements(
            [
                {
                    "productCode": "BASE",
                    "packageName": "Gold",
                    "expansionPacks": [{"productCode": "PACK-1"}, {"productCode": "PACK-2"}],
                },
                {"productCode": "OTHER"},
            ],
            APPS,
        )

        assert [e.product_code for e in result] == ["BASE", "PACK-1", "PACK-2", "OTHER"]
        assert all(e.category == APPS for e in result)

    def test_pack_inherits_parent_package(self) -> None:
        """Test the parent's package is the fallback for a pack without one."""
        result = normalize_entitlements(
            [
                {
                    "productCode": "BASE",
                    "packageName": "Gold",
                    "expansionPacks": [
                        {"productCode": "PACK-1"},
                        {"productCode": "PACK-2", "packageName": "Silver"},
                    ],
                }
            ],
            APPS,
        )

        assert result[1].package_name == "Gold"
        assert result[2].package_name == "Silver"

    def test_malformed_item_skipped(self) -> None:
        """Test that a non-object item does not sink the list."""
        result = normalize_entitlements(["junk", {"productCode": "OK"}], MODELS)
        assert [e.product_code for e in result] == ["OK"]


class TestParsing:
    """Tests for payload parsing of both sides."""

    def test_normalize_block(self) -> None:
        """Test each array lands in its category."""
        result = normalize_block(
            {
                "modelEntitlements": [{"productCode": "M1"}],
                "dataEntitlements": [{"productCode": "D1"}, {"productCode": "D2"}],
                "appEntitlements": [{"productCode": "A1"}],
            }
        )
        assert result.counts() == {"models": 1, "data": 2, "apps": 1}
        assert result.data[1].category == EntitlementCategory.DATA

    def test_license_entitlements_from_json_string(self) -> None:
        """Test a JSON-encoded extensionData payload."""
        payload = json.dumps({"extensionData": {"appEntitlements": [{"productCode": "A1"}]}})
        result = parse_license_entitlements(payload)
        assert [e.product_code for e in result.apps] == ["A1"]

    @pytest.mark.parametrize("payload", [None, "", "{not json", 42, ["a"]])
    def test_license_entitlements_unusable(self, payload: object) -> None:
        """Test unusable payloads give an empty set."""
        assert parse_license_entitlements(payload).total == 0

    def test_tenant_entitlements_from_cached_row(self) -> None:
        """Test cached rows carry the block under product_entitlements."""
        tenant = {
            "tenantId": "1",
            "product_entitlements": {"modelEntitlements": [{"productCode": "M1"}]},
        }
        result = parse_tenant_entitlements(tenant)
        assert [e.product_code for e in result.models] == ["M1"]

    def test_tenant_entitlements_top_level_block(self) -> None:
        """Test a tenant that is itself the block."""
        tenant = {"tenantId": "1", "dataEntitlements": [{"productCode": "D1"}]}
        result = parse_tenant_entitlements(tenant)
        assert [e.product_code for e in result.data] == ["D1"]

    def test_provisioning_entitlements(self) -> None:
        """Test the entitlements path inside a provisioning payload."""
        payload = {
            "properties": {
                "provisioningDetail": {
                    "entitlements": {"appEntitlements": [{"code": "A1", "quantity": "3"}]}
                }
            }
        }
        record = ProvisioningRecord(record_id="PR-1", payload_data=json.dumps(payload))

        result = parse_provisioning_entitlements(record)

        assert len(result.apps) == 1
        assert result.apps[0].product_code == "A1"
        assert result.apps[0].quantity == 3

    @pytest.mark.parametrize(
        "payload",
        [None, "", "{broken", json.dumps({"properties": {}}), json.dumps({"properties": "x"})],
    )
    def test_provisioning_entitlements_missing(self, payload: object) -> None:
        """Test records without a usable entitlements block give an empty set."""
        record = ProvisioningRecord(record_id="PR-1", payload_data=payload)
        assert parse_provisioning_entitlements(record).total == 0

"""Tests for device discovery and credential extraction."""

from __future__ import annotations

import pytest

from bmcsecretsync.errors import CredentialExtractionError
from bmcsecretsync.registry import MemoryRegistry
from bmcsecretsync.resolver import (
    UNKNOWN_REGION,
    device_hostname,
    extract_credentials,
    extract_region,
    find_devices_for_credential,
)

from conftest import make_credential, make_device


class TestFindDevices:
    """Tests for find_devices_for_credential."""

    def test_filters_by_reference(self):
        reg = MemoryRegistry()
        reg.put_device(make_device("bmc-1", credential="a"))
        reg.put_device(make_device("bmc-2", credential="b"))
        reg.put_device(make_device("bmc-3", credential="a"))
        names = sorted(d.name for d in find_devices_for_credential(reg, "a"))
        assert names == ["bmc-1", "bmc-3"]

    def test_no_devices(self):
        assert find_devices_for_credential(MemoryRegistry(), "a") == []


class TestRegionAndHostname:
    """Tests for region and hostname derivation."""

    def test_region_from_label(self):
        assert extract_region(make_device("d", region="eu-west-1"), "region") == "eu-west-1"

    def test_custom_region_key(self):
        device = make_device("d", region=None)
        device.labels["topology/zone"] = "zone-a"
        assert extract_region(device, "topology/zone") == "zone-a"

    def test_missing_region_is_unknown(self):
        assert extract_region(make_device("d", region=None), "region") == UNKNOWN_REGION

    def test_empty_region_is_unknown(self):
        assert extract_region(make_device("d", region=""), "region") == UNKNOWN_REGION

    def test_hostname_preferred(self):
        device = make_device("bmc-1", hostname="host1.example.com", endpoint_ref="ep-1")
        assert device_hostname(device) == "host1.example.com"

    def test_endpoint_fallback(self):
        assert device_hostname(make_device("bmc-1", endpoint_ref="ep-1")) == "ep-1"

    def test_name_fallback(self):
        assert device_hostname(make_device("bmc-1")) == "bmc-1"

    def test_empty_hostname_falls_through(self):
        assert device_hostname(make_device("bmc-1", hostname="", endpoint_ref="")) == "bmc-1"


class TestExtractCredentials:
    """Tests for extract_credentials."""

    def test_both_present(self):
        assert extract_credentials(make_credential()) == ("admin", "s3cret")

    def test_missing_username(self):
        with pytest.raises(CredentialExtractionError, match="username not found"):
            extract_credentials(make_credential(username=None))

    def test_empty_password(self):
        with pytest.raises(CredentialExtractionError, match="password not found"):
            extract_credentials(make_credential(password=""))

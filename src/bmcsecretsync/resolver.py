"""Device discovery and credential extraction for reconciliation."""

from __future__ import annotations

from .errors import CredentialExtractionError
from .models import CredentialRecord, DeviceRecord

UNKNOWN_REGION = "unknown"

USERNAME_KEY = "username"
PASSWORD_KEY = "password"


def find_devices_for_credential(registry, credential_name: str) -> list[DeviceRecord]:
    """Return every device whose credential reference names this credential.

    Raises:
        RegistryError: If the device list cannot be read.
    """
    return [d for d in registry.list_devices() if d.credential_ref == credential_name]


def extract_region(device: DeviceRecord, region_label_key: str) -> str:
    """Region from the device's labels, or "unknown" when missing or empty."""
    return device.labels.get(region_label_key) or UNKNOWN_REGION


def device_hostname(device: DeviceRecord) -> str:
    """First non-empty of hostname, endpoint reference and device name."""
    return device.hostname or device.endpoint_ref or device.name


def extract_credentials(record: CredentialRecord) -> tuple[str, str]:
    """Pull username and password out of a credential record.

    Returns:
        tuple: (username, password)

    Raises:
        CredentialExtractionError: If either value is missing or empty.
    """
    username = record.data.get(USERNAME_KEY)
    if not username:
        raise CredentialExtractionError("username not found in credential")
    password = record.data.get(PASSWORD_KEY)
    if not password:
        raise CredentialExtractionError("password not found in credential")
    return username, password

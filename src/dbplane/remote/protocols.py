"""
Structural contracts for everything outside the control plane.

The machines consume these method contracts only; HTTP and SSH plumbing
live in whatever implements them.

Architecture:
    ::

        protocols.py
        ├── Shell        : run a command on one VM (SSH in production)
        ├── CloudClient  : VMs, static addresses, disks, service identities
        ├── DnsClient    : one A record per domain
        ├── BlobStorage  : list objects by prefix, fetch JSON
        └── Notifier     : outbound delivery of page open/resolve events

Guardrails:
    ❌ DON'T: Put retry loops inside implementations; steps poll with sleep_and_retry
    ✅ DO: Raise CloudError / DnsError / RemoteCommandError on failure
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Shell(Protocol):
    """Command execution on one VM."""

    def run(self, cmd: str, stdin: str | None = None) -> str:
        """Run ``cmd`` and return stdout; raise RemoteCommandError on non-zero exit."""
        ...


@runtime_checkable
class CloudClient(Protocol):
    # --- compute ---
    def create_vm(
        self,
        name: str,
        *,
        location: str,
        machine_type: str,
        storage_size_gib: int,
        boot_image: str,
        address_name: str,
        labels: dict[str, str] | None = None,
    ) -> dict[str, Any]: ...

    def get_vm(self, name: str, location: str) -> dict[str, Any] | None:
        """Return ``{"status": "RUNNING"|"TERMINATED"|..., ...}`` or None when absent."""
        ...

    def start_vm(self, name: str, location: str) -> None: ...

    def stop_vm(self, name: str, location: str) -> None: ...

    def delete_vm(self, name: str, location: str) -> None: ...

    # --- addresses ---
    def create_static_ipv4(self, address_name: str, location: str) -> dict[str, Any]: ...

    def get_static_ipv4(self, address_name: str, location: str) -> dict[str, Any] | None:
        """Return ``{"address": "1.2.3.4", "user": vm_name | None}`` or None."""
        ...

    def release_ipv4(self, address_name: str, location: str) -> None: ...

    def assign_static_ipv4(self, vm_name: str, address: str, location: str) -> None: ...

    def unassign_static_ipv4(self, vm_name: str, location: str) -> None:
        """Detach whatever external address the VM holds; no-op when it holds none."""
        ...

    # --- sizing ---
    def resize_vm_disk(self, vm_name: str, location: str, size_gib: int) -> None: ...

    def update_vm_type(self, vm_name: str, location: str, machine_type: str) -> None: ...

    # --- identities ---
    def create_service_account(self, name: str, description: str) -> dict[str, Any]:
        """Return ``{"email": ...}``."""
        ...

    def export_service_account_key(self, email: str) -> str:
        """Base64 encoded JSON key."""
        ...

    def remove_service_account(self, email: str) -> None: ...

    def allow_bucket_usage_by_prefix(self, email: str, bucket: str, prefix: str) -> None: ...


@runtime_checkable
class DnsClient(Protocol):
    def get_dns_record(self, name: str) -> dict[str, Any] | None: ...

    def insert_dns_record(self, name: str, ip: str) -> None: ...

    def update_dns_record(self, record_id: str, name: str, ip: str) -> None: ...

    def delete_dns_record(self, name: str) -> None: ...

    def upsert_dns_record(self, name: str, ip: str) -> None: ...


@dataclass
class BlobObject:
    key: str
    last_modified: datetime


@runtime_checkable
class BlobStorage(Protocol):
    def list_objects(self, bucket: str, prefix: str) -> list[BlobObject]: ...

    def get_json(self, bucket: str, key: str) -> dict[str, Any]: ...


@runtime_checkable
class Notifier(Protocol):
    def page_opened(self, page: Any) -> None: ...

    def page_resolved(self, page: Any) -> None: ...

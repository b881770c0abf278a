"""Collaborator contracts: VM shell and daemonizer, cloud, DNS, blob storage, notifier."""

from dbplane.remote.daemonizer import RemoteTask, TaskLogs, TaskStatus
from dbplane.remote.protocols import BlobObject, BlobStorage, CloudClient, DnsClient, Notifier, Shell
from dbplane.remote.services import Services

__all__ = [
    "BlobObject",
    "BlobStorage",
    "CloudClient",
    "DnsClient",
    "Notifier",
    "RemoteTask",
    "Services",
    "Shell",
    "TaskLogs",
    "TaskStatus",
]

"""Services container handed to every program.

Groups settings, the clock and the collaborator clients so that machines
never construct clients themselves; tests pass in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from dbplane.core.errors import ConfigError
from dbplane.core.settings import DbplaneSettings
from dbplane.core.timestamps import SystemClock
from dbplane.remote.daemonizer import RemoteTask
from dbplane.remote.protocols import BlobStorage, CloudClient, DnsClient, Notifier, Shell


@dataclass
class Services:
    settings: DbplaneSettings
    cloud: CloudClient
    dns: DnsClient
    blob: BlobStorage
    notifier: Notifier
    shell_factory: Callable[[Any], Shell]
    clock: Any = field(default_factory=SystemClock)

    def shell_for(self, vm: Any) -> Shell:
        """Shell on ``vm`` (a VmTable row)."""
        return self.shell_factory(vm)

    def task(self, vm: Any, name: str) -> RemoteTask:
        return RemoteTask(self.shell_for(vm), name)


def resolve_callable_ref(ref: str) -> Callable[..., Any]:
    """Import and return the callable identified by ``'module:qualname'``."""
    import importlib

    module_path, _, attr_path = ref.partition(":")
    if not attr_path:
        raise ValueError(f"Invalid callable ref (missing ':'): {ref!r}")
    obj: Any = importlib.import_module(module_path)
    for part in attr_path.split("."):
        obj = getattr(obj, part)
    if not callable(obj):
        raise TypeError(f"{ref!r} resolved to non-callable: {type(obj)}")
    return obj


def build_services(settings: DbplaneSettings) -> Services:
    """Build the production services from ``settings.services_factory``.

    The factory is a ``module:callable`` taking the settings and returning a
    :class:`Services`; deployments point it at their cloud/DNS/blob clients.
    """
    if not settings.services_factory:
        raise ConfigError("DBPLANE_SERVICES_FACTORY is not set")
    services = resolve_callable_ref(settings.services_factory)(settings)
    if not isinstance(services, Services):
        raise ConfigError(f"{settings.services_factory} did not return Services")
    return services

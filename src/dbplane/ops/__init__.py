"""
Operations layer for dbplane.

Typed request/response functions over the machines, with one set of rules:

- Every function takes an ``OperationContext`` first
- Every function returns ``OperationResult[T]`` (never raises)
- Mutations assemble processes or raise signal flags; machines do the work
- ``dry_run`` runs every check and discards the writes

Usage::

    from dbplane.ops import OperationContext
    from dbplane.ops.clusters import create_cluster
    from dbplane.ops.requests import CreateClusterRequest

    ctx = OperationContext(session=session, services=services)
    result = create_cluster(ctx, CreateClusterRequest(name="orders", ha_type="async"))
    assert result.success
"""

from dbplane.ops.context import OperationContext
from dbplane.ops.result import OperationError, OperationResult, PagedResult

__all__ = [
    "OperationContext",
    "OperationError",
    "OperationResult",
    "PagedResult",
]

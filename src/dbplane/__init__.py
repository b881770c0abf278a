"""
dbplane: a durable control plane for replicated database clusters.

The package is layered leaf-first:

    core/        settings, logging, errors, ORM base and tables
    execution/   the durable process engine (programs, runner, leases, worker)
    remote/      collaborator contracts (shell/daemonizer, cloud, DNS, blobs)
    paging.py    incident pages keyed by a stable tag
    cluster/     VM, node, topology and backup-lineage machines
    doctor/      scheduled health checks and incidents
    ops/         operation functions returning OperationResult (used by the CLI)
    cli/         Typer entry point
"""

__version__ = "0.3.0"

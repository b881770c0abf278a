"""Process leases: single active invocation per process.

A lease is two columns on the process row (owner, expiry).  Acquisition is
one conditional UPDATE that only matches a row nobody holds or whose lease
has expired, so two workers racing for the same process cannot both win.
Leases left behind by a crashed worker expire after ``ttl_seconds``.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import ProcessTable
from dbplane.core.timestamps import SystemClock

logger = get_logger(__name__)


class LeaseManager:
    """Acquire, refresh and release process leases.

    Args:
        session_factory: Produces sessions on the control-plane database
        owner_id: Identity written into held leases (auto-generated if omitted)
        ttl_seconds: Lease lifetime
        clock: Time source (anything with ``now()``)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        owner_id: str | None = None,
        ttl_seconds: int = 120,
        clock: SystemClock | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.owner_id = owner_id or f"lease-{uuid4().hex[:12]}"
        self.ttl_seconds = ttl_seconds
        self.clock = clock or SystemClock()

    def acquire(self, process_id: str) -> bool:
        """Take the lease; False if another invocation holds it."""
        now = self.clock.now()
        with self.session_factory() as session:
            result = session.execute(
                update(ProcessTable)
                .where(
                    ProcessTable.id == process_id,
                    or_(ProcessTable.lease_expires_at.is_(None), ProcessTable.lease_expires_at < now),
                )
                .values(lease_owner=self.owner_id, lease_expires_at=now + timedelta(seconds=self.ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            session.commit()
        acquired = result.rowcount == 1
        if not acquired:
            logger.debug("lease_busy", process_id=process_id)
        return acquired

    def refresh(self, process_id: str) -> bool:
        now = self.clock.now()
        with self.session_factory() as session:
            result = session.execute(
                update(ProcessTable)
                .where(ProcessTable.id == process_id, ProcessTable.lease_owner == self.owner_id)
                .values(lease_expires_at=now + timedelta(seconds=self.ttl_seconds))
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return result.rowcount == 1

    def release(self, process_id: str) -> bool:
        """Release a lease held by this owner."""
        with self.session_factory() as session:
            result = session.execute(
                update(ProcessTable)
                .where(ProcessTable.id == process_id, ProcessTable.lease_owner == self.owner_id)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return result.rowcount == 1

    def holder(self, process_id: str) -> str | None:
        now = self.clock.now()
        with self.session_factory() as session:
            return session.scalar(
                select(ProcessTable.lease_owner).where(
                    ProcessTable.id == process_id, ProcessTable.lease_expires_at > now
                )
            )

    def is_leased(self, process_id: str) -> bool:
        return self.holder(process_id) is not None

    def cleanup_expired_leases(self) -> int:
        """Clear leases left behind by crashed workers."""
        now = self.clock.now()
        with self.session_factory() as session:
            result = session.execute(
                update(ProcessTable)
                .where(ProcessTable.lease_expires_at < now)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        count = result.rowcount
        if count > 0:
            logger.info("expired_leases_cleared", count=count)
        return count

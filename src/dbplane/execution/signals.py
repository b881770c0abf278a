"""Signal flags: named per-process request counters.

A flag is set while its count is above zero.  External actors (CLI, other
machines) ``incr``; the owning step ``decr``s once per handling, so a
request made twice is handled twice and a single request is handled once.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from dbplane.core.orm.tables import ProcessTable, SignalTable
from dbplane.core.timestamps import utc_now


class SignalStore:
    """Session-bound access to the signal table."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _row(self, process_id: str, name: str) -> SignalTable | None:
        return self.session.get(SignalTable, (process_id, name))

    def incr(self, process_id: str, name: str) -> int:
        row = self._row(process_id, name)
        if row is None:
            row = SignalTable(process_id=process_id, name=name, count=1, updated_at=utc_now())
            self.session.add(row)
        else:
            row.count += 1
            row.updated_at = utc_now()
        self.session.flush()
        return row.count

    def incr_and_wake(self, process_id: str, name: str, now: datetime) -> int:
        """``incr`` from outside the engine; a sleeping process is pulled forward to ``now``."""
        count = self.incr(process_id, name)
        process = self.session.get(ProcessTable, process_id)
        if process is not None and process.exited_at is None and (process.due_at is None or process.due_at > now):
            process.due_at = now
            self.session.flush()
        return count

    def decr(self, process_id: str, name: str) -> int:
        """Consume one request; returns what is left."""
        row = self._row(process_id, name)
        if row is None:
            return 0
        if row.count <= 1:
            self.session.delete(row)
            self.session.flush()
            return 0
        row.count -= 1
        row.updated_at = utc_now()
        self.session.flush()
        return row.count

    def clear(self, process_id: str, name: str) -> None:
        self.session.execute(
            delete(SignalTable).where(SignalTable.process_id == process_id, SignalTable.name == name)
        )

    def count(self, process_id: str, name: str) -> int:
        row = self._row(process_id, name)
        return row.count if row is not None else 0

    def is_set(self, process_id: str, name: str) -> bool:
        return self.count(process_id, name) > 0

    def names(self, process_id: str) -> list[str]:
        rows = self.session.scalars(
            select(SignalTable.name).where(SignalTable.process_id == process_id, SignalTable.count > 0)
        )
        return sorted(rows)

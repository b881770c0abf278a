"""Process engine tables: processes and their signal flags.

Tags:
    dbplane, orm, sqlalchemy, tables, execution
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from dbplane.core.orm.base import DbplaneBase, TimestampMixin


class ProcessTable(TimestampMixin, DbplaneBase):
    """One durable unit of work.

    ``stack`` holds the frames innermost-first; an empty stack together with
    ``exited_at`` marks the process terminal.  ``retval`` is the value handed
    back by the last ``return_`` or ``harvest_children`` and survives exactly
    one invocation.
    """

    __tablename__ = "dp_processes"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    program: Mapped[str] = mapped_column(Text, nullable=False)
    step: Mapped[str] = mapped_column(Text, nullable=False, default="start")
    stack: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    due_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, index=True)
    retval: Mapped[dict | None] = mapped_column(JSON)
    parent_id: Mapped[str | None] = mapped_column(
        Text, ForeignKey("dp_processes.id", ondelete="SET NULL"), index=True
    )
    exited_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    exit_value: Mapped[dict | None] = mapped_column(JSON)

    # --- lease ---
    lease_owner: Mapped[str | None] = mapped_column(Text)
    lease_expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)

    # --- deadline ---
    deadline_target: Mapped[str | None] = mapped_column(Text)
    deadline_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)
    deadline_paged: Mapped[bool] = mapped_column(Integer, default=False, nullable=False)

    # --- failures ---
    last_error: Mapped[str | None] = mapped_column(Text)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.exited_at is not None

    def __repr__(self) -> str:
        return f"<Process {self.id} {self.program}.{self.step}>"


class SignalTable(DbplaneBase):
    """Named request flag on a process; ``count > 0`` means set."""

    __tablename__ = "dp_signals"

    process_id: Mapped[str] = mapped_column(
        Text, ForeignKey("dp_processes.id", ondelete="CASCADE"), primary_key=True
    )
    name: Mapped[str] = mapped_column(Text, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    updated_at: Mapped[datetime.datetime | None] = mapped_column(DateTime)

    __table_args__ = (Index("ix_dp_signals_name", "name"),)

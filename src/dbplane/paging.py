"""Pages: durable, human-actionable incident records keyed by a stable tag.

A page is opened for a tag (for example ``("MissingBackup", timeline_id)``)
and stays open until resolved by the same tag.  Opening an already open tag
returns the existing page with refreshed details, so a machine that re-polls
every few seconds never floods the on-call channel.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from dbplane.core.logging import get_logger
from dbplane.core.orm.tables import PageTable
from dbplane.core.timestamps import generate_ulid

logger = get_logger(__name__)


def page_tag(parts: Iterable[Any]) -> str:
    """Stable tag string for a sequence of parts."""
    return "-".join(str(p) for p in parts)


class LoggingNotifier:
    """Notifier that writes page events to the structured log."""

    def page_opened(self, page: PageTable) -> None:
        logger.error("page_opened", page_id=page.id, tag=page.tag, summary=page.summary, severity=page.severity)

    def page_resolved(self, page: PageTable) -> None:
        logger.info("page_resolved", page_id=page.id, tag=page.tag, summary=page.summary)


class PageService:
    """Open and resolve pages within the caller's transaction."""

    def __init__(self, session: Session, services: Any) -> None:
        self.session = session
        self.services = services

    def find_open(self, tag_parts: Iterable[Any]) -> PageTable | None:
        return self.session.scalar(
            select(PageTable).where(PageTable.tag == page_tag(tag_parts), PageTable.resolved_at.is_(None))
        )

    def open(
        self,
        summary: str,
        tag_parts: Iterable[Any],
        *,
        severity: str = "error",
        details: dict[str, Any] | None = None,
    ) -> PageTable:
        tag_parts = tuple(tag_parts)
        page = self.find_open(tag_parts)
        if page is not None:
            if details is not None:
                page.details = dict(details)
            return page
        page = PageTable(
            id=generate_ulid(),
            tag=page_tag(tag_parts),
            summary=summary,
            severity=severity,
            details=dict(details or {}),
            created_at=self.services.clock.now(),
        )
        self.session.add(page)
        self.session.flush()
        self.services.notifier.page_opened(page)
        return page

    def resolve(self, tag_parts: Iterable[Any]) -> PageTable | None:
        page = self.find_open(tag_parts)
        if page is None:
            return None
        self.resolve_page(page)
        return page

    def resolve_page(self, page: PageTable) -> None:
        if page.resolved_at is not None:
            return
        page.resolved_at = self.services.clock.now()
        self.session.flush()
        self.services.notifier.page_resolved(page)

    def active_pages(self) -> list[PageTable]:
        return list(
            self.session.scalars(
                select(PageTable).where(PageTable.resolved_at.is_(None)).order_by(PageTable.created_at)
            )
        )

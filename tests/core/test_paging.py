"""Tests for dbplane.paging: pages keyed by stable tags."""

from dbplane.paging import PageService, page_tag


class TestPageTag:
    def test_joins_parts(self):
        assert page_tag(("Deadline", "p1", "Node", "wait")) == "Deadline-p1-Node-wait"


class TestPageService:
    def test_open_notifies_once(self, session, services, notifier):
        pages = PageService(session, services)
        first = pages.open("Missing backup", ("MissingBackup", "tl1"))
        second = pages.open("Missing backup", ("MissingBackup", "tl1"), details={"n": 2})
        assert first.id == second.id
        assert second.details == {"n": 2}
        assert len(notifier.opened) == 1

    def test_resolve_then_reopen_creates_new_page(self, session, services, notifier):
        pages = PageService(session, services)
        first = pages.open("down", ("NodeUnavailable", "n1"))
        assert pages.resolve(("NodeUnavailable", "n1")) is first
        assert first.resolved_at is not None
        second = pages.open("down", ("NodeUnavailable", "n1"))
        assert second.id != first.id
        assert len(notifier.resolved) == 1

    def test_resolve_unknown_tag(self, session, services, notifier):
        assert PageService(session, services).resolve(("Nope",)) is None
        assert notifier.resolved == []

    def test_resolve_page_is_idempotent(self, session, services, notifier):
        pages = PageService(session, services)
        page = pages.open("x", ("X",))
        pages.resolve_page(page)
        pages.resolve_page(page)
        assert len(notifier.resolved) == 1

    def test_active_pages(self, session, services):
        pages = PageService(session, services)
        pages.open("a", ("A",))
        pages.open("b", ("B",))
        pages.resolve(("A",))
        assert [p.tag for p in pages.active_pages()] == ["B"]

    def test_severity(self, session, services):
        page = PageService(session, services).open("warn", ("W",), severity="warning")
        assert page.severity == "warning"

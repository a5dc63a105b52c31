"""Notification sink tests."""

import pytest

from ptw.models.notification import Notification
from ptw.services.notification import NotificationService


def _notify(org, key="worker", kind="permit_approved", **meta):
    return NotificationService.notify(
        org.users[key].id, kind, {"permit_number": "PTW2603001", **meta},
        company_id=org.company.id, entity_id=1,
    )


class TestNotify:
    def test_creates_record(self, org):
        notif = _notify(org, step=2)
        assert notif.id is not None
        assert notif.title == "Permit PTW2603001 approved"
        assert notif.severity == "success"
        assert notif.entity_type == "permit"
        assert notif.payload["step"] == 2
        assert notif.is_read is False

    def test_unknown_kind(self, org):
        with pytest.raises(ValueError):
            _notify(org, kind="permit_teleported")

    def test_no_recipient_is_skipped(self, org):
        assert NotificationService.notify(None, "approver_unassigned", {"permit_number": "X"}) is None
        assert Notification.query.count() == 0

    def test_stop_work_is_an_error(self, org):
        assert _notify(org, kind="permit_stopped").severity == "error"


class TestInbox:
    def test_list_newest_first(self, org):
        first = _notify(org)
        second = _notify(org, kind="permit_activated")
        _notify(org, key="hod")

        items, total = NotificationService.list_for_recipient(org.users["worker"].id)
        assert total == 2
        assert [n.id for n in items] == [second.id, first.id]

    def test_unread_and_mark_read(self, org):
        first = _notify(org)
        _notify(org, kind="permit_activated")
        worker = org.users["worker"].id

        assert NotificationService.unread_count(worker) == 2
        marked = NotificationService.mark_read(first.id, worker)
        assert marked.is_read
        assert marked.read_at is not None
        assert NotificationService.unread_count(worker) == 1

        items, total = NotificationService.list_for_recipient(worker, unread_only=True)
        assert total == 1
        assert items[0].id != first.id

    def test_other_users_record_is_invisible(self, org):
        notif = _notify(org)
        assert NotificationService.mark_read(notif.id, org.users["hod"].id) is None
        assert NotificationService.unread_count(org.users["worker"].id) == 1

    def test_mark_all_read(self, org):
        _notify(org)
        _notify(org, kind="permit_activated")
        _notify(org, key="hod")

        assert NotificationService.mark_all_read(org.users["worker"].id) == 2
        assert NotificationService.unread_count(org.users["worker"].id) == 0
        assert NotificationService.unread_count(org.users["hod"].id) == 1

    def test_paging(self, org):
        for _ in range(5):
            _notify(org)
        items, total = NotificationService.list_for_recipient(org.users["worker"].id, limit=2, offset=4)
        assert total == 5
        assert len(items) == 1

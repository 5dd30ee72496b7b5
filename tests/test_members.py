"""
Tests for member registration, status and dormancy
"""

import pytest
from datetime import date, timedelta
from unittest.mock import Mock

from lending_core.storage import InMemoryStorage
from lending_core.audit import AuditTrail, AuditEventType
from lending_core.config import LendingConfig
from lending_core.events import EventDispatcher, DomainEvent
from lending_core.errors import ValidationError, NotFoundError, PolicyError
from lending_core.members import Member, MemberManager, MemberStatus


class TestMemberManager:
    """Test MemberManager functionality"""

    def setup_method(self):
        self.today = date(2024, 1, 1)
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.dispatcher = EventDispatcher()
        self.members = MemberManager(
            self.storage, self.audit, self.dispatcher,
            LendingConfig(_env_file=None), lambda: self.today
        )

    def _create(self, national_id="12345678", branch_id="branch_nairobi"):
        return self.members.create_member(
            national_id, "Grace Achieng", "+254 700 000 003", branch_id,
            group_id="group_7", assigned_officer_id="officer_1", created_by="officer_1"
        )

    def test_create_member(self):
        """New members are active with activity dated today"""
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.MEMBER_CREATED, handler)

        member = self._create()

        assert member.status == MemberStatus.ACTIVE
        assert member.last_activity_date == self.today
        assert self.members.get_member(member.id).national_id == "12345678"
        handler.assert_called_once()
        events = self.audit.get_events_for_entity("member", member.id)
        assert events[0].event_type == AuditEventType.MEMBER_CREATED
        assert events[0].user_id == "officer_1"

    def test_duplicate_national_id_rejected(self):
        self._create()
        with pytest.raises(ValidationError):
            self._create()
        assert len(self.members.list_members()) == 1

    @pytest.mark.parametrize("national_id,name,phone,branch", [
        ("", "Grace", "+254700000003", "b1"),
        ("123", "  ", "+254700000003", "b1"),
        ("123", "Grace", "not a phone", "b1"),
        ("123", "Grace", "+254700000003", ""),
    ])
    def test_invalid_member_fields(self, national_id, name, phone, branch):
        with pytest.raises(ValidationError):
            self.members.create_member(national_id, name, phone, branch)

    def test_require_member(self):
        with pytest.raises(NotFoundError):
            self.members.require_member("missing")
        assert self.members.get_member("missing") is None

    def test_list_members_filters(self):
        a = self._create("1", "branch_a")
        self._create("2", "branch_b")
        self.members.set_status(a.id, MemberStatus.SUSPENDED, "manager_1")

        assert [m.national_id for m in self.members.list_members(branch_id="branch_a")] == ["1"]
        assert [m.national_id for m in self.members.list_members(status=MemberStatus.ACTIVE)] == ["2"]

    def test_set_status_audited_once(self):
        """Setting the same status twice only records one change"""
        member = self._create()

        self.members.set_status(member.id, MemberStatus.SUSPENDED, "manager_1", "fraud review")
        self.members.set_status(member.id, MemberStatus.SUSPENDED, "manager_1", "fraud review")

        changes = [
            e for e in self.audit.get_events_for_entity("member", member.id)
            if e.event_type == AuditEventType.MEMBER_STATUS_CHANGED
        ]
        assert len(changes) == 1
        assert changes[0].metadata == {"old_status": "active", "new_status": "suspended", "reason": "fraud review"}

    def test_only_active_members_can_borrow(self):
        member = self._create()
        member.ensure_can_borrow()

        suspended = self.members.set_status(member.id, MemberStatus.SUSPENDED)
        with pytest.raises(PolicyError):
            suspended.ensure_can_borrow()

    def test_touch_activity_ignores_older_dates(self):
        member = self._create()
        later = self.today + timedelta(days=10)

        self.members.touch_activity(member.id, later)
        self.members.touch_activity(member.id, self.today)

        assert self.members.get_member(member.id).last_activity_date == later


class TestDormancy:
    """Test the dormancy scan"""

    def setup_method(self):
        self.today = date(2024, 1, 1)
        self.storage = InMemoryStorage()
        self.members = MemberManager(
            self.storage, AuditTrail(self.storage), EventDispatcher(),
            LendingConfig(_env_file=None), lambda: self.today
        )
        self.quiet = self.members.create_member("1", "Quiet Member", "+254700000010", "b1")
        self.busy = self.members.create_member("2", "Busy Member", "+254700000011", "b1")

    def test_members_inactive_past_threshold_found(self):
        """90 days without activity is still fine, 91 is dormant"""
        self.members.touch_activity(self.busy.id, date(2024, 3, 1))

        assert self.members.find_dormant_members(date(2024, 3, 31)) == []

        dormant = self.members.find_dormant_members(date(2024, 4, 1))
        assert [m.id for m in dormant] == [self.quiet.id]

    def test_mark_dormant_members(self):
        changed = self.members.mark_dormant_members(date(2024, 6, 1), "system")

        assert {m.id for m in changed} == {self.quiet.id, self.busy.id}
        assert all(m.status == MemberStatus.DORMANT for m in changed)
        # Already dormant members are not picked up again
        assert self.members.mark_dormant_members(date(2024, 6, 2), "system") == []

"""
Member Management Module

Borrower identities: registration with a unique national ID, status
transitions (active, inactive, dormant, suspended) and activity tracking used
by the dormancy scan. Members are never deleted.
"""

from datetime import datetime, date, timezone, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid
import re

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent
from .config import LendingConfig, get_config
from .dates import TodayProvider, utc_today, parse_date, format_date
from .errors import ValidationError, NotFoundError, PolicyError
from .logging_config import get_logger, log_action


class MemberStatus(Enum):
    """Member account status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DORMANT = "dormant"        # No activity for the dormancy period
    SUSPENDED = "suspended"    # Blocked by staff


@dataclass
class Member(StorageRecord):
    """
    Borrower identity
    """
    national_id: str
    full_name: str
    phone_number: str
    branch_id: str
    group_id: Optional[str] = None
    assigned_officer_id: Optional[str] = None
    status: MemberStatus = MemberStatus.ACTIVE
    last_activity_date: Optional[date] = None
    created_by: Optional[str] = None

    def __post_init__(self):
        if not self.national_id or not self.national_id.strip():
            raise ValidationError("National ID is required")
        if not self.full_name or not self.full_name.strip():
            raise ValidationError("Full name is required")
        if not self.branch_id:
            raise ValidationError("Branch is required")
        if not self.phone_number or not re.match(r'^\+?[0-9 ()-]{7,20}$', self.phone_number):
            raise ValidationError(
                "A valid phone number is required",
                {"phone_number": self.phone_number}
            )

    @property
    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE

    def ensure_can_borrow(self) -> None:
        """Only active members may take a new loan"""
        if not self.is_active:
            raise PolicyError(
                f"Member {self.id} is {self.status.value} and cannot borrow",
                {"member_id": self.id, "status": self.status.value}
            )


class MemberManager:
    """
    Manages member registration, status changes and dormancy
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LendingConfig] = None,
        today: Optional[TodayProvider] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.today = today or utc_today
        self.table_name = "members"
        self.logger = get_logger("lending.members")

    def create_member(
        self,
        national_id: str,
        full_name: str,
        phone_number: str,
        branch_id: str,
        group_id: Optional[str] = None,
        assigned_officer_id: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Member:
        """
        Register a new member

        Args:
            national_id: National ID number, unique across members
            full_name: Member's full name
            phone_number: Contact phone
            branch_id: Home branch
            group_id: Optional lending group
            assigned_officer_id: Optional loan officer
            created_by: Acting staff user

        Returns:
            Created Member

        Raises:
            ValidationError: On missing fields or a duplicate national ID
        """
        now = datetime.now(timezone.utc)
        member = Member(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            national_id=national_id.strip() if national_id else national_id,
            full_name=full_name.strip() if full_name else full_name,
            phone_number=phone_number,
            branch_id=branch_id,
            group_id=group_id,
            assigned_officer_id=assigned_officer_id,
            last_activity_date=self.today(),
            created_by=created_by
        )

        with self.storage.atomic():
            with self.storage.lock("member_national_ids", member.national_id):
                if self.find_by_national_id(member.national_id):
                    raise ValidationError(
                        f"A member with national ID {member.national_id} already exists",
                        {"national_id": member.national_id}
                    )
                self._save_member(member)

        self.audit_trail.log_event(
            event_type=AuditEventType.MEMBER_CREATED,
            entity_type="member",
            entity_id=member.id,
            metadata={
                "national_id": member.national_id,
                "branch_id": member.branch_id,
                "group_id": member.group_id
            },
            user_id=created_by
        )
        self.dispatcher.emit(
            DomainEvent.MEMBER_CREATED, "member", member.id,
            {"branch_id": member.branch_id, "group_id": member.group_id}
        )
        log_action(
            self.logger, "info", "Member created",
            user_id=created_by, action="create_member", resource=f"member:{member.id}",
            extra={"branch_id": member.branch_id}
        )
        return member

    def get_member(self, member_id: str) -> Optional[Member]:
        """Get member by ID"""
        data = self.storage.load(self.table_name, member_id)
        return self._member_from_dict(data) if data else None

    def require_member(self, member_id: str) -> Member:
        """Get member by ID or raise NotFoundError"""
        member = self.get_member(member_id)
        if not member:
            raise NotFoundError(f"Member {member_id} not found", {"member_id": member_id})
        return member

    def find_by_national_id(self, national_id: str) -> Optional[Member]:
        rows = self.storage.find(self.table_name, {"national_id": national_id})
        return self._member_from_dict(rows[0]) if rows else None

    def list_members(
        self,
        branch_id: Optional[str] = None,
        status: Optional[MemberStatus] = None
    ) -> List[Member]:
        """List members, optionally filtered by branch and status"""
        filters: Dict[str, Any] = {}
        if branch_id:
            filters["branch_id"] = branch_id
        if status:
            filters["status"] = status.value
        members = [self._member_from_dict(row) for row in self.storage.find(self.table_name, filters)]
        members.sort(key=lambda m: m.created_at)
        return members

    def set_status(
        self,
        member_id: str,
        status: MemberStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Member:
        """
        Change a member's status

        Returns:
            Updated Member
        """
        with self.storage.atomic():
            with self.storage.lock(self.table_name, member_id):
                member = self.require_member(member_id)
                previous = member.status
                if previous == status:
                    return member
                member.status = status
                member.updated_at = datetime.now(timezone.utc)
                self._save_member(member)

        self._record_status_change(member, previous, actor_id, reason)
        return member

    def touch_activity(self, member_id: str, when: date) -> None:
        """
        Record borrower activity on ``when``.

        Runs inside the caller's transaction when there is one. Dates earlier
        than the stored one are ignored.
        """
        with self.storage.atomic():
            with self.storage.lock(self.table_name, member_id):
                member = self.require_member(member_id)
                if member.last_activity_date and member.last_activity_date >= when:
                    return
                member.last_activity_date = when
                member.updated_at = datetime.now(timezone.utc)
                self._save_member(member)

    def find_dormant_members(self, as_of: Optional[date] = None) -> List[Member]:
        """Active members with no activity for more than ``dormancy_days``"""
        as_of = as_of or self.today()
        cutoff = as_of - timedelta(days=self.config.dormancy_days)
        dormant = []
        for member in self.list_members(status=MemberStatus.ACTIVE):
            last_activity = member.last_activity_date or member.created_at.date()
            if last_activity < cutoff:
                dormant.append(member)
        return dormant

    def mark_dormant_members(
        self,
        as_of: Optional[date] = None,
        actor_id: Optional[str] = None
    ) -> List[Member]:
        """
        Move every member found by ``find_dormant_members`` to dormant

        Returns:
            Members whose status changed
        """
        changed = []
        for member in self.find_dormant_members(as_of):
            changed.append(
                self.set_status(member.id, MemberStatus.DORMANT, actor_id, reason="inactivity")
            )
        if changed:
            log_action(
                self.logger, "info", f"Marked {len(changed)} members dormant",
                user_id=actor_id, action="mark_dormant_members",
                extra={"member_ids": [m.id for m in changed]}
            )
        return changed

    def _record_status_change(
        self,
        member: Member,
        previous: MemberStatus,
        actor_id: Optional[str],
        reason: Optional[str]
    ) -> None:
        metadata = {
            "old_status": previous.value,
            "new_status": member.status.value,
            "reason": reason
        }
        self.audit_trail.log_event(
            event_type=AuditEventType.MEMBER_STATUS_CHANGED,
            entity_type="member",
            entity_id=member.id,
            metadata=metadata,
            user_id=actor_id
        )
        self.dispatcher.emit(DomainEvent.MEMBER_STATUS_CHANGED, "member", member.id, metadata)
        log_action(
            self.logger, "info", f"Member status changed to {member.status.value}",
            user_id=actor_id, action="set_member_status", resource=f"member:{member.id}",
            extra=metadata
        )

    def _save_member(self, member: Member) -> None:
        self.storage.save(self.table_name, member.id, self._member_to_dict(member))

    def _member_to_dict(self, member: Member) -> Dict:
        """Convert member to dictionary"""
        return {
            'id': member.id,
            'created_at': member.created_at.isoformat(),
            'updated_at': member.updated_at.isoformat(),
            'national_id': member.national_id,
            'full_name': member.full_name,
            'phone_number': member.phone_number,
            'branch_id': member.branch_id,
            'group_id': member.group_id,
            'assigned_officer_id': member.assigned_officer_id,
            'status': member.status.value,
            'last_activity_date': format_date(member.last_activity_date),
            'created_by': member.created_by
        }

    def _member_from_dict(self, data: Dict) -> Member:
        """Convert dictionary to member"""
        return Member(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            national_id=data['national_id'],
            full_name=data['full_name'],
            phone_number=data['phone_number'],
            branch_id=data['branch_id'],
            group_id=data.get('group_id'),
            assigned_officer_id=data.get('assigned_officer_id'),
            status=MemberStatus(data['status']),
            last_activity_date=parse_date(data.get('last_activity_date')),
            created_by=data.get('created_by')
        )

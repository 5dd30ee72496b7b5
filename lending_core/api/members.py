"""
Member endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import ActingUser, get_acting_user, get_engine
from .schemas import (
    CreateMemberRequest, UpdateMemberStatusRequest, DormancyScanRequest,
    member_response, loans_response, increment_response, parse_request_date
)
from ..engine import LendingEngine


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_member(
    request: CreateMemberRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Register a new member"""
    member = engine.create_member(
        national_id=request.national_id,
        full_name=request.full_name,
        phone_number=request.phone_number,
        branch_id=request.branch_id,
        group_id=request.group_id,
        assigned_officer_id=request.assigned_officer_id,
        acting_user_id=user.require_id()
    )
    return member_response(member)


@router.get("")
def list_members(
    branch_id: Optional[str] = None,
    engine: LendingEngine = Depends(get_engine)
):
    """List members, optionally for one branch"""
    members = engine.members.list_members(branch_id=branch_id)
    return {"members": [member_response(m) for m in members], "count": len(members)}


@router.post("/dormancy-scan")
def mark_dormant_members(
    request: DormancyScanRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Move members with no recent activity to dormant"""
    changed = engine.mark_dormant_members(
        acting_user_id=user.require_id(),
        as_of=parse_request_date(request.as_of, "as_of")
    )
    return {"members": [member_response(m) for m in changed], "count": len(changed)}


@router.get("/{member_id}")
def get_member(member_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get member details"""
    return member_response(engine.get_member(member_id))


@router.post("/{member_id}/status")
def update_member_status(
    member_id: str,
    request: UpdateMemberStatusRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Change a member's status"""
    member = engine.set_member_status(member_id, request.status, user.require_id(), request.reason)
    return member_response(member)


@router.get("/{member_id}/loans")
def get_member_loans(member_id: str, engine: LendingEngine = Depends(get_engine)):
    """All loans of a member"""
    engine.get_member(member_id)
    return loans_response(engine.get_member_loans(member_id))


@router.get("/{member_id}/next-increment")
def get_next_increment(member_id: str, engine: LendingEngine = Depends(get_engine)):
    """Level, amount and terms the member may borrow next"""
    return increment_response(engine.get_next_increment(member_id))

"""
Reporting endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .deps import ActingUser, get_acting_user, get_engine
from .schemas import loans_response, parse_request_date
from ..engine import LendingEngine
from ..overdue import ReportScope


router = APIRouter()


def _scope(user: ActingUser, engine: LendingEngine) -> ReportScope:
    return engine.scope_for(user.role, user.require_id(), user.branch_id)


@router.get("/overdue")
def get_overdue_report(
    mode: Optional[str] = None,
    as_of: Optional[str] = None,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Overdue loans visible to the requester, most days overdue first"""
    report = engine.get_overdue_report(_scope(user, engine), mode, parse_request_date(as_of, "as_of"))
    return {"loans": [view.to_dict() for view in report], "count": len(report)}


@router.get("/overdue/summary")
def get_overdue_summary(
    mode: Optional[str] = None,
    as_of: Optional[str] = None,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Overdue counts and amounts per risk tier"""
    return engine.get_overdue_summary(_scope(user, engine), mode, parse_request_date(as_of, "as_of"))


@router.get("/bad-debt")
def get_bad_debt_candidates(
    as_of: Optional[str] = None,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Loans meeting the bad debt definition"""
    loans = engine.get_bad_debt_candidates(_scope(user, engine), parse_request_date(as_of, "as_of"))
    return loans_response(loans)

"""
Change review API

Handles:
- Listing captured changes
- Approving (executes against the downstream API)
- Rejecting and deleting
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from ledgergate.api.deps import get_approvals
from ledgergate.core.models import ChangeStatus
from ledgergate.models.requests import ResolveRequest
from ledgergate.services.approval import ApprovalCoordinator
from ledgergate.services.auth import verify_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/changes", tags=["changes"], dependencies=[Depends(verify_api_key)])


@router.get("")
def list_changes(
    status: Optional[ChangeStatus] = Query(default=None),
    changeset_id: Optional[str] = Query(default=None, alias="changesetId"),
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    changes = approvals.list_changes(status=status, changeset_id=changeset_id)
    return {"changes": [c.to_dict() for c in changes], "total": len(changes)}


@router.get("/{change_id}")
def get_change(change_id: str, approvals: ApprovalCoordinator = Depends(get_approvals)):
    return approvals.get_change(change_id).to_dict()


@router.post("/{change_id}/approve")
def approve_change(
    change_id: str,
    request: Optional[ResolveRequest] = Body(default=None),
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    """
    Approve and execute a change.

    Execution failures come back as an error response; the change has already
    been recorded as rejected with the failure detail by then.
    """
    outcome = approvals.approve_change(change_id, resolved_by=request.resolved_by if request else None)
    return {
        "success": True,
        "message": "Change approved and executed",
        "changeId": change_id,
        "result": outcome.result,
    }


@router.post("/{change_id}/reject")
def reject_change(
    change_id: str,
    request: Optional[ResolveRequest] = Body(default=None),
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    request = request or ResolveRequest()
    change = approvals.reject_change(change_id, resolved_by=request.resolved_by, reason=request.reason)
    return {"success": True, "message": "Change rejected", "change": change.to_dict()}


@router.delete("/{change_id}")
def delete_change(change_id: str, approvals: ApprovalCoordinator = Depends(get_approvals)):
    approvals.delete_change(change_id)
    return {"success": True, "message": "Change deleted"}

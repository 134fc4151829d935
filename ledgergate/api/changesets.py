"""
Changeset review API

A changeset is approved or rejected as a unit. Approval executes members one
after another in capture order and reports per-member results.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from ledgergate.api.deps import get_approvals
from ledgergate.core.models import ChangeStatus
from ledgergate.models.requests import AddChangesRequest, CreateChangesetRequest, ResolveRequest
from ledgergate.services.approval import ApprovalCoordinator
from ledgergate.services.auth import verify_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/changesets", tags=["changesets"], dependencies=[Depends(verify_api_key)])


@router.get("")
def list_changesets(
    status: Optional[ChangeStatus] = Query(default=None),
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    changesets = approvals.list_changesets(status=status)
    return {"changesets": [cs.to_dict() for cs in changesets], "total": len(changesets)}


@router.post("", status_code=201)
def create_changeset(
    request: CreateChangesetRequest,
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    changeset = approvals.create_changeset(request.name, request.description)
    return {"success": True, "changeset": changeset.to_dict()}


@router.delete("")
def delete_changesets(
    status: Optional[ChangeStatus] = Query(default=None),
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    """Bulk delete; without a status filter every changeset goes."""
    deleted = approvals.delete_changesets(status)
    return {"success": True, "deleted": deleted}


@router.get("/{changeset_id}")
def get_changeset(changeset_id: str, approvals: ApprovalCoordinator = Depends(get_approvals)):
    changeset, changes, summary = approvals.get_changeset_details(changeset_id)
    return {
        **changeset.to_dict(),
        "changes": [c.to_dict() for c in changes],
        "summary": summary.to_dict(changeset.status),
    }


@router.delete("/{changeset_id}")
def delete_changeset(changeset_id: str, approvals: ApprovalCoordinator = Depends(get_approvals)):
    approvals.delete_changeset(changeset_id)
    return {"success": True, "message": "Changeset deleted"}


@router.post("/{changeset_id}/changes")
def add_changes(
    changeset_id: str,
    request: AddChangesRequest,
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    moved = approvals.add_changes(changeset_id, request.change_ids)
    return {"success": True, "changesetId": changeset_id, "moved": moved}


@router.post("/{changeset_id}/approve")
def approve_changeset(
    changeset_id: str,
    request: Optional[ResolveRequest] = Body(default=None),
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    result = approvals.approve_changeset(changeset_id, resolved_by=request.resolved_by if request else None)
    # Member failures are reported in the body; the request itself succeeded
    return result.to_dict()


@router.post("/{changeset_id}/reject")
def reject_changeset(
    changeset_id: str,
    request: Optional[ResolveRequest] = Body(default=None),
    approvals: ApprovalCoordinator = Depends(get_approvals),
):
    request = request or ResolveRequest()
    return approvals.reject_changeset(changeset_id, resolved_by=request.resolved_by, reason=request.reason)

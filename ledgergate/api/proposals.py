"""
Proposal and stats API

Automation front ends propose changes here instead of going through the
proxy. A proposal is captured exactly like a proxied write.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ledgergate.api.deps import get_approvals, get_capture
from ledgergate.models.requests import ProposeChangeRequest
from ledgergate.services.approval import ApprovalCoordinator
from ledgergate.services.auth import verify_api_key
from ledgergate.services.capture import CaptureInterceptor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["proposals"], dependencies=[Depends(verify_api_key)])


@router.post("/proposals")
def propose_change(
    request: ProposeChangeRequest,
    capture: CaptureInterceptor = Depends(get_capture),
):
    result = capture.propose(request)
    payload = result.to_dict()
    payload["message"] = "Change proposed and pending approval"
    return JSONResponse(status_code=202, content=payload)


@router.get("/stats")
def get_stats(approvals: ApprovalCoordinator = Depends(get_approvals)):
    return {"success": True, "stats": approvals.get_stats().to_dict()}

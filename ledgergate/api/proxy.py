"""
Accounting API proxy

Mutating requests are captured for review and answered with 202; nothing is
sent downstream until a reviewer approves. Reads are signed and forwarded.

Mounted under the configured path prefix (/proxy by default).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ledgergate.api.deps import get_capture, get_executor
from ledgergate.services.capture import CHANGESET_HEADER, CapturedRequest, CaptureInterceptor, is_write_operation
from ledgergate.services.errors import ValidationError
from ledgergate.services.executor import Executor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])


def _query_dict(request: Request) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for key, value in request.query_params.multi_items():
        if key in query:
            existing = query[key]
            query[key] = (existing if isinstance(existing, list) else [existing]) + [value]
        else:
            query[key] = value
    return query


async def _body_text(request: Request) -> Optional[str]:
    raw = await request.body()
    if not raw:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError("Request body must be UTF-8 encoded text") from None


@router.api_route("/{path:path}", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"])
async def proxy(
    path: str,
    request: Request,
    capture: CaptureInterceptor = Depends(get_capture),
    executor: Executor = Depends(get_executor),
):
    method = request.method.upper()
    query = _query_dict(request)

    if is_write_operation(method):
        captured = CapturedRequest(
            method=method,
            path=request.url.path,
            original_url=str(request.url),
            headers=dict(request.headers),
            body=await _body_text(request),
            query=query,
            changeset_ref=request.headers.get(CHANGESET_HEADER) or None,
        )
        result = await run_in_threadpool(capture.capture, captured)
        return JSONResponse(status_code=202, content=result.to_dict())

    logger.debug("Forwarding %s %s", method, request.url.path)
    data = await run_in_threadpool(executor.forward_read, method, request.url.path, query)
    return JSONResponse(content=data)

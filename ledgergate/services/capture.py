"""
Write capture.

Mutating requests (POST/PUT/PATCH/DELETE) are persisted as pending Changes
instead of being forwarded. Nothing here talks to the downstream API.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ledgergate.core.database import ChangeStore
from ledgergate.core.models import (
    WRITE_METHODS,
    Change,
    ChangeStatus,
    Changeset,
    new_id,
)
from ledgergate.models.journal_entries import JournalEntryPayload
from ledgergate.models.requests import ProposeChangeRequest
from ledgergate.services.errors import ConflictError, NotFoundError, ValidationError
from ledgergate.services.logging import log_change_event
from ledgergate.services.payload_transformer import EndpointFamily, family_for_path

CHANGESET_HEADER = "x-changeset-id"

# Meant for the gateway itself; never stored with a change
_GATEWAY_HEADERS = {"x-api-key", CHANGESET_HEADER, "cookie", "authorization"}


def is_write_operation(method: str) -> bool:
    return (method or "").upper() in WRITE_METHODS


def _pydantic_detail(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


@dataclass
class CapturedRequest:
    """What the routing layer hands over for a mutating request."""
    method: str
    path: str
    original_url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    query: Dict[str, Any] = field(default_factory=dict)
    changeset_ref: Optional[str] = None


@dataclass
class CaptureResult:
    change: Change
    changeset: Changeset
    created_changeset: bool
    review_url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": "Change captured and pending approval",
            "changeId": self.change.id,
            "changesetId": self.changeset.id,
            "status": ChangeStatus.PENDING.value,
            "reviewUrl": self.review_url,
        }


class CaptureInterceptor:
    def __init__(self, store: ChangeStore, review_path: str = "/review") -> None:
        self.store = store
        self.review_path = review_path.rstrip("/")

    def validate_body(self, path: str, body: Optional[str]) -> None:
        """Reject malformed bodies for endpoint families we know the shape of."""
        if body is None or family_for_path(path) != EndpointFamily.JOURNALS:
            return
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ValidationError("Journal body is not valid JSON", detail=exc.msg) from None
        if not isinstance(payload, dict):
            raise ValidationError("Journal body must be a JSON object")
        try:
            JournalEntryPayload.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError("Invalid journal entry payload", detail=_pydantic_detail(exc)) from None

    def capture(self, request: CapturedRequest) -> CaptureResult:
        if not is_write_operation(request.method):
            raise ValidationError(f"{request.method} is not a mutating request", field="method")
        self.validate_body(request.path, request.body)
        change = Change(
            id=new_id(),
            changeset_id="",
            method=request.method.upper(),
            path=request.path,
            original_url=request.original_url,
            headers={
                str(k): str(v)
                for k, v in request.headers.items()
                if str(k).lower() not in _GATEWAY_HEADERS
            },
            body=request.body,
            query=dict(request.query),
        )
        auto_changeset = None
        if not request.changeset_ref:
            now = datetime.now()
            auto_changeset = Changeset(
                id=new_id(),
                name=f"Change {now:%Y-%m-%d %H:%M:%S}",
                description="Auto-created changeset for single change",
            )
        return self._persist(change, request.changeset_ref, auto_changeset)

    def propose(self, proposal: Union[ProposeChangeRequest, Mapping[str, Any]]) -> CaptureResult:
        """Create a Change (and Changeset) for a change proposed without going through the proxy."""
        if not isinstance(proposal, ProposeChangeRequest):
            try:
                proposal = ProposeChangeRequest.model_validate(dict(proposal))
            except PydanticValidationError as exc:
                raise ValidationError("Invalid change proposal", detail=_pydantic_detail(exc)) from None

        payload = proposal.payload
        body = None if payload is None else json.dumps(payload)
        path = proposal.normalized_path
        self.validate_body(path, body)

        change = Change(
            id=new_id(),
            changeset_id="",
            method=proposal.method,
            path=path,
            original_url=proposal.endpoint,
            headers={"Content-Type": "application/json"},
            body=body,
            query=dict(proposal.query),
        )
        auto_changeset = None
        if not proposal.changeset_id:
            description = proposal.description
            if description:
                suffix = "..." if len(description) > 50 else ""
                name = f"Proposed: {description[:50]}{suffix}"
            else:
                name = f"Proposed {proposal.method} to {proposal.endpoint}"
            auto_changeset = Changeset(
                id=new_id(),
                name=name,
                description=description or f"Proposed {proposal.method} request to {proposal.endpoint}",
            )
        return self._persist(change, proposal.changeset_id, auto_changeset)

    def _persist(
        self,
        change: Change,
        changeset_ref: Optional[str],
        auto_changeset: Optional[Changeset],
    ) -> CaptureResult:
        if auto_changeset is not None:
            change.changeset_id = auto_changeset.id
            self.store.create_change(change, new_changeset=auto_changeset)
            changeset = auto_changeset
        else:
            change.changeset_id = changeset_ref
            if not self.store.create_change(change):
                existing = self.store.get_changeset(changeset_ref)
                if existing is None:
                    raise NotFoundError("Changeset", changeset_ref)
                if existing.status == ChangeStatus.PENDING:
                    detail = "Changeset is being resolved"
                else:
                    detail = f"Changeset is already {existing.status.value}"
                raise ConflictError("Changeset", changeset_ref, detail)
            changeset = self.store.get_changeset(changeset_ref)

        log_change_event(
            "captured",
            change_id=change.id,
            changeset_id=changeset.id,
            method=change.method,
            path=change.path,
            new_changeset=auto_changeset is not None,
        )
        return CaptureResult(
            change=change,
            changeset=changeset,
            created_changeset=auto_changeset is not None,
            review_url=f"{self.review_path}/{change.id}",
        )

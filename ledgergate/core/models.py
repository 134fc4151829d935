"""
Ledgergate Core Data Models

Changesets and Changes as stored by the ChangeStore and handed between the
capture, approval and execution components. The wire form (to_dict) uses the
camelCase keys the review UI consumes.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ChangeStatus(str, Enum):
    """Lifecycle status shared by Changes and Changesets."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


WRITE_METHODS = ("POST", "PATCH", "PUT", "DELETE")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default


@dataclass
class Changeset:
    """A named group of Changes resolved together."""
    id: str
    name: str
    description: Optional[str] = None
    status: ChangeStatus = ChangeStatus.PENDING
    created_at: str = field(default_factory=utcnow_iso)
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None
    changes_count: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Changeset":
        count = row.get("changes_count")
        return cls(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            status=ChangeStatus(row["status"]),
            created_at=row["created_at"],
            resolved_at=row.get("resolved_at"),
            resolved_by=row.get("resolved_by"),
            changes_count=int(count) if count is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "createdAt": self.created_at,
            "resolvedAt": self.resolved_at,
            "resolvedBy": self.resolved_by,
        }
        if self.changes_count is not None:
            data["changesCount"] = self.changes_count
        return data


@dataclass
class Change:
    """One captured mutating request."""
    id: str
    changeset_id: str
    method: str
    path: str
    original_url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    query: Dict[str, Any] = field(default_factory=dict)
    status: ChangeStatus = ChangeStatus.PENDING
    created_at: str = field(default_factory=utcnow_iso)
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None
    response: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Change":
        return cls(
            id=row["id"],
            changeset_id=row["changeset_id"],
            method=row["method"],
            path=row["path"],
            original_url=row["original_url"],
            headers=_load_json(row.get("headers"), {}),
            body=row.get("body"),
            query=_load_json(row.get("query"), {}),
            status=ChangeStatus(row["status"]),
            created_at=row["created_at"],
            resolved_at=row.get("resolved_at"),
            resolved_by=row.get("resolved_by"),
            response=row.get("response"),
            error=row.get("error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "changesetId": self.changeset_id,
            "method": self.method,
            "path": self.path,
            "originalUrl": self.original_url,
            "headers": self.headers,
            "body": self.body,
            "query": self.query,
            "status": self.status.value,
            "createdAt": self.created_at,
            "resolvedAt": self.resolved_at,
            "resolvedBy": self.resolved_by,
            "response": self.response,
            "error": self.error,
        }


@dataclass
class ChangesetSummary:
    """
    Member-level view of a changeset.

    A rejected changeset may still contain executed (approved) members when a
    later member failed during changeset approval; partially_executed flags it.
    """
    pending: int = 0
    approved: int = 0
    rejected: int = 0

    @classmethod
    def of(cls, changes: List[Change]) -> "ChangesetSummary":
        summary = cls()
        for change in changes:
            if change.status == ChangeStatus.APPROVED:
                summary.approved += 1
            elif change.status == ChangeStatus.REJECTED:
                summary.rejected += 1
            else:
                summary.pending += 1
        return summary

    @property
    def total(self) -> int:
        return self.pending + self.approved + self.rejected

    def to_dict(self, changeset_status: ChangeStatus) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "approved": self.approved,
            "rejected": self.rejected,
            "partiallyExecuted": changeset_status == ChangeStatus.REJECTED and self.approved > 0,
        }


@dataclass
class ChangeOutcome:
    """Result of resolving one Change during an approval pass."""
    change_id: str
    status: ChangeStatus
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    downstream_status: Optional[int] = None
    skipped: bool = False

    @property
    def executed(self) -> bool:
        return self.status == ChangeStatus.APPROVED

    @property
    def failed(self) -> bool:
        return not self.skipped and self.status == ChangeStatus.REJECTED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "changeId": self.change_id,
            "status": self.status.value,
            "success": self.executed,
        }
        if self.skipped:
            data["skipped"] = True
        if self.error:
            data["error"] = self.error
            data["kind"] = self.error_kind
        if self.downstream_status is not None:
            data["downstreamStatus"] = self.downstream_status
        return data


@dataclass
class ChangesetApprovalResult:
    """
    Per-item outcomes of a changeset approval plus the derived aggregate.

    status is APPROVED only when no member failed in this pass. Members that
    executed before a failure stay approved, so a REJECTED result can still
    have executed_count > 0. PENDING means a member was held by another
    approver and the changeset was left open.
    """
    changeset_id: str
    status: ChangeStatus
    outcomes: List[ChangeOutcome] = field(default_factory=list)

    @property
    def executed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.executed)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    @property
    def partially_executed(self) -> bool:
        return self.status == ChangeStatus.REJECTED and self.executed_count > 0

    @property
    def success(self) -> bool:
        return self.failed_count == 0

    def to_dict(self) -> Dict[str, Any]:
        if self.status == ChangeStatus.PENDING:
            message = "Some changes are still being executed by another approval"
        elif self.success:
            message = "All changes approved and executed"
        elif self.partially_executed:
            message = "Some changes failed; earlier changes were already executed"
        else:
            message = "Some changes failed"
        return {
            "success": self.success,
            "message": message,
            "changesetId": self.changeset_id,
            "status": self.status.value,
            "executedCount": self.executed_count,
            "failedCount": self.failed_count,
            "skippedCount": self.skipped_count,
            "partiallyExecuted": self.partially_executed,
            "results": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class StatusCounts:
    pending: int = 0
    approved: int = 0
    rejected: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.approved + self.rejected

    def to_dict(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "approved": self.approved,
            "rejected": self.rejected,
            "total": self.total,
        }


@dataclass
class GatewayStats:
    changes: StatusCounts = field(default_factory=StatusCounts)
    changesets: StatusCounts = field(default_factory=StatusCounts)

    def to_dict(self) -> Dict[str, Any]:
        return {**self.changes.to_dict(), "changesets": self.changesets.to_dict()}

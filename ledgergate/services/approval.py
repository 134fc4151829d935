"""
Approval coordination.

State machine per Change:

    pending --approve--> approved   (execution succeeded, response stored)
    pending --approve--> rejected   (transform/downstream failure, error stored)
    pending --reject---> rejected   (human decision, nothing executed)

Execution is guarded by a claim taken with a single conditional UPDATE, so
two concurrent approvals of one Change produce exactly one downstream call.
The claim is held across the outbound call; no store transaction is.

Changeset approval walks pending members in creation order, one at a time.
The changeset ends approved only if nothing failed in that pass. Members that
executed before a failure stay approved, so a rejected changeset may have
been partially applied downstream; ChangesetApprovalResult.partially_executed
reports that case. A member still held by another approver leaves the
changeset pending; it settles once that member resolves.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ledgergate.core.database import ChangeStore
from ledgergate.core.models import (
    Change,
    ChangeOutcome,
    ChangesetApprovalResult,
    ChangesetSummary,
    ChangeStatus,
    Changeset,
    GatewayStats,
    new_id,
)
from ledgergate.services.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    TransformError,
    UpstreamError,
    ValidationError,
)
from ledgergate.services.executor import Executor
from ledgergate.services.logging import log_change_event, log_error

logger = logging.getLogger(__name__)

DEFAULT_RESOLVER = "system"
DEFAULT_CHANGESET_REJECT_REASON = "Changeset rejected"


class ApprovalCoordinator:
    def __init__(self, store: ChangeStore, executor: Executor) -> None:
        self.store = store
        self.executor = executor

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_change(self, change_id: str) -> Change:
        change = self.store.get_change(change_id)
        if change is None:
            raise NotFoundError("Change", change_id)
        return change

    def list_changes(
        self,
        status: Optional[ChangeStatus] = None,
        changeset_id: Optional[str] = None,
    ) -> List[Change]:
        return self.store.list_changes(status=status, changeset_id=changeset_id)

    def list_changesets(self, status: Optional[ChangeStatus] = None) -> List[Changeset]:
        return self.store.list_changesets(status=status)

    def get_changeset_details(self, changeset_id: str) -> Tuple[Changeset, List[Change], ChangesetSummary]:
        found = self.store.get_changeset_with_changes(changeset_id)
        if found is None:
            raise NotFoundError("Changeset", changeset_id)
        changeset, changes = found
        return changeset, changes, ChangesetSummary.of(changes)

    def get_stats(self) -> GatewayStats:
        return self.store.get_stats()

    # ------------------------------------------------------------------
    # Single change
    # ------------------------------------------------------------------

    def _pending_change(self, change_id: str) -> Change:
        change = self.get_change(change_id)
        if change.status != ChangeStatus.PENDING:
            raise ConflictError("Change", change_id, f"Change is already {change.status.value}")
        return change

    def _change_conflict(self, change_id: str) -> GatewayError:
        current = self.store.get_change(change_id)
        if current is None:
            return NotFoundError("Change", change_id)
        if current.status != ChangeStatus.PENDING:
            return ConflictError("Change", change_id, f"Change is already {current.status.value}")
        return ConflictError("Change", change_id, "Change is already being executed")

    def _execute_claimed(
        self,
        change: Change,
        claim_token: str,
        resolved_by: str,
    ) -> Tuple[ChangeOutcome, Optional[GatewayError]]:
        """Run a claimed change and record the terminal status."""
        try:
            result = self.executor.execute(change)
        except (TransformError, UpstreamError) as exc:
            error = exc.describe()
            recorded = self.store.resolve_change(
                change.id,
                ChangeStatus.REJECTED,
                resolved_by,
                error=error,
                claim_token=claim_token,
            )
            if not recorded:
                log_error("resolve_lost", "Failed change could not be recorded", {"change_id": change.id})
            log_change_event(
                "execution_failed",
                change_id=change.id,
                changeset_id=change.changeset_id,
                kind=exc.code.value,
                downstream_status=getattr(exc, "downstream_status", None),
            )
            outcome = ChangeOutcome(
                change_id=change.id,
                status=ChangeStatus.REJECTED,
                error=error,
                error_kind=exc.code.value,
                downstream_status=getattr(exc, "downstream_status", None),
            )
            return outcome, exc
        except Exception:
            self.store.release_change_claim(change.id, claim_token)
            raise

        recorded = self.store.resolve_change(
            change.id,
            ChangeStatus.APPROVED,
            resolved_by,
            response=json.dumps(result),
            claim_token=claim_token,
        )
        if not recorded:
            # Executed downstream but the row vanished (deleted mid-flight)
            log_error("resolve_lost", "Executed change could not be recorded", {"change_id": change.id})
        log_change_event("executed", change_id=change.id, changeset_id=change.changeset_id)
        return ChangeOutcome(change_id=change.id, status=ChangeStatus.APPROVED, result=result), None

    def _settle(self, changeset_id: str, resolved_by: str) -> Optional[ChangeStatus]:
        status = self.store.settle_changeset(changeset_id, resolved_by)
        if status is not None:
            log_change_event("changeset_settled", changeset_id=changeset_id, status=status.value)
        return status

    def approve_change(self, change_id: str, resolved_by: Optional[str] = None) -> ChangeOutcome:
        """
        Execute a pending change and record the outcome.

        Raises the TransformError/UpstreamError after the change has been
        recorded as rejected, so the caller learns execution failed.
        """
        resolved_by = resolved_by or DEFAULT_RESOLVER
        change = self._pending_change(change_id)
        self.executor.ensure_configured()

        claim_token = self.store.claim_change(change_id)
        if claim_token is None:
            raise self._change_conflict(change_id)
        log_change_event("claimed", change_id=change_id, changeset_id=change.changeset_id)

        outcome, failure = self._execute_claimed(change, claim_token, resolved_by)
        self._settle(change.changeset_id, resolved_by)
        if failure is not None:
            raise failure
        return outcome

    def reject_change(
        self,
        change_id: str,
        resolved_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Change:
        resolved_by = resolved_by or DEFAULT_RESOLVER
        change = self._pending_change(change_id)
        if not self.store.resolve_change(change_id, ChangeStatus.REJECTED, resolved_by, error=reason):
            raise self._change_conflict(change_id)
        log_change_event("rejected", change_id=change_id, changeset_id=change.changeset_id, reason=reason)
        self._settle(change.changeset_id, resolved_by)
        return self.get_change(change_id)

    def delete_change(self, change_id: str) -> None:
        if not self.store.delete_change(change_id):
            raise NotFoundError("Change", change_id)
        log_change_event("deleted", change_id=change_id)

    # ------------------------------------------------------------------
    # Changesets
    # ------------------------------------------------------------------

    def create_changeset(self, name: str, description: Optional[str] = None) -> Changeset:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Changeset name is required", field="name")
        description = description.strip() if description else None
        changeset = self.store.create_changeset(
            Changeset(id=new_id(), name=name, description=description or None)
        )
        log_change_event("changeset_created", changeset_id=changeset.id)
        return changeset

    def _claim_pending_changeset(self, changeset_id: str) -> str:
        changeset = self.store.get_changeset(changeset_id)
        if changeset is None:
            raise NotFoundError("Changeset", changeset_id)
        if changeset.status != ChangeStatus.PENDING:
            raise ConflictError("Changeset", changeset_id, f"Changeset is already {changeset.status.value}")
        claim_token = self.store.claim_changeset(changeset_id)
        if claim_token is None:
            current = self.store.get_changeset(changeset_id)
            if current is None:
                raise NotFoundError("Changeset", changeset_id)
            if current.status != ChangeStatus.PENDING:
                raise ConflictError("Changeset", changeset_id, f"Changeset is already {current.status.value}")
            raise ConflictError("Changeset", changeset_id, "Changeset is already being resolved")
        return claim_token

    def _members(self, changeset_id: str) -> List[Change]:
        found = self.store.get_changeset_with_changes(changeset_id)
        return found[1] if found else []

    def approve_changeset(self, changeset_id: str, resolved_by: Optional[str] = None) -> ChangesetApprovalResult:
        resolved_by = resolved_by or DEFAULT_RESOLVER
        if self.store.get_changeset(changeset_id) is None:
            raise NotFoundError("Changeset", changeset_id)
        self.executor.ensure_configured()
        claim_token = self._claim_pending_changeset(changeset_id)

        try:
            outcomes: List[ChangeOutcome] = []
            # Membership is frozen while the changeset is claimed
            for change in self._members(changeset_id):
                if change.status != ChangeStatus.PENDING:
                    continue
                change_token = self.store.claim_change(change.id)
                if change_token is None:
                    current = self.store.get_change(change.id)
                    if current is not None:
                        outcomes.append(ChangeOutcome(change_id=change.id, status=current.status, skipped=True))
                    continue
                outcome, _ = self._execute_claimed(change, change_token, resolved_by)
                outcomes.append(outcome)

            result = ChangesetApprovalResult(changeset_id=changeset_id, status=ChangeStatus.APPROVED, outcomes=outcomes)
            in_flight = any(o.skipped and o.status == ChangeStatus.PENDING for o in outcomes)
            if in_flight:
                # Another approver still holds a member; whoever finishes last settles the changeset
                result.status = ChangeStatus.PENDING
                self.store.release_changeset_claim(changeset_id, claim_token)
            else:
                if not result.success:
                    result.status = ChangeStatus.REJECTED
                self.store.resolve_changeset(changeset_id, result.status, resolved_by, claim_token=claim_token)
        except Exception:
            self.store.release_changeset_claim(changeset_id, claim_token)
            raise

        if in_flight:
            result.status = self._settle(changeset_id, resolved_by) or ChangeStatus.PENDING

        log_change_event(
            "changeset_resolved",
            changeset_id=changeset_id,
            status=result.status.value,
            executed=result.executed_count,
            failed=result.failed_count,
            partially_executed=result.partially_executed,
        )
        if result.partially_executed:
            logger.warning(
                "Changeset %s rejected after %d of its changes were executed downstream",
                changeset_id,
                result.executed_count,
            )
        return result

    def reject_changeset(
        self,
        changeset_id: str,
        resolved_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        resolved_by = resolved_by or DEFAULT_RESOLVER
        reason = reason or DEFAULT_CHANGESET_REJECT_REASON
        claim_token = self._claim_pending_changeset(changeset_id)

        try:
            rejected: List[str] = []
            in_flight: List[str] = []
            for change in self._members(changeset_id):
                if change.status != ChangeStatus.PENDING:
                    continue
                if self.store.resolve_change(change.id, ChangeStatus.REJECTED, resolved_by, error=reason):
                    rejected.append(change.id)
                    continue
                current = self.store.get_change(change.id)
                if current is not None and current.status == ChangeStatus.PENDING:
                    in_flight.append(change.id)
            if in_flight:
                # Held members finish on their own; the last decision settles the changeset
                self.store.release_changeset_claim(changeset_id, claim_token)
            else:
                self.store.resolve_changeset(changeset_id, ChangeStatus.REJECTED, resolved_by, claim_token=claim_token)
        except Exception:
            self.store.release_changeset_claim(changeset_id, claim_token)
            raise

        status = ChangeStatus.REJECTED
        message = "Changeset rejected"
        if in_flight:
            status = self._settle(changeset_id, resolved_by) or ChangeStatus.PENDING
            if status == ChangeStatus.PENDING:
                message = "Changeset stays pending until changes being executed finish"
            else:
                message = f"Changeset {status.value}"

        log_change_event(
            "changeset_rejected",
            changeset_id=changeset_id,
            rejected=len(rejected),
            in_flight=len(in_flight),
            reason=reason,
        )
        return {
            "success": True,
            "message": message,
            "changesetId": changeset_id,
            "status": status.value,
            "rejectedChangeIds": rejected,
            "skippedChangeIds": in_flight,
        }

    def add_changes(self, changeset_id: str, change_ids: Iterable[str]) -> int:
        """Move pending changes into a pending changeset."""
        ids = [cid for cid in dict.fromkeys(change_ids) if cid]
        if not ids:
            raise ValidationError("changeIds array is required", field="changeIds")
        changeset = self.store.get_changeset(changeset_id)
        if changeset is None:
            raise NotFoundError("Changeset", changeset_id)
        if changeset.status != ChangeStatus.PENDING:
            raise ConflictError("Changeset", changeset_id, "Cannot add changes to a non-pending changeset")
        for change_id in ids:
            self._pending_change(change_id)

        moved = self.store.move_changes(ids, changeset_id)
        if moved != len(ids):
            logger.warning("Moved %d of %d changes into changeset %s", moved, len(ids), changeset_id)
        log_change_event("changes_moved", changeset_id=changeset_id, moved=moved)
        return moved

    def delete_changeset(self, changeset_id: str) -> None:
        if not self.store.delete_changeset(changeset_id):
            raise NotFoundError("Changeset", changeset_id)
        log_change_event("changeset_deleted", changeset_id=changeset_id)

    def delete_changesets(self, status: Optional[ChangeStatus] = None) -> int:
        deleted = self.store.delete_changesets(status)
        log_change_event("changesets_deleted", status=status.value if status else "all", deleted=deleted)
        return deleted

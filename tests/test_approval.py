import json
import sqlite3
import sys
import threading
import time
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from ledgergate.core.config import ApiCredentials
from ledgergate.core.database import ChangeStore
from ledgergate.core.models import ChangeStatus, ChangesetSummary
from ledgergate.services.approval import ApprovalCoordinator
from ledgergate.services.capture import CapturedRequest, CaptureInterceptor
from ledgergate.services.errors import (
    ConfigurationError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    TransformError,
    UpstreamError,
    ValidationError,
)
from ledgergate.services.executor import Executor
from ledgergate.services.payload_transformer import PayloadTransformer
from ledgergate.services.signing import SigningService

CREDENTIALS = ApiCredentials(
    api_key_id="key-id",
    api_key_public="public-key",
    api_key_password="s3cret",
    base_url="https://api.test/v1",
)


class Downstream:
    """Fake accounting API: fails for paths in `failing`, times out for `stalled`, echoes an id otherwise."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.failing = set()
        self.stalled = set()
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.calls.append((request.method, request.url.path))
            number = len(self.calls)
        if self.delay:
            time.sleep(self.delay)
        if request.url.path in self.stalled:
            raise httpx.ReadTimeout("no response", request=request)
        if request.url.path in self.failing:
            return httpx.Response(400, json={"error": "Account is closed"})
        return httpx.Response(200, json={"id": number})


class Env:
    def __init__(self, tmp_path, delay=0.0):
        self.downstream = Downstream(delay=delay)
        self.credentials = CREDENTIALS
        self.store = ChangeStore(str(tmp_path / "approval.db"))
        self.executor = Executor(
            signer=SigningService(),
            transformer=PayloadTransformer(),
            credentials_provider=lambda: self.credentials,
            client=httpx.Client(transport=httpx.MockTransport(self.downstream)),
        )
        self.capture = CaptureInterceptor(self.store)
        self.approvals = ApprovalCoordinator(self.store, self.executor)

    def capture_write(self, path="/proxy/v1/journals", body=None, changeset_id=None, method="POST"):
        if body is None:
            body = json.dumps({
                "description": "Office supplies",
                "transactions": [{"debit_account": "5140", "credit_account": "1020", "amount": "125.50"}],
            })
        return self.capture.capture(CapturedRequest(
            method=method,
            path=path,
            original_url=f"http://gateway.local{path}",
            body=body,
            changeset_ref=changeset_id,
        ))


@pytest.fixture()
def env(tmp_path):
    return Env(tmp_path)


def test_services_package_exposes_the_pipeline():
    import ledgergate.services as services

    assert services.ApprovalCoordinator is ApprovalCoordinator
    assert services.Executor is Executor
    with pytest.raises(AttributeError):
        services.NoSuchService


def test_approve_executes_and_records_response(env):
    captured = env.capture_write()

    outcome = env.approvals.approve_change(captured.change.id, resolved_by="alice")

    assert outcome.status == ChangeStatus.APPROVED
    assert outcome.result == {"id": 1}
    assert env.downstream.calls == [("POST", "/v1/journals")]

    change = env.store.get_change(captured.change.id)
    assert change.status == ChangeStatus.APPROVED
    assert json.loads(change.response) == {"id": 1}
    assert change.error is None
    assert change.resolved_by == "alice"

    # Single-change changeset settles with its only member
    changeset = env.store.get_changeset(captured.changeset.id)
    assert changeset.status == ChangeStatus.APPROVED


def test_default_resolver_is_system(env):
    captured = env.capture_write()
    env.approvals.approve_change(captured.change.id)
    assert env.store.get_change(captured.change.id).resolved_by == "system"


def test_second_approval_conflicts_without_side_effects(env):
    captured = env.capture_write()
    env.approvals.approve_change(captured.change.id)
    before = env.store.get_change(captured.change.id).to_dict()

    with pytest.raises(ConflictError) as exc_info:
        env.approvals.approve_change(captured.change.id)

    assert exc_info.value.detail == "Change is already approved"
    assert env.store.get_change(captured.change.id).to_dict() == before
    assert len(env.downstream.calls) == 1


def test_reject_after_approve_conflicts(env):
    captured = env.capture_write()
    env.approvals.approve_change(captured.change.id)

    with pytest.raises(ConflictError):
        env.approvals.reject_change(captured.change.id, reason="too late")
    assert env.store.get_change(captured.change.id).status == ChangeStatus.APPROVED


def test_unknown_change_is_not_found(env):
    with pytest.raises(NotFoundError):
        env.approvals.approve_change("nope")
    with pytest.raises(NotFoundError):
        env.approvals.reject_change("nope")
    with pytest.raises(NotFoundError):
        env.approvals.delete_change("nope")


def test_downstream_failure_rejects_the_change(env):
    captured = env.capture_write()
    env.downstream.failing.add("/v1/journals")

    with pytest.raises(UpstreamError) as exc_info:
        env.approvals.approve_change(captured.change.id)

    assert exc_info.value.downstream_status == 400
    change = env.store.get_change(captured.change.id)
    assert change.status == ChangeStatus.REJECTED
    assert change.response is None
    assert "Account is closed" in change.error
    assert env.store.get_changeset(captured.changeset.id).status == ChangeStatus.REJECTED


def test_downstream_timeout_rejects_and_clears_the_claim(env):
    captured = env.capture_write()
    env.downstream.stalled.add("/v1/journals")

    with pytest.raises(UpstreamError) as exc_info:
        env.approvals.approve_change(captured.change.id)

    assert exc_info.value.code == ErrorCode.UPSTREAM_TIMEOUT
    change = env.store.get_change(captured.change.id)
    assert change.status == ChangeStatus.REJECTED
    assert "timed out" in change.error
    assert env.store.get_changeset(captured.changeset.id).status == ChangeStatus.REJECTED

    conn = sqlite3.connect(env.store.db_path)
    try:
        row = conn.execute(
            "SELECT claim_token, claimed_at FROM pending_changes WHERE id = ?", (captured.change.id,)
        ).fetchone()
    finally:
        conn.close()
    assert row == (None, None)


def test_transform_failure_rejects_without_calling_downstream(env):
    body = json.dumps({"description": "x", "transactions": [{"debit_account": "5140", "amount": "lots"}]})
    captured = env.capture_write(body=body)

    with pytest.raises(TransformError):
        env.approvals.approve_change(captured.change.id)

    change = env.store.get_change(captured.change.id)
    assert change.status == ChangeStatus.REJECTED
    assert "must be numeric" in change.error
    assert env.downstream.calls == []


def test_missing_credentials_leave_change_untouched(env):
    captured = env.capture_write()
    env.credentials = ApiCredentials()

    with pytest.raises(ConfigurationError):
        env.approvals.approve_change(captured.change.id)

    change = env.store.get_change(captured.change.id)
    assert change.status == ChangeStatus.PENDING
    assert change.resolved_at is None
    # No claim left behind
    assert env.store.claim_change(captured.change.id) is not None


def test_unexpected_error_releases_the_claim(env, monkeypatch):
    captured = env.capture_write()

    def _explode(change):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(env.executor, "execute", _explode)

    with pytest.raises(RuntimeError):
        env.approvals.approve_change(captured.change.id)

    assert env.store.get_change(captured.change.id).status == ChangeStatus.PENDING
    monkeypatch.undo()
    env.approvals.approve_change(captured.change.id)
    assert env.store.get_change(captured.change.id).status == ChangeStatus.APPROVED


def test_reject_change_records_reason(env):
    captured = env.capture_write()

    change = env.approvals.reject_change(captured.change.id, resolved_by="bob", reason="Wrong account")

    assert change.status == ChangeStatus.REJECTED
    assert change.error == "Wrong account"
    assert change.resolved_by == "bob"
    assert env.downstream.calls == []
    assert env.store.get_changeset(captured.changeset.id).status == ChangeStatus.REJECTED


def test_changeset_settles_only_when_last_member_resolves(env):
    changeset = env.approvals.create_changeset("Month end")
    first = env.capture_write(changeset_id=changeset.id)
    second = env.capture_write(changeset_id=changeset.id)

    env.approvals.approve_change(first.change.id)
    assert env.store.get_changeset(changeset.id).status == ChangeStatus.PENDING

    env.approvals.approve_change(second.change.id)
    assert env.store.get_changeset(changeset.id).status == ChangeStatus.APPROVED


def test_changeset_approval_reports_partial_execution(env):
    changeset = env.approvals.create_changeset("Three journals")
    first = env.capture_write(path="/proxy/v1/journals", changeset_id=changeset.id)
    second = env.capture_write(path="/proxy/v1/journals/broken", changeset_id=changeset.id)
    third = env.capture_write(path="/proxy/v1/journals/last", changeset_id=changeset.id)
    env.downstream.failing.add("/v1/journals/broken")

    result = env.approvals.approve_changeset(changeset.id, resolved_by="carol")

    assert [o.change_id for o in result.outcomes] == [first.change.id, second.change.id, third.change.id]
    assert [o.status for o in result.outcomes] == [
        ChangeStatus.APPROVED,
        ChangeStatus.REJECTED,
        ChangeStatus.APPROVED,
    ]
    assert result.status == ChangeStatus.REJECTED
    assert result.executed_count == 2
    assert result.failed_count == 1
    assert result.partially_executed is True
    assert result.success is False
    assert [path for _, path in env.downstream.calls] == [
        "/v1/journals",
        "/v1/journals/broken",
        "/v1/journals/last",
    ]

    payload = result.to_dict()
    assert payload["partiallyExecuted"] is True
    assert payload["results"][1]["downstreamStatus"] == 400

    stored, members, summary = env.approvals.get_changeset_details(changeset.id)
    assert stored.status == ChangeStatus.REJECTED
    assert stored.resolved_by == "carol"
    assert [m.status for m in members] == [o.status for o in result.outcomes]
    assert summary.to_dict(stored.status) == {
        "total": 3,
        "pending": 0,
        "approved": 2,
        "rejected": 1,
        "partiallyExecuted": True,
    }


def test_changeset_approval_all_succeed(env):
    changeset = env.approvals.create_changeset("Clean batch")
    env.capture_write(changeset_id=changeset.id)
    env.capture_write(changeset_id=changeset.id)

    result = env.approvals.approve_changeset(changeset.id)

    assert result.status == ChangeStatus.APPROVED
    assert result.executed_count == 2
    assert result.partially_executed is False
    assert env.store.get_changeset(changeset.id).status == ChangeStatus.APPROVED


def test_changeset_approval_skips_already_resolved_members(env):
    changeset = env.approvals.create_changeset("Mixed")
    rejected = env.capture_write(changeset_id=changeset.id)
    pending = env.capture_write(changeset_id=changeset.id)
    env.approvals.reject_change(rejected.change.id, reason="no")

    result = env.approvals.approve_changeset(changeset.id)

    assert [o.change_id for o in result.outcomes] == [pending.change.id]
    assert result.status == ChangeStatus.APPROVED
    assert len(env.downstream.calls) == 1
    assert env.store.get_change(rejected.change.id).status == ChangeStatus.REJECTED


def test_changeset_approval_skips_members_claimed_elsewhere(env):
    changeset = env.approvals.create_changeset("Racing")
    busy = env.capture_write(changeset_id=changeset.id)
    free = env.capture_write(changeset_id=changeset.id)
    token = env.store.claim_change(busy.change.id)

    result = env.approvals.approve_changeset(changeset.id)

    skipped = [o for o in result.outcomes if o.skipped]
    assert [o.change_id for o in skipped] == [busy.change.id]
    assert result.skipped_count == 1
    assert result.failed_count == 0
    assert env.store.get_change(free.change.id).status == ChangeStatus.APPROVED
    # Left open until the held member resolves
    assert result.status == ChangeStatus.PENDING
    assert env.store.get_changeset(changeset.id).status == ChangeStatus.PENDING

    env.store.resolve_change(busy.change.id, ChangeStatus.APPROVED, "other", response="{}", claim_token=token)
    assert env.store.settle_changeset(changeset.id, "other") == ChangeStatus.APPROVED


def test_resolved_changeset_cannot_be_resolved_again(env):
    changeset = env.approvals.create_changeset("Once")
    env.capture_write(changeset_id=changeset.id)
    env.approvals.approve_changeset(changeset.id)

    with pytest.raises(ConflictError, match="cannot be modified"):
        env.approvals.approve_changeset(changeset.id)
    with pytest.raises(ConflictError):
        env.approvals.reject_changeset(changeset.id)
    assert len(env.downstream.calls) == 1


def test_changeset_approval_without_credentials_changes_nothing(env):
    changeset = env.approvals.create_changeset("No creds")
    captured = env.capture_write(changeset_id=changeset.id)
    env.credentials = ApiCredentials()

    with pytest.raises(ConfigurationError):
        env.approvals.approve_changeset(changeset.id)

    assert env.store.get_change(captured.change.id).status == ChangeStatus.PENDING
    assert env.store.claim_changeset(changeset.id) is not None


def test_unknown_changeset(env):
    with pytest.raises(NotFoundError):
        env.approvals.approve_changeset("missing")
    with pytest.raises(NotFoundError):
        env.approvals.reject_changeset("missing")
    with pytest.raises(NotFoundError):
        env.approvals.get_changeset_details("missing")
    with pytest.raises(NotFoundError):
        env.approvals.delete_changeset("missing")


def test_reject_changeset_rejects_pending_members(env):
    changeset = env.approvals.create_changeset("Reject all")
    done = env.capture_write(changeset_id=changeset.id)
    first = env.capture_write(changeset_id=changeset.id)
    second = env.capture_write(changeset_id=changeset.id)
    env.approvals.approve_change(done.change.id)

    response = env.approvals.reject_changeset(changeset.id, resolved_by="dave")

    assert response["rejectedChangeIds"] == [first.change.id, second.change.id]
    for captured in (first, second):
        change = env.store.get_change(captured.change.id)
        assert change.status == ChangeStatus.REJECTED
        assert change.error == "Changeset rejected"
    assert env.store.get_change(done.change.id).status == ChangeStatus.APPROVED
    assert env.store.get_changeset(changeset.id).status == ChangeStatus.REJECTED
    assert len(env.downstream.calls) == 1
    assert response["status"] == "rejected"
    assert response["skippedChangeIds"] == []


def test_reject_changeset_waits_for_members_being_executed(env):
    changeset = env.approvals.create_changeset("Racing reject")
    busy = env.capture_write(changeset_id=changeset.id)
    free = env.capture_write(changeset_id=changeset.id)
    token = env.store.claim_change(busy.change.id)

    response = env.approvals.reject_changeset(changeset.id, resolved_by="dave")

    assert response["status"] == "pending"
    assert response["rejectedChangeIds"] == [free.change.id]
    assert response["skippedChangeIds"] == [busy.change.id]
    assert env.store.get_change(busy.change.id).status == ChangeStatus.PENDING
    assert env.store.get_changeset(changeset.id).status == ChangeStatus.PENDING

    # The other approver finishes; the changeset then settles as rejected
    env.store.resolve_change(busy.change.id, ChangeStatus.APPROVED, "other", response="{}", claim_token=token)
    assert env.store.settle_changeset(changeset.id, "other") == ChangeStatus.REJECTED


def test_concurrent_approvals_execute_once(tmp_path):
    env = Env(tmp_path, delay=0.05)
    captured = env.capture_write()
    start = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def _approve():
        start.wait()
        try:
            env.approvals.approve_change(captured.change.id)
            result = "ok"
        except ConflictError:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_approve) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["conflict"] * 7 + ["ok"]
    assert len(env.downstream.calls) == 1
    assert env.store.get_change(captured.change.id).status == ChangeStatus.APPROVED


def test_concurrent_changeset_and_single_approval_execute_each_change_once(tmp_path):
    env = Env(tmp_path, delay=0.02)
    changeset = env.approvals.create_changeset("Race")
    ids = [env.capture_write(changeset_id=changeset.id).change.id for _ in range(4)]
    start = threading.Barrier(2)

    def _approve_set():
        start.wait()
        env.approvals.approve_changeset(changeset.id)

    def _approve_each():
        start.wait()
        for change_id in ids:
            try:
                env.approvals.approve_change(change_id)
            except ConflictError:
                pass

    threads = [threading.Thread(target=_approve_set), threading.Thread(target=_approve_each)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(env.downstream.calls) == 4
    assert all(env.store.get_change(cid).status == ChangeStatus.APPROVED for cid in ids)


def test_add_changes_moves_pending_changes(env):
    target = env.approvals.create_changeset("Target")
    loose = env.capture_write()
    resolved = env.capture_write()
    env.approvals.reject_change(resolved.change.id)

    assert env.approvals.add_changes(target.id, [loose.change.id, loose.change.id]) == 1
    assert env.store.get_change(loose.change.id).changeset_id == target.id

    with pytest.raises(ConflictError):
        env.approvals.add_changes(target.id, [resolved.change.id])
    with pytest.raises(NotFoundError):
        env.approvals.add_changes(target.id, ["missing"])
    with pytest.raises(NotFoundError):
        env.approvals.add_changes("missing", [loose.change.id])
    with pytest.raises(ValidationError):
        env.approvals.add_changes(target.id, [])


def test_add_changes_into_resolved_changeset_conflicts(env):
    target = env.approvals.create_changeset("Closed")
    env.approvals.reject_changeset(target.id)
    loose = env.capture_write()

    with pytest.raises(ConflictError):
        env.approvals.add_changes(target.id, [loose.change.id])


def test_create_changeset_requires_name(env):
    with pytest.raises(ValidationError):
        env.approvals.create_changeset("   ")
    changeset = env.approvals.create_changeset(" Payroll ", description="  ")
    assert changeset.name == "Payroll"
    assert changeset.description is None


def test_delete_and_stats(env):
    first = env.capture_write()
    second = env.capture_write()
    env.approvals.approve_change(first.change.id)

    stats = env.approvals.get_stats().to_dict()
    assert (stats["pending"], stats["approved"], stats["rejected"]) == (1, 1, 0)

    env.approvals.delete_change(second.change.id)
    assert env.store.get_change(second.change.id) is None

    assert env.approvals.delete_changesets(ChangeStatus.APPROVED) == 1
    assert env.store.get_change(first.change.id) is None


def test_summary_counts():
    summary = ChangesetSummary(pending=1, approved=2, rejected=0)
    assert summary.total == 3
    assert summary.to_dict(ChangeStatus.PENDING)["partiallyExecuted"] is False

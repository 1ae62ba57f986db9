from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from app.models.reviews import ReviewCreate
from app.services.review_service import REVIEW_CONFLICT_KEY, ReviewService
from app.services.workflow_errors import ConcurrentUpdate, MissingReason, NotFound, Unauthorized

SUBMISSION_ID = "11111111-1111-1111-1111-111111111111"


def _payload(**overrides) -> ReviewCreate:
    data = {"submission_id": SUBMISSION_ID, "reviewer_role": "pc", "status": "approved", "comments": ""}
    data.update(overrides)
    return ReviewCreate(**data)


def test_submit_review_upserts_and_updates_status(supabase_stub, make_ctx, submission_row):
    row = submission_row("submitted")
    supabase_stub.respond("submissions", [row], [{**row, "status": "pc_approved"}])
    supabase_stub.respond("reviews", [], [{"id": "r1", "status": "approved"}])

    saved = ReviewService(supabase_stub.client).submit_review(make_ctx("pc"), _payload())

    assert saved == {"id": "r1", "status": "approved"}
    reviews = supabase_stub.tables["reviews"]
    upserted = reviews.upsert.call_args
    assert upserted.kwargs["on_conflict"] == REVIEW_CONFLICT_KEY
    assert upserted.args[0]["reviewer_role"] == "pc"
    assert upserted.args[0]["review_type"] == "primary"

    submissions = supabase_stub.tables["submissions"]
    assert submissions.update.call_args.args[0]["status"] == "pc_approved"
    # compare-and-set on the status that was read
    submissions.eq.assert_any_call("status", "submitted")

    audit_row = supabase_stub.tables["audit_logs"].insert.call_args.args[0]
    assert audit_row["action_type"] == "review_approved"


def test_second_primary_decision_replaces_first(supabase_stub, make_ctx, submission_row):
    row = submission_row("submitted")
    previous = {"id": "r1", "submission_id": SUBMISSION_ID, "reviewer_role": "pc", "status": "pending"}
    supabase_stub.respond("submissions", [row], [{**row, "status": "pc_rejected"}])
    supabase_stub.respond("reviews", [previous], [{"id": "r1", "status": "rejected"}])

    saved = ReviewService(supabase_stub.client).submit_review(
        make_ctx("pc"), _payload(status="rejected", comments="Rubric missing")
    )

    assert saved["id"] == "r1"
    reviews = supabase_stub.tables["reviews"]
    assert reviews.upsert.call_count == 1
    reviews.insert.assert_not_called()


def test_rejection_without_reason_writes_nothing(supabase_stub, make_ctx, submission_row):
    supabase_stub.respond("submissions", [submission_row("submitted")])

    with pytest.raises(MissingReason):
        ReviewService(supabase_stub.client).submit_review(make_ctx("pc"), _payload(status="rejected"))

    supabase_stub.tables["reviews"].upsert.assert_not_called()
    supabase_stub.tables["submissions"].update.assert_not_called()


def test_secondary_blocked_after_primary_decision(supabase_stub, make_ctx, submission_row):
    supabase_stub.respond("submissions", [submission_row("submitted")])
    supabase_stub.respond("reviews", [{"reviewer_role": "pc", "status": "approved"}])

    with pytest.raises(Unauthorized):
        ReviewService(supabase_stub.client).submit_review(make_ctx("institution_manager"), _payload())


def test_missing_submission_is_not_found(supabase_stub, make_ctx):
    with pytest.raises(NotFound):
        ReviewService(supabase_stub.client).submit_review(make_ctx("pc"), _payload())


def test_other_institution_is_not_found(supabase_stub, make_ctx, submission_row):
    supabase_stub.respond("submissions", [submission_row("submitted")])
    with pytest.raises(NotFound):
        ReviewService(supabase_stub.client).submit_review(make_ctx("pc", institution="South Campus"), _payload())


def test_concurrent_status_change_writes_no_review(supabase_stub, make_ctx, submission_row):
    supabase_stub.respond("submissions", [submission_row("submitted")], [])
    supabase_stub.respond("reviews", [])

    with pytest.raises(ConcurrentUpdate):
        ReviewService(supabase_stub.client).submit_review(make_ctx("pc"), _payload())

    reviews = supabase_stub.tables["reviews"]
    reviews.upsert.assert_not_called()
    reviews.delete.assert_not_called()
    supabase_stub.tables["audit_logs"].insert.assert_not_called()


def test_status_update_failure_writes_no_review(supabase_stub, make_ctx, submission_row):
    supabase_stub.respond("submissions", [submission_row("submitted")], RuntimeError("db down"))
    supabase_stub.respond("reviews", [])

    with pytest.raises(HTTPException) as exc:
        ReviewService(supabase_stub.client).submit_review(make_ctx("pc"), _payload())

    assert exc.value.status_code == 500
    supabase_stub.tables["reviews"].upsert.assert_not_called()


def test_review_write_failure_reverts_status(supabase_stub, make_ctx, submission_row):
    row = submission_row("submitted")
    supabase_stub.respond("submissions", [row], [{**row, "status": "pc_approved"}], [row])
    supabase_stub.respond("reviews", [], RuntimeError("reviews unavailable"))

    with pytest.raises(HTTPException) as exc:
        ReviewService(supabase_stub.client).submit_review(make_ctx("pc"), _payload())

    assert exc.value.status_code == 500
    submissions = supabase_stub.tables["submissions"]
    assert submissions.update.call_count == 2
    assert submissions.update.call_args.args[0]["status"] == "submitted"
    # 回退同样是 CAS：只在状态仍为本次写入的值时生效
    submissions.eq.assert_any_call("status", "pc_approved")
    supabase_stub.tables["audit_logs"].insert.assert_not_called()


class _MemoryQuery:
    def __init__(self, store: "_MemoryStore", name: str) -> None:
        self.store = store
        self.name = name
        self.op = "select"
        self.payload = None
        self.conflict: list[str] = []
        self.filters: list[tuple[str, object]] = []

    def select(self, *_args, **_kwargs):
        self.op = "select"
        return self

    def update(self, values):
        self.op, self.payload = "update", values
        return self

    def upsert(self, row, on_conflict=""):
        self.op, self.payload, self.conflict = "upsert", row, on_conflict.split(",")
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def limit(self, *_args):
        return self

    def order(self, *_args, **_kwargs):
        return self

    def _matches(self, row) -> bool:
        return all(str(row.get(col)) == str(val) for col, val in self.filters)

    def execute(self):
        rows = self.store.rows.setdefault(self.name, [])
        if self.op == "select":
            data = [dict(r) for r in rows if self._matches(r)]
            hook = self.store.after_read.pop(self.name, None)
            if hook:
                hook()
            return SimpleNamespace(data=data)
        if self.op == "update":
            hit = [r for r in rows if self._matches(r)]
            for r in hit:
                r.update(self.payload)
            return SimpleNamespace(data=[dict(r) for r in hit])
        if self.op == "upsert":
            key = lambda r: tuple(str(r.get(c)) for c in self.conflict)
            current = next((r for r in rows if key(r) == key(self.payload)), None)
            if current is None:
                rows.append(dict(self.payload))
            else:
                current.update(self.payload)
            return SimpleNamespace(data=[dict(self.payload)])
        self.store.rows[self.name] = [r for r in rows if not self._matches(r)]
        return SimpleNamespace(data=[])


class _MemoryStore:
    """
    最小的内存表：支持 select/update/upsert/delete + eq 过滤；after_read 用于在某次读取后插入另一个请求。
    """

    def __init__(self, rows: dict) -> None:
        self.rows = rows
        self.after_read: dict = {}

    def table(self, name: str) -> _MemoryQuery:
        return _MemoryQuery(self, name)


def test_losing_reviewer_leaves_winning_review_intact(make_ctx, submission_row):
    store = _MemoryStore({"submissions": [submission_row("submitted")], "reviews": []})
    pc = make_ctx("pc", user_id="00000000-0000-0000-0000-0000000000b1")
    manager = make_ctx("institution_manager", user_id="00000000-0000-0000-0000-0000000000c1")

    def _service():
        return ReviewService(store, audit=MagicMock(), notifications=MagicMock())

    # 机构经理读完 reviews 后，PC 审阅人完成一次完整的通过
    store.after_read["reviews"] = lambda: _service().submit_review(pc, _payload())

    with pytest.raises(ConcurrentUpdate):
        _service().submit_review(manager, _payload())

    assert store.rows["submissions"][0]["status"] == "pc_approved"
    assert len(store.rows["reviews"]) == 1
    winner = store.rows["reviews"][0]
    assert winner["reviewer_role"] == "pc"
    assert winner["reviewer_id"] == pc.user_id
    assert winner["review_type"] == "primary"


def test_audit_failure_does_not_fail_review(supabase_stub, make_ctx, submission_row):
    row = submission_row("submitted")
    supabase_stub.respond("submissions", [row], [{**row, "status": "pc_approved"}])
    supabase_stub.respond("reviews", [], [{"id": "r1"}])
    supabase_stub.respond("audit_logs", RuntimeError("audit_logs missing"))

    saved = ReviewService(supabase_stub.client).submit_review(make_ctx("pc"), _payload())
    assert saved == {"id": "r1"}


def test_list_reviews_without_submission_returns_own(supabase_stub, make_ctx):
    supabase_stub.respond("reviews", [{"id": "r1"}])
    ctx = make_ctx("pc")
    rows = ReviewService(supabase_stub.client).list_reviews(ctx)
    assert rows == [{"id": "r1"}]
    supabase_stub.tables["reviews"].eq.assert_called_once_with("reviewer_id", ctx.user_id)

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.services.review_workflow import (
    ReviewAuthorization,
    apply_review,
    archive_submission,
    effective_review,
    finalize_submission,
    resolve_review_authorization,
)
from app.services.workflow_errors import (
    InvalidTransition,
    MissingDocument,
    MissingReason,
    Unauthorized,
)

INSTRUCTOR_ID = "00000000-0000-0000-0000-000000000001"
NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def _review(stage: str, status: str, reviewed_at: str | None = None, review_type: str = "primary") -> dict:
    return {
        "submission_id": "s1",
        "reviewer_role": stage,
        "status": status,
        "review_type": review_type,
        "reviewed_at": reviewed_at,
    }


# --- resolver ---


def test_primary_pc_reviewer_is_primary() -> None:
    auth = resolve_review_authorization("submitted", "pc", [])
    assert auth == ReviewAuthorization(stage="pc", review_type="primary")
    assert auth.secondary is False


def test_primary_reviewer_may_overwrite_own_decision() -> None:
    auth = resolve_review_authorization("submitted", "pc", [_review("pc", "rejected")])
    assert auth.review_type == "primary"


def test_institution_manager_is_secondary_while_primary_absent() -> None:
    auth = resolve_review_authorization("submitted", "institution_manager", [])
    assert auth.stage == "pc"
    assert auth.secondary is True


def test_secondary_allowed_when_primary_row_pending() -> None:
    auth = resolve_review_authorization("submitted", "administrator", [_review("pc", "pending")])
    assert auth.secondary is True


def test_secondary_blocked_after_primary_decision() -> None:
    with pytest.raises(Unauthorized):
        resolve_review_authorization("submitted", "institution_manager", [_review("pc", "approved")])


def test_senior_instructor_never_secondary_at_amo() -> None:
    with pytest.raises(Unauthorized):
        resolve_review_authorization("pc_approved", "senior_instructor", [])


def test_amo_decided_row_does_not_block_pc_secondary() -> None:
    auth = resolve_review_authorization("submitted", "senior_instructor", [_review("amo", "approved")])
    assert auth == ReviewAuthorization(stage="pc", review_type="secondary")


@pytest.mark.parametrize("role", ["instructor", "records", "registration", "amo", "nobody", None])
def test_roles_without_pc_authority_are_unauthorized(role) -> None:
    with pytest.raises(Unauthorized):
        resolve_review_authorization("submitted", role, [])


@pytest.mark.parametrize("status", ["draft", "pc_rejected", "amo_approved", "archived", None])
def test_non_review_status_is_invalid_transition(status) -> None:
    with pytest.raises(InvalidTransition):
        resolve_review_authorization(status, "administrator", [])


@pytest.mark.parametrize("role", ["amo", "administrator", "institution_manager", "pc"])
def test_amo_gating_regardless_of_role(role) -> None:
    with pytest.raises(InvalidTransition):
        resolve_review_authorization("submitted", role, [], requested_stage="amo")


def test_secondary_retry_on_decided_earlier_stage_is_unauthorized() -> None:
    with pytest.raises(Unauthorized):
        resolve_review_authorization(
            "pc_approved", "institution_manager", [_review("pc", "approved")], requested_stage="pc"
        )


def test_stale_primary_request_for_earlier_stage_is_invalid_transition() -> None:
    with pytest.raises(InvalidTransition):
        resolve_review_authorization("pc_approved", "pc", [_review("pc", "approved")], requested_stage="pc")


# --- effective review ---


def test_effective_review_prefers_amo_over_newer_pc() -> None:
    pc = _review("pc", "approved", "2026-03-05T00:00:00Z")
    amo = _review("amo", "rejected", "2026-03-02T00:00:00Z")
    assert effective_review([pc, amo]) is amo


def test_effective_review_latest_within_stage() -> None:
    first = _review("pc", "rejected", "2026-03-01T00:00:00Z", review_type="secondary")
    second = _review("pc", "approved", "2026-03-03T00:00:00+00:00")
    assert effective_review([second, first]) is second


def test_effective_review_ignores_pending() -> None:
    assert effective_review([_review("pc", "pending")]) is None
    assert effective_review([]) is None


# --- apply_review ---


def test_pc_approval_advances_to_pc_approved(make_ctx, submission_row) -> None:
    outcome = apply_review(submission_row("submitted"), "pc", "approved", "", make_ctx("pc"), [], now=NOW)

    assert outcome.old_status == "submitted"
    assert outcome.new_status == "pc_approved"
    assert outcome.audit_event.action_type == "review_approved"
    assert outcome.audit_event.stage == "pc"
    assert outcome.audit_event.review_type == "primary"
    assert outcome.review["reviewer_role"] == "pc"
    assert outcome.review["status"] == "approved"
    assert outcome.review["reviewed_at"] == NOW.isoformat()


def test_pc_approval_notifies_instructor_and_amo_pool(make_ctx, submission_row) -> None:
    outcome = apply_review(submission_row("submitted"), "pc", "approved", "Looks good", make_ctx("pc"))

    kinds = [n.kind for n in outcome.notifications]
    assert kinds == ["review_decision", "work_item"]
    decision, work = outcome.notifications
    assert decision.recipient_user_id == INSTRUCTOR_ID
    assert decision.recipient_email == "instructor@example.com"
    assert decision.comment == "Looks good"
    assert work.recipient_pool == "amo"
    assert work.institution == "North Campus"


def test_rejection_without_reason_is_refused(make_ctx, submission_row) -> None:
    submission = submission_row("submitted")
    with pytest.raises(MissingReason):
        apply_review(submission, "pc", "rejected", "", make_ctx("pc"))
    assert submission["status"] == "submitted"


@pytest.mark.parametrize("comments", ["   ", "\n\t", None])
def test_whitespace_reason_counts_as_missing(make_ctx, submission_row, comments) -> None:
    with pytest.raises(MissingReason):
        apply_review(submission_row("submitted"), "pc", "rejected", comments, make_ctx("pc"))


def test_missing_reason_checked_before_authorization(make_ctx, submission_row) -> None:
    with pytest.raises(MissingReason):
        apply_review(submission_row("draft"), "pc", "rejected", "", make_ctx("instructor"))


def test_rejection_with_reason_notifies_instructor_only(make_ctx, submission_row) -> None:
    outcome = apply_review(
        submission_row("submitted"), "pc", "rejected", "Missing rubric", make_ctx("pc")
    )
    assert outcome.new_status == "pc_rejected"
    assert outcome.audit_event.action_type == "review_rejected"
    assert [n.kind for n in outcome.notifications] == ["review_decision"]
    assert outcome.notifications[0].decision == "rejected"


@pytest.mark.parametrize("decision", ["pending", "maybe", "", None])
def test_unsupported_decision_is_invalid(make_ctx, submission_row, decision) -> None:
    with pytest.raises(InvalidTransition):
        apply_review(submission_row("submitted"), "pc", decision, "x", make_ctx("pc"))


def test_amo_stage_requires_pc_approved(make_ctx, submission_row) -> None:
    with pytest.raises(InvalidTransition):
        apply_review(submission_row("submitted"), "amo", "approved", "", make_ctx("administrator"))


def test_amo_approval_then_archive(make_ctx, submission_row) -> None:
    submission = submission_row("pc_approved")
    outcome = apply_review(submission, "amo", "approved", "", make_ctx("amo"))
    assert outcome.new_status == "amo_approved"
    assert outcome.notifications[-1].recipient_pool == "records"

    archived = archive_submission({**submission, "status": outcome.new_status}, make_ctx("records"))
    assert archived.new_status == "archived"
    assert archived.audit_event.action_type == "submission_archived"


def test_senior_instructor_secondary_pc_review(make_ctx, submission_row) -> None:
    outcome = apply_review(
        submission_row("submitted"), "pc", "approved", "", make_ctx("senior_instructor"), []
    )
    assert outcome.new_status == "pc_approved"
    assert outcome.authorization.secondary is True
    assert outcome.review["review_type"] == "secondary"
    assert outcome.audit_event.review_type == "secondary"


def test_review_on_alias_status(make_ctx, submission_row) -> None:
    outcome = apply_review(submission_row("amo_review"), "amo", "approved", "", make_ctx("amo"))
    assert outcome.old_status == "pc_approved"
    assert outcome.new_status == "amo_approved"


def test_stage_may_be_inferred(make_ctx, submission_row) -> None:
    outcome = apply_review(submission_row("pc_approved"), None, "approved", "", make_ctx("amo"))
    assert outcome.review["reviewer_role"] == "amo"


# --- finalize / archive ---


def test_finalize_with_document_submits(make_ctx, submission_row) -> None:
    ctx = make_ctx("instructor", user_id=INSTRUCTOR_ID)
    outcome = finalize_submission(submission_row("draft"), ctx, [{"id": "d1"}])
    assert outcome.new_status == "submitted"
    assert outcome.audit_event.action_type == "submission_submitted"
    assert [n.recipient_pool for n in outcome.notifications] == ["pc"]


def test_finalize_requires_document(make_ctx, submission_row) -> None:
    ctx = make_ctx("instructor", user_id=INSTRUCTOR_ID)
    with pytest.raises(MissingDocument):
        finalize_submission(submission_row("draft"), ctx, [])


def test_finalize_requires_owner(make_ctx, submission_row) -> None:
    with pytest.raises(Unauthorized):
        finalize_submission(submission_row("draft"), make_ctx("instructor"), [{"id": "d1"}])


def test_finalize_requires_submit_capability(make_ctx, submission_row) -> None:
    with pytest.raises(Unauthorized):
        finalize_submission(submission_row("draft"), make_ctx("pc", user_id=INSTRUCTOR_ID), [{"id": "d1"}])


def test_finalize_twice_is_invalid(make_ctx, submission_row) -> None:
    ctx = make_ctx("instructor", user_id=INSTRUCTOR_ID)
    with pytest.raises(InvalidTransition):
        finalize_submission(submission_row("submitted"), ctx, [{"id": "d1"}])


@pytest.mark.parametrize("status", ["draft", "submitted", "pc_approved", "amo_rejected", "archived"])
def test_archive_only_from_amo_approved(make_ctx, submission_row, status) -> None:
    with pytest.raises(InvalidTransition):
        archive_submission(submission_row(status), make_ctx("records"))


def test_archive_requires_capability(make_ctx, submission_row) -> None:
    with pytest.raises(Unauthorized):
        archive_submission(submission_row("amo_approved"), make_ctx("amo"))

"""
Review workflow engine.

Pure functions over submission/review rows: they decide whether an action is
legal, compute the next status and describe the side effects (review row,
audit event, notifications). Persisting those descriptions is the caller's job
(see ReviewService / SubmissionService / ArchiveService).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence

from app.core.role_matrix import (
    Capability,
    can_secondary_review,
    has_capability,
    is_primary_reviewer,
    normalize_role,
)
from app.core.roles import RequestContext
from app.models.audit import AuditAction
from app.models.reviews import STAGE_ORDER, ReviewDecision, ReviewType
from app.models.submission import (
    SubmissionStatus,
    WorkflowAction,
    next_state,
    normalize_status,
    stage_for_status,
)
from app.services.workflow_errors import (
    InvalidTransition,
    MissingDocument,
    MissingReason,
    Unauthorized,
)

DECIDED = frozenset({ReviewDecision.APPROVED.value, ReviewDecision.REJECTED.value})

# 审批通过后下一个处理队列（按角色池通知）
NEXT_POOL_AFTER: dict[str, str] = {
    SubmissionStatus.SUBMITTED.value: "pc",
    SubmissionStatus.PC_APPROVED.value: "amo",
    SubmissionStatus.AMO_APPROVED.value: "records",
}


@dataclass(frozen=True)
class ReviewAuthorization:
    stage: str
    review_type: str

    @property
    def secondary(self) -> bool:
        return self.review_type == ReviewType.SECONDARY.value


@dataclass(frozen=True)
class AuditEvent:
    action_type: str
    actor_id: str
    actor_role: str
    submission_id: str
    old_status: Optional[str]
    new_status: Optional[str]
    submission_code: Optional[str] = None
    submission_title: Optional[str] = None
    stage: Optional[str] = None
    review_type: Optional[str] = None
    decision: Optional[str] = None
    comments: Optional[str] = None


@dataclass(frozen=True)
class NotificationEvent:
    """
    kind:
    - "review_decision": 发给提交人（recipient_user_id）
    - "submission": 发给提交人的一般状态通知
    - "work_item": 发给某个角色池（recipient_pool），institution 限定范围
    """

    kind: str
    submission_id: str
    submission_title: str
    recipient_user_id: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_pool: Optional[str] = None
    institution: Optional[str] = None
    decision: Optional[str] = None
    reviewer_role: Optional[str] = None
    comment: Optional[str] = None
    new_status: Optional[str] = None


@dataclass(frozen=True)
class TransitionOutcome:
    old_status: str
    new_status: str
    audit_event: AuditEvent
    notifications: tuple[NotificationEvent, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ReviewOutcome(TransitionOutcome):
    review: dict[str, Any] = field(default_factory=dict)
    authorization: Optional[ReviewAuthorization] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    raw = str(value or "").strip()
    if not raw:
        return datetime.min.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _review_status(review: Mapping[str, Any]) -> str:
    return str(review.get("status") or ReviewDecision.PENDING.value).strip().lower()


def _review_stage(review: Mapping[str, Any]) -> str:
    return str(review.get("reviewer_role") or "").strip().lower()


def stage_decided(reviews: Iterable[Mapping[str, Any]], stage: str) -> bool:
    return any(_review_stage(r) == stage and _review_status(r) in DECIDED for r in reviews or [])


def effective_review(reviews: Iterable[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """
    多条已决审阅并存时，决定展示/状态以哪一条为准。

    - AMO 结论总是优先于 PC 结论（后一阶段）
    - 同一阶段内以最近一次决定为准
    """
    decided = [
        r for r in reviews or []
        if _review_status(r) in DECIDED and _review_stage(r) in STAGE_ORDER
    ]
    if not decided:
        return None
    return max(decided, key=lambda r: (STAGE_ORDER[_review_stage(r)], _parse_ts(r.get("reviewed_at"))))


def resolve_review_authorization(
    submission_status: Optional[str],
    actor_role: Optional[str],
    existing_reviews: Sequence[Mapping[str, Any]] = (),
    requested_stage: Optional[str] = None,
) -> ReviewAuthorization:
    """
    判定一次审阅请求是 primary 还是 secondary，以及它针对哪个阶段。

    抛出:
    - InvalidTransition: 当前状态不在任何审阅阶段，或请求的阶段与状态不符
    - Unauthorized: 角色既不是该阶段的主审，也不能（或已不能）代审
    """
    stage = stage_for_status(submission_status)
    if stage is None:
        raise InvalidTransition(f"Submission in status {submission_status!r} is not awaiting review")

    role = normalize_role(actor_role)
    if requested_stage is not None:
        requested = str(requested_stage).strip().lower()
        if requested != stage:
            # 代审人试图改写已经结束的前一阶段：按授权失败处理
            if (
                STAGE_ORDER.get(requested, len(STAGE_ORDER)) < STAGE_ORDER[stage]
                and not is_primary_reviewer(role, requested)
                and can_secondary_review(role, requested)
                and stage_decided(existing_reviews, requested)
            ):
                raise Unauthorized(
                    f"{requested.upper()} review already decided; secondary approval no longer allowed"
                )
            raise InvalidTransition(
                f"Submission is awaiting {stage.upper()} review, not {requested.upper() or 'unknown'}"
            )

    if is_primary_reviewer(role, stage):
        return ReviewAuthorization(stage=stage, review_type=ReviewType.PRIMARY.value)

    if can_secondary_review(role, stage):
        if stage_decided(existing_reviews, stage):
            raise Unauthorized(f"{stage.upper()} review already decided; secondary approval no longer allowed")
        return ReviewAuthorization(stage=stage, review_type=ReviewType.SECONDARY.value)

    raise Unauthorized(f"Role {role or 'unknown'} cannot review at the {stage.upper()} stage")


def _submission_ref(submission: Mapping[str, Any]) -> tuple[str, str, Optional[str]]:
    sid = str(submission.get("id") or "")
    title = str(submission.get("title") or "Submission")
    return sid, title, submission.get("submission_id")


def _work_item(submission: Mapping[str, Any], after_status: str) -> Optional[NotificationEvent]:
    pool = NEXT_POOL_AFTER.get(after_status)
    if pool is None:
        return None
    sid, title, _ = _submission_ref(submission)
    return NotificationEvent(
        kind="work_item",
        submission_id=sid,
        submission_title=title,
        recipient_pool=pool,
        institution=submission.get("institution"),
        new_status=after_status,
    )


def apply_review(
    submission: Mapping[str, Any],
    stage: Optional[str],
    decision: str,
    comments: Optional[str],
    actor: RequestContext,
    existing_reviews: Sequence[Mapping[str, Any]] = (),
    *,
    now: Optional[datetime] = None,
) -> ReviewOutcome:
    """
    计算一次 approve/reject 的结果（不做任何 I/O）。

    校验顺序: decision 合法 → 驳回必须有理由 → 阶段/授权 → 状态表。
    """
    value = str(decision or "").strip().lower()
    if value not in DECIDED:
        raise InvalidTransition(f"Unsupported review decision: {decision!r}")

    reason = (comments or "").strip()
    if value == ReviewDecision.REJECTED.value and not reason:
        raise MissingReason("A comment is required when rejecting a submission")

    old_status = normalize_status(submission.get("status")) or str(submission.get("status") or "")
    authorization = resolve_review_authorization(
        old_status, actor.role, existing_reviews, requested_stage=stage
    )
    action = WorkflowAction.APPROVE.value if value == ReviewDecision.APPROVED.value else WorkflowAction.REJECT.value
    new_status = next_state(old_status, action, actor.role)

    reviewed_at = (now or _now()).isoformat()
    sid, title, code = _submission_ref(submission)
    review = {
        "submission_id": sid,
        "reviewer_role": authorization.stage,
        "reviewer_id": actor.user_id,
        "status": value,
        "review_type": authorization.review_type,
        "comments": reason,
        "reviewed_at": reviewed_at,
    }

    audit_event = AuditEvent(
        action_type=(
            AuditAction.REVIEW_APPROVED.value
            if value == ReviewDecision.APPROVED.value
            else AuditAction.REVIEW_REJECTED.value
        ),
        actor_id=actor.user_id,
        actor_role=actor.role,
        submission_id=sid,
        submission_code=code,
        submission_title=title,
        old_status=old_status,
        new_status=new_status,
        stage=authorization.stage,
        review_type=authorization.review_type,
        decision=value,
        comments=reason or None,
    )

    notifications: list[NotificationEvent] = [
        NotificationEvent(
            kind="review_decision",
            submission_id=sid,
            submission_title=title,
            recipient_user_id=str(submission.get("instructor_id") or "") or None,
            recipient_email=submission.get("instructor_email"),
            recipient_name=submission.get("instructor_name"),
            decision=value,
            reviewer_role=authorization.stage,
            comment=reason or None,
            new_status=new_status,
        )
    ]
    if value == ReviewDecision.APPROVED.value:
        work_item = _work_item(submission, new_status)
        if work_item is not None:
            notifications.append(work_item)

    return ReviewOutcome(
        old_status=old_status,
        new_status=new_status,
        audit_event=audit_event,
        notifications=tuple(notifications),
        review=review,
        authorization=authorization,
    )


def finalize_submission(
    submission: Mapping[str, Any],
    actor: RequestContext,
    documents: Sequence[Mapping[str, Any]] = (),
) -> TransitionOutcome:
    """
    draft → submitted。只有提交人本人可以 finalize，且至少要有一个已上传文档。
    """
    if not has_capability(actor.role, Capability.SUBMIT):
        raise Unauthorized(f"Role {actor.role or 'unknown'} cannot submit documents")

    old_status = normalize_status(submission.get("status")) or str(submission.get("status") or "")
    new_status = next_state(old_status, WorkflowAction.FINALIZE.value, actor.role)

    if str(submission.get("instructor_id") or "") != str(actor.user_id):
        raise Unauthorized("Only the submitting instructor can finalize this submission")
    if not documents:
        raise MissingDocument("Attach a document before submitting")

    sid, title, code = _submission_ref(submission)
    audit_event = AuditEvent(
        action_type=AuditAction.SUBMISSION_SUBMITTED.value,
        actor_id=actor.user_id,
        actor_role=actor.role,
        submission_id=sid,
        submission_code=code,
        submission_title=title,
        old_status=old_status,
        new_status=new_status,
    )
    notifications = tuple(n for n in (_work_item(submission, new_status),) if n is not None)
    return TransitionOutcome(
        old_status=old_status,
        new_status=new_status,
        audit_event=audit_event,
        notifications=notifications,
    )


def archive_submission(submission: Mapping[str, Any], actor: RequestContext) -> TransitionOutcome:
    """
    amo_approved → archived（records 角色）。
    """
    if not has_capability(actor.role, Capability.ARCHIVE):
        raise Unauthorized(f"Role {actor.role or 'unknown'} cannot archive submissions")

    old_status = normalize_status(submission.get("status")) or str(submission.get("status") or "")
    new_status = next_state(old_status, WorkflowAction.ARCHIVE.value, actor.role)

    sid, title, code = _submission_ref(submission)
    audit_event = AuditEvent(
        action_type=AuditAction.SUBMISSION_ARCHIVED.value,
        actor_id=actor.user_id,
        actor_role=actor.role,
        submission_id=sid,
        submission_code=code,
        submission_title=title,
        old_status=old_status,
        new_status=new_status,
    )
    notifications = (
        NotificationEvent(
            kind="submission",
            submission_id=sid,
            submission_title=title,
            recipient_user_id=str(submission.get("instructor_id") or "") or None,
            new_status=new_status,
        ),
    )
    return TransitionOutcome(
        old_status=old_status,
        new_status=new_status,
        audit_event=audit_event,
        notifications=notifications,
    )

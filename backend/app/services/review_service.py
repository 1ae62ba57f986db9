from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import BackgroundTasks, HTTPException

from app.core.roles import RequestContext
from app.lib.api_client import supabase_admin
from app.models.reviews import ReviewCreate
from app.services.audit_service import AuditService
from app.services.notification_service import NotificationService
from app.services.review_workflow import apply_review
from app.services.submission_service import can_view_submission, load_submission
from app.services.workflow_errors import ConcurrentUpdate, NotFound

logger = logging.getLogger("rfaportal.reviews")

REVIEW_CONFLICT_KEY = "submission_id,reviewer_role"


class ReviewService:
    """
    审阅提交的调用层：读取 → 流程引擎判定 → 落库（submission 状态 CAS + review upsert）→ 审计 → 通知。

    中文注释:
    - review 行按 (submission_id, reviewer_role) upsert，同一阶段只保留一条，后写覆盖前写。
    - 状态 CAS 未命中（并发改动）时直接 409，不写 review；review 写入失败时把状态 CAS 回旧值。
    - 审计与通知失败不影响结果（fail-open）。
    """

    def __init__(
        self,
        client: Any = None,
        audit: Optional[AuditService] = None,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self.client = client if client is not None else supabase_admin
        self.audit = audit if audit is not None else AuditService(self.client)
        self.notifications = notifications if notifications is not None else NotificationService(self.client)

    def _reviews_for(self, submission_id: str) -> list[dict[str, Any]]:
        res = self.client.table("reviews").select("*").eq("submission_id", submission_id).execute()
        return getattr(res, "data", None) or []

    def list_reviews(self, ctx: RequestContext, submission_id: Optional[str] = None) -> list[dict[str, Any]]:
        if submission_id:
            submission = load_submission(self.client, submission_id)
            if not can_view_submission(ctx, submission):
                raise NotFound("Submission not found")
            return self._reviews_for(submission_id)
        res = (
            self.client.table("reviews")
            .select("*")
            .eq("reviewer_id", ctx.user_id)
            .order("reviewed_at", desc=True)
            .execute()
        )
        return getattr(res, "data", None) or []

    def _revert_status(self, submission_id: str, old_status: Any, new_status: str) -> None:
        # 只在状态仍是本次写入的值时回退，避免覆盖其他请求的后续推进
        try:
            (
                self.client.table("submissions")
                .update({"status": old_status, "updated_at": datetime.now(timezone.utc).isoformat()})
                .eq("id", submission_id)
                .eq("status", new_status)
                .execute()
            )
        except Exception as e:
            logger.error(
                "[Reviews] status revert failed for %s (%s -> %s): %s",
                submission_id,
                new_status,
                old_status,
                e,
            )

    def submit_review(
        self,
        ctx: RequestContext,
        payload: ReviewCreate,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> dict[str, Any]:
        submission_id = str(payload.submission_id)
        submission = load_submission(self.client, submission_id)
        if not can_view_submission(ctx, submission):
            raise NotFound("Submission not found")

        existing = self._reviews_for(submission_id)
        outcome = apply_review(
            submission,
            payload.reviewer_role,
            payload.status,
            payload.comments,
            ctx,
            existing,
        )
        review = outcome.review
        old_status = submission.get("status")

        # 先抢状态（CAS），命中后才写 review；并发的另一方在这里落空，不会写任何东西
        try:
            status_res = (
                self.client.table("submissions")
                .update({"status": outcome.new_status, "updated_at": datetime.now(timezone.utc).isoformat()})
                .eq("id", submission_id)
                .eq("status", old_status)
                .execute()
            )
        except Exception as e:
            logger.error("[Reviews] status update failed for %s: %s", submission_id, e)
            raise HTTPException(status_code=500, detail="Failed to update submission status") from e

        if not (getattr(status_res, "data", None) or []):
            logger.info("[Reviews] status of %s changed concurrently (expected %s)", submission_id, old_status)
            raise ConcurrentUpdate("Submission status changed concurrently; reload and try again")

        try:
            review_res = (
                self.client.table("reviews")
                .upsert(review, on_conflict=REVIEW_CONFLICT_KEY)
                .execute()
            )
        except Exception as e:
            logger.error("[Reviews] upsert failed for %s: %s", submission_id, e)
            self._revert_status(submission_id, old_status, outcome.new_status)
            raise HTTPException(status_code=500, detail="Failed to save review") from e
        saved = (getattr(review_res, "data", None) or [review])[0]

        logger.info(
            "[Reviews] %s %s review on %s by %s (%s): %s -> %s",
            review["review_type"],
            review["reviewer_role"],
            submission_id,
            ctx.user_id,
            ctx.role,
            outcome.old_status,
            outcome.new_status,
        )
        self.audit.record(outcome.audit_event)
        self.notifications.dispatch(outcome.notifications, background_tasks)
        return saved

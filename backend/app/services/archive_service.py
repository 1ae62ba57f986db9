from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import BackgroundTasks, HTTPException

from app.core.roles import RequestContext
from app.lib.api_client import supabase_admin
from app.models.submission import ArchiveRequest
from app.services.audit_service import AuditService
from app.services.notification_service import NotificationService
from app.services.review_workflow import archive_submission
from app.services.submission_service import can_view_submission, load_submission
from app.services.workflow_errors import ConcurrentUpdate, NotFound

logger = logging.getLogger("rfaportal.archive")


class ArchiveService:
    """
    归档：amo_approved → archived，并写 archived_submissions 元数据行。
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

    def list_archived(self, ctx: RequestContext) -> list[dict[str, Any]]:
        res = (
            self.client.table("archived_submissions")
            .select("*,submission:submission_id(*)")
            .order("archived_at", desc=True)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return [r for r in rows if not r.get("submission") or can_view_submission(ctx, r["submission"])]

    def archive(
        self,
        ctx: RequestContext,
        payload: ArchiveRequest,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> dict[str, Any]:
        submission_id = str(payload.submission_id)
        submission = load_submission(self.client, submission_id)
        if not can_view_submission(ctx, submission):
            raise NotFound("Submission not found")

        outcome = archive_submission(submission, ctx)

        now = datetime.now(timezone.utc).isoformat()
        status_res = (
            self.client.table("submissions")
            .update({"status": outcome.new_status, "updated_at": now})
            .eq("id", submission_id)
            .eq("status", submission.get("status"))
            .execute()
        )
        if not (getattr(status_res, "data", None) or []):
            raise ConcurrentUpdate("Submission status changed concurrently; reload and try again")

        row = {
            **payload.model_dump(mode="json"),
            "archived_by": ctx.user_id,
            "archived_at": now,
        }
        try:
            res = self.client.table("archived_submissions").insert(row).execute()
        except Exception as e:
            logger.error("[Archive] metadata insert failed for %s: %s", submission_id, e)
            try:
                (
                    self.client.table("submissions")
                    .update({"status": submission.get("status")})
                    .eq("id", submission_id)
                    .eq("status", outcome.new_status)
                    .execute()
                )
            except Exception as restore_err:
                logger.error("[Archive] status restore failed for %s: %s", submission_id, restore_err)
            raise HTTPException(status_code=500, detail="Failed to archive") from e

        rows = getattr(res, "data", None) or []
        self.audit.record(outcome.audit_event)
        self.notifications.dispatch(outcome.notifications, background_tasks)
        return rows[0] if rows else row

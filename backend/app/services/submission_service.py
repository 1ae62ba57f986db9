from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import BackgroundTasks, HTTPException

from app.core.role_matrix import Capability, Role
from app.core.roles import RequestContext
from app.lib.api_client import supabase_admin
from app.models.audit import AuditAction
from app.models.submission import (
    INITIAL_STATUS,
    SubmissionCreate,
    SubmissionStatus,
    SubmissionUpdate,
    allowed_actions,
    normalize_status,
)
from app.services import storage_service
from app.services.audit_service import AuditService
from app.services.notification_service import NotificationService
from app.services.review_workflow import AuditEvent, effective_review, finalize_submission
from app.services.workflow_errors import ConcurrentUpdate, InvalidTransition, NotFound, Unauthorized

logger = logging.getLogger("rfaportal.submissions")

# 可以看到本机构全部提交的角色；其余非提交人角色只能看到 AMO 通过及之后的记录
FULL_VISIBILITY_ROLES: frozenset[str] = frozenset(
    {
        Role.PC.value,
        Role.AMO.value,
        Role.SENIOR_INSTRUCTOR.value,
        Role.INSTITUTION_MANAGER.value,
        Role.RECORDS.value,
        Role.ADMINISTRATOR.value,
    }
)

LATE_STAGE_STATUSES: tuple[str, ...] = (
    SubmissionStatus.AMO_APPROVED.value,
    SubmissionStatus.ARCHIVED.value,
    "final_archived",
)

REJECTED_STATUSES: frozenset[str] = frozenset(
    {SubmissionStatus.PC_REJECTED.value, SubmissionStatus.AMO_REJECTED.value}
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_submission_code(now: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """
    人类可读编号：RFA-YYYY-MM#####（月份两位 + 5 位随机数字）。
    """
    ts = now or datetime.now(timezone.utc)
    n = (rng or random).randint(0, 9999)
    return f"RFA-{ts.year}-{ts.month:02d}{n:05d}"


def load_submission(client: Any, submission_id: str) -> dict[str, Any]:
    res = client.table("submissions").select("*").eq("id", submission_id).limit(1).execute()
    rows = getattr(res, "data", None) or []
    if not rows:
        raise NotFound("Submission not found")
    return rows[0]


def can_view_submission(ctx: RequestContext, submission: dict[str, Any]) -> bool:
    if not ctx.can(Capability.VIEW_ALL_INSTITUTIONS):
        if str(submission.get("institution") or "") != str(ctx.institution or ""):
            return False
    if ctx.role == Role.INSTRUCTOR.value:
        return str(submission.get("instructor_id") or "") == ctx.user_id
    if ctx.role in FULL_VISIBILITY_ROLES:
        return True
    if str(submission.get("instructor_id") or "") == ctx.user_id:
        return True
    return normalize_status(submission.get("status")) in LATE_STAGE_STATUSES


class SubmissionService:
    """
    提交文档的读写与 finalize / resubmit 流程。

    中文注释:
    - 状态变更只经由流程引擎（review_workflow）计算，这里负责落库。
    - 状态更新带 compare-and-set（eq("status", 旧值)），并发修改时返回 409。
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

    def list_for(self, ctx: RequestContext, *, status: Optional[str] = None) -> list[dict[str, Any]]:
        query = self.client.table("submissions").select("*")
        if not ctx.can(Capability.VIEW_ALL_INSTITUTIONS):
            query = query.eq("institution", ctx.institution)

        if ctx.role == Role.INSTRUCTOR.value:
            query = query.eq("instructor_id", ctx.user_id)
        elif ctx.role not in FULL_VISIBILITY_ROLES:
            query = query.in_("status", list(LATE_STAGE_STATUSES))

        if status:
            wanted = normalize_status(status)
            if wanted is None:
                raise HTTPException(status_code=422, detail="Invalid status")
            query = query.eq("status", wanted)

        res = query.order("updated_at", desc=True).execute()
        return getattr(res, "data", None) or []

    def get_for(self, ctx: RequestContext, submission_id: str) -> dict[str, Any]:
        submission = load_submission(self.client, submission_id)
        if not can_view_submission(ctx, submission):
            # 不暴露其他机构/他人提交是否存在
            raise NotFound("Submission not found")
        return submission

    def get_detail(self, ctx: RequestContext, submission_id: str) -> dict[str, Any]:
        submission = self.get_for(ctx, submission_id)
        documents = self.list_documents(submission_id)
        reviews_res = (
            self.client.table("reviews")
            .select("*")
            .eq("submission_id", submission_id)
            .execute()
        )
        reviews = getattr(reviews_res, "data", None) or []
        return {
            **submission,
            "submission_documents": documents,
            "reviews": reviews,
            "effective_review": effective_review(reviews),
            "allowed_actions": allowed_actions(submission.get("status"), ctx.role),
        }

    def create(
        self,
        ctx: RequestContext,
        payload: SubmissionCreate,
        *,
        resubmitted_from: Optional[str] = None,
    ) -> dict[str, Any]:
        if not ctx.can(Capability.SUBMIT):
            raise Unauthorized(f"Role {ctx.role or 'unknown'} cannot submit documents")
        if not ctx.institution:
            raise HTTPException(
                status_code=400,
                detail="User institution not found. Please contact administrator.",
            )

        now = _now()
        row = {
            **payload.model_dump(mode="json"),
            "submission_id": generate_submission_code(),
            "title": f"{payload.skill_area} - {payload.cohort}",
            "instructor_id": ctx.user_id,
            "instructor_email": ctx.email,
            "instructor_name": ctx.full_name,
            "institution": ctx.institution,
            "status": INITIAL_STATUS,
            "created_at": now,
            "updated_at": now,
        }
        if resubmitted_from:
            row["resubmitted_from"] = resubmitted_from
        res = self.client.table("submissions").insert(row).execute()
        rows = getattr(res, "data", None) or []
        if not rows:
            raise HTTPException(status_code=500, detail="Failed to create submission")
        created = rows[0]
        self.audit.record(
            AuditEvent(
                action_type=AuditAction.SUBMISSION_CREATED.value,
                actor_id=ctx.user_id,
                actor_role=ctx.role,
                submission_id=str(created.get("id") or ""),
                submission_code=created.get("submission_id"),
                submission_title=created.get("title"),
                old_status=None,
                new_status=INITIAL_STATUS,
            )
        )
        return created

    def _require_owned_draft(self, ctx: RequestContext, submission: dict[str, Any]) -> None:
        if str(submission.get("instructor_id") or "") != ctx.user_id:
            raise Unauthorized("Only the submitting instructor can modify this submission")
        if normalize_status(submission.get("status")) != SubmissionStatus.DRAFT.value:
            raise InvalidTransition("Only draft submissions can be modified")

    def update_draft(self, ctx: RequestContext, submission_id: str, payload: SubmissionUpdate) -> dict[str, Any]:
        submission = load_submission(self.client, submission_id)
        self._require_owned_draft(ctx, submission)

        changes = payload.model_dump(mode="json", exclude_unset=True)
        if not changes:
            return submission
        if "skill_area" in changes or "cohort" in changes:
            skill_area = changes.get("skill_area", submission.get("skill_area"))
            cohort = changes.get("cohort", submission.get("cohort"))
            changes["title"] = f"{skill_area} - {cohort}"
        changes["updated_at"] = _now()

        res = (
            self.client.table("submissions")
            .update(changes)
            .eq("id", submission_id)
            .eq("status", submission.get("status"))
            .execute()
        )
        rows = getattr(res, "data", None) or []
        if not rows:
            raise ConcurrentUpdate("Submission changed while editing; reload and try again")
        updated = rows[0]
        self.audit.record(
            AuditEvent(
                action_type=AuditAction.SUBMISSION_UPDATED.value,
                actor_id=ctx.user_id,
                actor_role=ctx.role,
                submission_id=submission_id,
                submission_code=updated.get("submission_id"),
                submission_title=updated.get("title"),
                old_status=normalize_status(submission.get("status")),
                new_status=normalize_status(updated.get("status")),
            )
        )
        return updated

    def list_documents(self, submission_id: str) -> list[dict[str, Any]]:
        res = (
            self.client.table("submission_documents")
            .select("*")
            .eq("submission_id", submission_id)
            .order("version", desc=True)
            .execute()
        )
        return getattr(res, "data", None) or []

    def upload_document(
        self,
        ctx: RequestContext,
        submission_id: str,
        *,
        file_name: str,
        content: bytes,
        content_type: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        上传新版本文档：{submission}/v{n}/{name}，n 取当前最大版本 + 1。
        """
        submission = load_submission(self.client, submission_id)
        self._require_owned_draft(ctx, submission)

        safe_name = storage_service.safe_file_name(file_name)
        detected = storage_service.content_type_for(safe_name)
        if detected is None:
            raise HTTPException(status_code=400, detail="Only PDF and DOCX documents are accepted")
        if not content:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")

        existing = self.list_documents(submission_id)
        version = max((int(d.get("version") or 0) for d in existing), default=0) + 1
        path = storage_service.document_path(submission_id, version, safe_name)

        try:
            storage_service.upload_document(path=path, content=content, content_type=content_type or detected)
        except Exception as e:
            logger.error("[Documents] storage upload failed for %s: %s", path, e)
            raise HTTPException(status_code=500, detail="Failed to upload document") from e

        row = {
            "submission_id": submission_id,
            "file_name": safe_name,
            "file_path": path,
            "file_size": len(content),
            "file_type": content_type or detected,
            "version": version,
            "uploaded_by": ctx.user_id,
            "uploaded_at": _now(),
        }
        try:
            res = self.client.table("submission_documents").insert(row).execute()
            rows = getattr(res, "data", None) or []
        except Exception as e:
            logger.error("[Documents] metadata insert failed for %s: %s", path, e)
            rows = []
        if not rows:
            # 元数据没写进去时删掉刚上传的对象，避免出现无主文件
            try:
                storage_service.remove_document(path)
            except Exception as e:
                logger.warning("[Documents] orphan cleanup failed for %s (ignored): %s", path, e)
            raise HTTPException(status_code=500, detail="Failed to save document metadata")

        self.audit.log_user_action(
            actor_id=ctx.user_id,
            action_type=AuditAction.DOCUMENT_UPLOADED,
            action=f"Uploaded {safe_name} (v{version}) to {submission.get('submission_id') or submission_id}",
            details={"submission_id": submission_id, "file_path": path, "version": version},
        )
        return rows[0]

    def document_link(self, ctx: RequestContext, submission_id: str, document_id: str) -> dict[str, Any]:
        """
        审阅人/提交人打开文档用的短时签名链接（bucket 为私有）。
        """
        self.get_for(ctx, submission_id)
        res = (
            self.client.table("submission_documents")
            .select("*")
            .eq("id", document_id)
            .eq("submission_id", submission_id)
            .limit(1)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        if not rows:
            raise NotFound("Document not found")
        document = rows[0]
        try:
            link = storage_service.signed_document_link(document["file_path"])
        except Exception as e:
            logger.error("[Documents] signed url failed for %s: %s", document.get("file_path"), e)
            raise HTTPException(status_code=500, detail="Could not generate document link") from e
        return {
            "document_id": document_id,
            "file_name": document.get("file_name"),
            "version": document.get("version"),
            "url": link.url,
            "expires_in": link.expires_in,
        }

    def finalize(
        self,
        ctx: RequestContext,
        submission_id: str,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> dict[str, Any]:
        submission = load_submission(self.client, submission_id)
        documents = self.list_documents(submission_id)
        outcome = finalize_submission(submission, ctx, documents)

        now = _now()
        res = (
            self.client.table("submissions")
            .update({"status": outcome.new_status, "submitted_at": now, "updated_at": now})
            .eq("id", submission_id)
            .eq("status", submission.get("status"))
            .execute()
        )
        rows = getattr(res, "data", None) or []
        if not rows:
            raise ConcurrentUpdate("Submission status changed concurrently; reload and try again")

        self.audit.record(outcome.audit_event)
        self.notifications.dispatch(outcome.notifications, background_tasks)
        return rows[0]

    def resubmit(self, ctx: RequestContext, submission_id: str) -> dict[str, Any]:
        """
        驳回后的重新提交：新建一条 draft，resubmitted_from 指向原记录；原记录保持终态不变。
        """
        original = load_submission(self.client, submission_id)
        if str(original.get("instructor_id") or "") != ctx.user_id:
            raise Unauthorized("Only the submitting instructor can resubmit this submission")
        if normalize_status(original.get("status")) not in REJECTED_STATUSES:
            raise InvalidTransition("Only rejected submissions can be resubmitted")

        payload = SubmissionCreate(
            skill_area=original.get("skill_area") or original.get("title") or "Untitled",
            skill_code=original.get("skill_code"),
            cluster=original.get("cluster"),
            cohort=original.get("cohort") or "Unspecified",
            test_date=original.get("test_date"),
            description=original.get("description"),
        )
        return self.create(ctx, payload, resubmitted_from=submission_id)

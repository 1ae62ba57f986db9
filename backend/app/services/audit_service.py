from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from app.lib.api_client import supabase_admin
from app.models.audit import AuditAction, AuditEntryCreate, AuditLogFilters
from app.services.review_workflow import AuditEvent

logger = logging.getLogger("rfaportal.audit")

CSV_HEADERS = ["Date/Time", "User", "Role", "Action", "Submission ID", "Submission Title", "Details"]

_AUDIT_SELECT = (
    "*,"
    "user:user_id(full_name,email,role),"
    "submission:submission_id(submission_id,title,instructor_name)"
)


def _describe(event: AuditEvent) -> str:
    ref = event.submission_code or event.submission_title or event.submission_id
    action = event.action_type
    if action in {AuditAction.REVIEW_APPROVED.value, AuditAction.REVIEW_REJECTED.value}:
        verb = "approved" if action == AuditAction.REVIEW_APPROVED.value else "rejected"
        stage = (event.stage or "").upper() or "Unknown"
        text = f"{stage} review {verb} for {ref}"
        if event.review_type == "secondary":
            text += " (secondary)"
        return text
    if action == AuditAction.SUBMISSION_SUBMITTED.value:
        return f"Submission {ref} submitted for review"
    if action == AuditAction.SUBMISSION_ARCHIVED.value:
        return f"Submission {ref} archived"
    return f"{action.replace('_', ' ').capitalize()}: {ref}"


def build_audit_entry(event: AuditEvent, *, now: Optional[datetime] = None) -> AuditEntryCreate:
    """
    把流程引擎给出的 AuditEvent 映射为 audit_logs 行（纯函数，不做 I/O）。

    details 固定带上 stage / review_type / secondary / old_status / new_status / decision / comments，
    非审阅类事件对应字段为 None。
    """
    details: dict[str, Any] = {
        "stage": event.stage,
        "review_type": event.review_type,
        "secondary": event.review_type == "secondary",
        "old_status": event.old_status,
        "new_status": event.new_status,
        "decision": event.decision,
        "comments": event.comments,
        "actor_role": event.actor_role,
    }
    return AuditEntryCreate(
        user_id=event.actor_id,
        action=_describe(event),
        action_type=AuditAction(event.action_type),
        submission_id=event.submission_id or None,
        details=details,
        created_at=now or datetime.now(timezone.utc),
    )


class AuditService:
    """
    audit_logs 的唯一写入口（只追加）。

    中文注释:
    - 写入失败不阻断主流程（fail-open），只记 warning。
    - 使用 service_role client，避免 RLS 拦截写入。
    """

    def __init__(self, client: Any = None) -> None:
        self.client = client if client is not None else supabase_admin

    def append(self, entry: AuditEntryCreate) -> Optional[dict[str, Any]]:
        row = entry.model_dump(mode="json")
        try:
            res = self.client.table("audit_logs").insert(row).execute()
        except Exception as e:
            logger.warning("[Audit] insert failed (ignored): %s", e)
            return None
        rows = getattr(res, "data", None) or []
        return rows[0] if rows else None

    def record(self, event: AuditEvent) -> Optional[dict[str, Any]]:
        return self.append(build_audit_entry(event))

    def log_user_action(
        self,
        *,
        actor_id: str,
        action_type: AuditAction,
        action: str,
        target_user_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        """
        用户管理类事件（角色变更、审批、移除、设置修改）不经过流程引擎，直接在这里构造。
        """
        entry = AuditEntryCreate(
            user_id=actor_id,
            action=action,
            action_type=action_type,
            target_user_id=target_user_id,
            details=details or {},
            created_at=datetime.now(timezone.utc),
        )
        return self.append(entry)

    def list_entries(self, filters: AuditLogFilters) -> list[dict[str, Any]]:
        query = self.client.table("audit_logs").select(_AUDIT_SELECT).order("created_at", desc=True)
        if filters.submission_id:
            query = query.eq("submission_id", filters.submission_id)
        if filters.action_type:
            query = query.eq("action_type", filters.action_type)
        if filters.user_id:
            query = query.eq("user_id", filters.user_id)
        if filters.start_date:
            query = query.gte("created_at", filters.start_date)
        if filters.end_date:
            query = query.lte("created_at", filters.end_date)
        res = query.execute()
        return getattr(res, "data", None) or []

    @staticmethod
    def to_csv(rows: Iterable[dict[str, Any]]) -> str:
        rows = list(rows or [])
        if not rows:
            return "No data available"

        buf = io.StringIO()
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for log in rows:
            user = log.get("user") or {}
            submission = log.get("submission") or {}
            writer.writerow(
                [
                    log.get("created_at") or "",
                    user.get("full_name") or "System",
                    user.get("role") or "N/A",
                    log.get("action") or "",
                    submission.get("submission_id") or "N/A",
                    submission.get("title") or "N/A",
                    json.dumps(log.get("details") or {}, ensure_ascii=False),
                ]
            )
        return buf.getvalue().rstrip("\n")

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from fastapi import BackgroundTasks
from postgrest.exceptions import APIError

from app.core.config import get_frontend_url
from app.core.mail import REVIEW_DECISION_TEMPLATE, WORK_ITEM_TEMPLATE, email_service
from app.lib.api_client import create_user_supabase_client, supabase_admin
from app.services.review_workflow import NotificationEvent

logger = logging.getLogger("rfaportal.notifications")

# 工作队列 → 接收通知的角色
POOL_ROLES: dict[str, tuple[str, ...]] = {
    "pc": ("pc",),
    "amo": ("amo",),
    "records": ("records",),
}

POOL_LABELS: dict[str, str] = {
    "pc": "PC review",
    "amo": "AMO review",
    "records": "archiving",
}


class NotificationService:
    """
    通知服务：封装 notifications 表的读写，以及审阅结果邮件的排队发送

    中文注释:
    1) 写入使用 supabase_admin（service_role），避免 RLS 导致写入失败。
    2) 用户读取/更新使用“用户态 client”（注入 JWT），确保 RLS 生效，防止越权。
    3) 通知是尽力而为：任何失败只记日志，不影响审阅/提交主流程。
    """

    def __init__(self, client: Any = None, mailer: Any = None) -> None:
        self.client = client if client is not None else supabase_admin
        self.mailer = mailer if mailer is not None else email_service

    def create_notification(
        self,
        *,
        user_id: str,
        submission_id: Optional[str],
        type: str,
        title: str,
        message: str,
    ) -> Optional[Dict[str, Any]]:
        try:
            payload = {
                "user_id": user_id,
                "submission_id": submission_id,
                "type": type,
                "title": title,
                "message": message,
                "is_read": False,
            }
            res = self.client.table("notifications").insert(payload).execute()
            rows = getattr(res, "data", None) or []
            return rows[0] if rows else None
        except APIError as e:
            # 中文注释:
            # - notifications.user_id 有外键指向 auth.users(id)；已被删除的账号会触发 23503。
            # - 该情况对主流程无影响，这里静默忽略并返回 None。
            text = str(e).lower()
            code = str(getattr(e, "code", "") or "").lower()
            if "23503" in code or "23503" in text:
                if "notifications_user_id_fkey" in text or "foreign key" in text:
                    return None
            logger.warning("[Notifications] create failed (ignored): %s", e)
            return None
        except Exception as e:
            logger.warning("[Notifications] create failed (ignored): %s", e)
            return None

    def pool_members(self, pool: str, institution: Optional[str]) -> List[Dict[str, Any]]:
        roles = POOL_ROLES.get(pool)
        if not roles:
            return []
        try:
            query = (
                self.client.table("profiles")
                .select("id,email,full_name,role,institution")
                .in_("role", list(roles))
                .eq("approval_status", "approved")
            )
            if institution:
                query = query.eq("institution", institution)
            res = query.execute()
        except Exception as e:
            logger.warning("[Notifications] pool lookup failed for %s (ignored): %s", pool, e)
            return []
        return getattr(res, "data", None) or []

    def _queue_email(
        self,
        background_tasks: Optional[BackgroundTasks],
        *,
        to_email: Optional[str],
        subject: str,
        template_name: str,
        context: Dict[str, Any],
        submission_id: Optional[str] = None,
    ) -> None:
        if not to_email or background_tasks is None:
            return
        background_tasks.add_task(
            self.mailer.deliver,
            to_email=to_email,
            subject=subject,
            template_name=template_name,
            context=context,
            submission_id=submission_id,
        )

    def _dispatch_review_decision(self, event: NotificationEvent, background_tasks: Optional[BackgroundTasks]) -> None:
        role_label = (event.reviewer_role or "").upper()
        if event.recipient_user_id:
            self.create_notification(
                user_id=event.recipient_user_id,
                submission_id=event.submission_id,
                type="review_decision",
                title=f"{event.submission_title} - {role_label} {event.decision}".strip(),
                message=event.comment or f"Your submission was {event.decision} at the {role_label} stage",
            )
        subject, context = self.mailer.build_review_email(
            to_name=event.recipient_name,
            submission_title=event.submission_title,
            action=event.decision or "",
            reviewer_role=event.reviewer_role or "",
            review_comment=event.comment,
            submission_id=event.submission_id,
        )
        self._queue_email(
            background_tasks,
            to_email=event.recipient_email,
            subject=subject,
            template_name=REVIEW_DECISION_TEMPLATE,
            context=context,
            submission_id=event.submission_id,
        )

    def _dispatch_work_item(self, event: NotificationEvent, background_tasks: Optional[BackgroundTasks]) -> None:
        pool = event.recipient_pool or ""
        label = POOL_LABELS.get(pool, "review")
        link = f"{get_frontend_url()}/dashboard/submissions/{event.submission_id}"
        for member in self.pool_members(pool, event.institution):
            member_id = str(member.get("id") or "")
            if not member_id:
                continue
            self.create_notification(
                user_id=member_id,
                submission_id=event.submission_id,
                type="review",
                title="Review Required" if pool != "records" else "Ready to Archive",
                message=f"{event.submission_title} is pending your {label}",
            )
            self._queue_email(
                background_tasks,
                to_email=member.get("email"),
                subject=f"[RFA Portal] {event.submission_title} is waiting for {label}",
                template_name=WORK_ITEM_TEMPLATE,
                context={
                    "to_name": member.get("full_name") or "Colleague",
                    "submission_title": event.submission_title,
                    "queue_label": label,
                    "link": link,
                },
                submission_id=event.submission_id,
            )

    def dispatch(
        self,
        events: Iterable[NotificationEvent],
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> None:
        """
        执行流程引擎给出的通知描述。邮件通过 BackgroundTasks 在响应返回后发送。
        """
        for event in events or []:
            try:
                if event.kind == "review_decision":
                    self._dispatch_review_decision(event, background_tasks)
                elif event.kind == "work_item":
                    self._dispatch_work_item(event, background_tasks)
                elif event.recipient_user_id:
                    status = (event.new_status or "").replace("_", " ")
                    self.create_notification(
                        user_id=event.recipient_user_id,
                        submission_id=event.submission_id,
                        type="submission",
                        title=f"{event.submission_title} - {status.upper()}",
                        message=f"Submission has been {status}",
                    )
            except Exception as e:
                logger.warning("[Notifications] dispatch %s failed (ignored): %s", event.kind, e)

    def list_for_current_user(self, *, access_token: str, limit: int = 20) -> List[Dict[str, Any]]:
        client = create_user_supabase_client(access_token)
        res = (
            client.table("notifications")
            .select("*")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return getattr(res, "data", None) or []

    def mark_read(
        self,
        *,
        access_token: str,
        user_id: str,
        notification_ids: List[str],
        read: bool = True,
    ) -> List[Dict[str, Any]]:
        if not notification_ids:
            return []
        client = create_user_supabase_client(access_token)
        res = (
            client.table("notifications")
            .update({"is_read": read})
            .in_("id", notification_ids)
            .eq("user_id", user_id)
            .execute()
        )
        return getattr(res, "data", None) or []

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import HTTPException

from app.core.config import WorkflowSettings
from app.core.roles import RequestContext
from app.lib.api_client import supabase_admin
from app.models.audit import AuditAction
from app.models.user import WorkflowSettingsUpdate
from app.services.audit_service import AuditService

logger = logging.getLogger("rfaportal.settings")

SETTINGS_ROW_ID = 1


class SettingsService:
    """
    workflow_settings 单行表的读写；读不到时回落到环境变量默认值。
    """

    def __init__(self, client: Any = None, audit: Optional[AuditService] = None) -> None:
        self.client = client if client is not None else supabase_admin
        self.audit = audit if audit is not None else AuditService(self.client)

    def get_workflow_settings(self) -> dict[str, Any]:
        defaults = WorkflowSettings.from_env().as_dict()
        try:
            res = (
                self.client.table("workflow_settings")
                .select("*")
                .eq("id", SETTINGS_ROW_ID)
                .limit(1)
                .execute()
            )
        except Exception as e:
            # 中文注释: 迁移未跑/表缺失时不阻断页面，直接用默认值
            logger.warning("[Settings] workflow_settings read failed (ignored): %s", e)
            return defaults
        rows = getattr(res, "data", None) or []
        if not rows:
            return defaults
        stored = rows[0]
        return {key: stored.get(key, value) if stored.get(key) is not None else value for key, value in defaults.items()}

    def update_workflow_settings(self, ctx: RequestContext, payload: WorkflowSettingsUpdate) -> dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        merged = {**self.get_workflow_settings(), **changes}
        row = {
            "id": SETTINGS_ROW_ID,
            **merged,
            "updated_by": ctx.user_id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.client.table("workflow_settings").upsert(row, on_conflict="id").execute()
        except Exception as e:
            logger.error("[Settings] workflow_settings upsert failed: %s", e)
            raise HTTPException(status_code=500, detail="Failed to update settings") from e

        self.audit.log_user_action(
            actor_id=ctx.user_id,
            action_type=AuditAction.SETTINGS_UPDATED,
            action="Updated workflow settings",
            details={"changes": changes},
        )
        return merged

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from app.core.role_matrix import Capability
from app.core.roles import RequestContext, require_capability
from app.models.audit import AuditLogFilters
from app.services.audit_service import AuditService

router = APIRouter(tags=["Audit Logs"])

audit_readers = require_capability(Capability.VIEW_AUDIT_LOG)


@router.get("/audit-logs")
async def list_audit_logs(
    submission_id: Optional[str] = None,
    action_type: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    download: bool = False,
    _ctx: RequestContext = Depends(audit_readers),
):
    """
    审计日志查询（administrator / institution_manager / records）。

    download=true 时返回 CSV 附件。
    """
    service = AuditService()
    rows = service.list_entries(
        AuditLogFilters(
            submission_id=submission_id,
            action_type=action_type,
            user_id=user_id,
            start_date=start_date,
            end_date=end_date,
        )
    )
    if download:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H%M%SZ")
        return Response(
            content=service.to_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="audit-logs-{stamp}.csv"'},
        )
    return {"success": True, "data": rows}

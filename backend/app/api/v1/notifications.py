from fastapi import APIRouter, Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.roles import RequestContext, get_request_context
from app.models.notification import NotificationMarkRead
from app.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])

# 读写 notifications 需要原始 JWT：用户态 client 让 RLS 只放行本人的行
bearer = HTTPBearer()


@router.get("")
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    _ctx: RequestContext = Depends(get_request_context),
    credentials: HTTPAuthorizationCredentials = Depends(bearer),
):
    rows = NotificationService().list_for_current_user(access_token=credentials.credentials, limit=limit)
    return {"success": True, "data": rows}


@router.patch("")
async def mark_notifications(
    payload: NotificationMarkRead,
    ctx: RequestContext = Depends(get_request_context),
    credentials: HTTPAuthorizationCredentials = Depends(bearer),
):
    """
    批量标记已读/未读；额外按 user_id 过滤，只会命中自己的通知。
    """
    updated = NotificationService().mark_read(
        access_token=credentials.credentials,
        user_id=ctx.user_id,
        notification_ids=payload.notification_ids,
        read=payload.read,
    )
    return {"success": True, "data": updated}

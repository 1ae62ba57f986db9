from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends

from app.core.roles import RequestContext, get_request_context
from app.models.reviews import ReviewCreate
from app.services.review_service import ReviewService
from app.services.workflow_errors import WorkflowError, raise_http

router = APIRouter(tags=["Reviews"])


def _service() -> ReviewService:
    return ReviewService()


@router.post("/reviews", status_code=201)
async def submit_review(
    payload: ReviewCreate,
    background_tasks: BackgroundTasks,
    ctx: RequestContext = Depends(get_request_context),
):
    """
    提交 PC / AMO 审阅结论（approved / rejected）。

    中文注释:
    - 主审/代审的判定、驳回理由校验、状态流转全部由流程引擎完成。
    - 返回写入后的 review 行；审阅邮件在响应后通过 BackgroundTasks 发送。
    """
    try:
        return _service().submit_review(ctx, payload, background_tasks)
    except WorkflowError as e:
        raise_http(e)


@router.get("/reviews")
async def list_reviews(
    submission_id: Optional[UUID] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    """
    带 submission_id：该提交的全部审阅；不带：当前用户自己做过的审阅。
    """
    try:
        return _service().list_reviews(ctx, str(submission_id) if submission_id else None)
    except WorkflowError as e:
        raise_http(e)

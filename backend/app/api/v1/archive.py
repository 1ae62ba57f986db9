from fastapi import APIRouter, BackgroundTasks, Depends

from app.core.role_matrix import Capability
from app.core.roles import RequestContext, get_request_context, require_capability
from app.models.submission import ArchiveRequest
from app.services.archive_service import ArchiveService
from app.services.workflow_errors import WorkflowError, raise_http

router = APIRouter(prefix="/archive", tags=["Archive"])

records_only = require_capability(Capability.ARCHIVE)


@router.post("", status_code=201)
async def archive_submission(
    payload: ArchiveRequest,
    background_tasks: BackgroundTasks,
    ctx: RequestContext = Depends(records_only),
):
    """
    归档 AMO 已通过的提交（records / administrator）。
    """
    try:
        row = ArchiveService().archive(ctx, payload, background_tasks)
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": row}


@router.get("")
async def list_archive(ctx: RequestContext = Depends(get_request_context)):
    return {"success": True, "data": ArchiveService().list_archived(ctx)}

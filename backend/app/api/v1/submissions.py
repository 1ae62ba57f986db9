from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, UploadFile

from app.core.config import app_config
from app.core.role_matrix import Capability
from app.core.roles import RequestContext, get_request_context, require_capability
from app.models.submission import SubmissionCreate, SubmissionUpdate
from app.services.submission_service import SubmissionService
from app.services.workflow_errors import WorkflowError, raise_http

router = APIRouter(prefix="/submissions", tags=["Submissions"])

instructor_only = require_capability(Capability.SUBMIT)

# 单个文档上限（MAX_DOCUMENT_MB，默认 25MB）
MAX_DOCUMENT_BYTES = app_config.max_document_bytes
UPLOAD_CHUNK_BYTES = 1024 * 1024


def _service() -> SubmissionService:
    return SubmissionService()


@router.get("")
async def list_submissions(
    status: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    """
    按角色与机构过滤的提交列表（最近更新在前）。
    """
    return {"success": True, "data": _service().list_for(ctx, status=status)}


@router.post("", status_code=201)
async def create_submission(
    payload: SubmissionCreate,
    ctx: RequestContext = Depends(instructor_only),
):
    try:
        created = _service().create(ctx, payload)
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": created}


@router.get("/{submission_id}")
async def get_submission(
    submission_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
):
    """
    详情：含文档版本、审阅记录、当前生效的审阅结论以及当前用户可执行的动作。
    """
    try:
        detail = _service().get_detail(ctx, str(submission_id))
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": detail}


@router.patch("/{submission_id}")
async def update_submission(
    submission_id: UUID,
    payload: SubmissionUpdate,
    ctx: RequestContext = Depends(instructor_only),
):
    try:
        updated = _service().update_draft(ctx, str(submission_id), payload)
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": updated}


@router.post("/{submission_id}/finalize")
async def finalize_submission(
    submission_id: UUID,
    background_tasks: BackgroundTasks,
    ctx: RequestContext = Depends(get_request_context),
):
    """
    draft → submitted（需至少一个已上传文档）。
    """
    try:
        updated = _service().finalize(ctx, str(submission_id), background_tasks)
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": updated}


@router.post("/{submission_id}/resubmit", status_code=201)
async def resubmit_submission(
    submission_id: UUID,
    ctx: RequestContext = Depends(instructor_only),
):
    try:
        created = _service().resubmit(ctx, str(submission_id))
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": created}


@router.get("/{submission_id}/documents")
async def list_documents(
    submission_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
):
    service = _service()
    try:
        service.get_for(ctx, str(submission_id))
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": service.list_documents(str(submission_id))}


async def _read_limited(file: UploadFile, limit: int) -> bytes:
    """
    分块读取上传内容，超过上限立即 413，不把超大文件整个读进内存。
    """
    if file.size is not None and file.size > limit:
        raise HTTPException(status_code=413, detail="File too large")
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        if total > limit:
            raise HTTPException(status_code=413, detail="File too large")
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/{submission_id}/documents", status_code=201)
async def upload_document(
    submission_id: UUID,
    file: UploadFile = File(...),
    ctx: RequestContext = Depends(instructor_only),
):
    content = await _read_limited(file, MAX_DOCUMENT_BYTES)
    try:
        row = _service().upload_document(
            ctx,
            str(submission_id),
            file_name=file.filename or "file",
            content=content,
            content_type=file.content_type,
        )
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": row}


@router.get("/{submission_id}/documents/{document_id}/link")
async def get_document_link(
    submission_id: UUID,
    document_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
):
    """
    文档的 10 分钟签名下载链接（对提交不可见的用户返回 404）。
    """
    try:
        link = _service().document_link(ctx, str(submission_id), str(document_id))
    except WorkflowError as e:
        raise_http(e)
    return {"success": True, "data": link}

from fastapi import APIRouter, Depends

from app.core.role_matrix import Capability
from app.core.roles import RequestContext, require_capability
from app.models.user import WorkflowSettingsUpdate
from app.services.settings_service import SettingsService

router = APIRouter(prefix="/settings", tags=["Settings"])

# records / institution_manager 可查看；只有 administrator 可修改
settings_readers = require_capability(Capability.MANAGE_SETTINGS, Capability.ARCHIVE, Capability.MANAGE_USERS)
settings_writers = require_capability(Capability.MANAGE_SETTINGS)


@router.get("/workflow")
async def get_workflow_settings(_ctx: RequestContext = Depends(settings_readers)):
    return {"success": True, "data": SettingsService().get_workflow_settings()}


@router.put("/workflow")
async def update_workflow_settings(
    payload: WorkflowSettingsUpdate,
    ctx: RequestContext = Depends(settings_writers),
):
    settings = SettingsService().update_workflow_settings(ctx, payload)
    return {"success": True, "settings": settings}

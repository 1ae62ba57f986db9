from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.role_matrix import (
    Capability,
    can_secondary_review,
    has_capability,
    is_primary_reviewer,
    normalize_role,
)
from app.services.workflow_errors import InvalidTransition


class SubmissionStatus(str, Enum):
    """
    提交文档的生命周期状态。

    中文注释:
    - pc_review / amo_review 是展示层别名，写库前由 normalize_status 归一化。
    - archived / pc_rejected / amo_rejected 为终态：驳回后重新提交会新建一条 draft。
    """

    DRAFT = "draft"
    SUBMITTED = "submitted"
    PC_REVIEW = "pc_review"
    PC_APPROVED = "pc_approved"
    PC_REJECTED = "pc_rejected"
    AMO_REVIEW = "amo_review"
    AMO_APPROVED = "amo_approved"
    AMO_REJECTED = "amo_rejected"
    ARCHIVED = "archived"


class WorkflowAction(str, Enum):
    FINALIZE = "finalize"
    APPROVE = "approve"
    REJECT = "reject"
    ARCHIVE = "archive"


STATUS_ALIASES: dict[str, str] = {
    SubmissionStatus.PC_REVIEW.value: SubmissionStatus.SUBMITTED.value,
    SubmissionStatus.AMO_REVIEW.value: SubmissionStatus.PC_APPROVED.value,
    # 历史数据
    "final_archived": SubmissionStatus.ARCHIVED.value,
}

INITIAL_STATUS = SubmissionStatus.DRAFT.value

TERMINAL_STATUSES: frozenset[str] = frozenset(
    {
        SubmissionStatus.ARCHIVED.value,
        SubmissionStatus.PC_REJECTED.value,
        SubmissionStatus.AMO_REJECTED.value,
    }
)

# 审阅阶段对应的“待审”状态
STAGE_STATUS: dict[str, str] = {
    "pc": SubmissionStatus.SUBMITTED.value,
    "amo": SubmissionStatus.PC_APPROVED.value,
}


@dataclass(frozen=True)
class Transition:
    from_status: str
    action: str
    to_status: str
    capability: Optional[str] = None
    stage: Optional[str] = None

    def permits(self, role: str | None) -> bool:
        if self.stage is not None:
            return is_primary_reviewer(role, self.stage) or can_secondary_review(role, self.stage)
        return self.capability is not None and has_capability(role, self.capability)


TRANSITIONS: tuple[Transition, ...] = (
    Transition("draft", "finalize", "submitted", capability=Capability.SUBMIT.value),
    Transition("submitted", "approve", "pc_approved", stage="pc"),
    Transition("submitted", "reject", "pc_rejected", stage="pc"),
    Transition("pc_approved", "approve", "amo_approved", stage="amo"),
    Transition("pc_approved", "reject", "amo_rejected", stage="amo"),
    Transition("amo_approved", "archive", "archived", capability=Capability.ARCHIVE.value),
)

_TRANSITION_INDEX: dict[tuple[str, str], Transition] = {
    (t.from_status, t.action): t for t in TRANSITIONS
}


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    if not v:
        return None
    v = STATUS_ALIASES.get(v, v)
    try:
        return SubmissionStatus(v).value
    except ValueError:
        return None


def find_transition(current: str | None, action: str | None) -> Transition | None:
    cur = normalize_status(current)
    act = str(action or "").strip().lower()
    if cur is None:
        return None
    return _TRANSITION_INDEX.get((cur, act))


def next_state(current: str | None, action: str, actor_role: str | None) -> str:
    """
    按状态转移表计算下一状态。

    抛出:
    - InvalidTransition: (current, action) 无对应行，或角色不具备该行所需能力
    """
    transition = find_transition(current, action)
    if transition is None:
        raise InvalidTransition(f"Invalid transition: {current!r} --{action}-->")
    if not transition.permits(actor_role):
        raise InvalidTransition(
            f"Role {normalize_role(actor_role) or 'unknown'} cannot {transition.action} "
            f"from {transition.from_status}"
        )
    return transition.to_status


def allowed_actions(current: str | None, role: str | None) -> list[str]:
    cur = normalize_status(current)
    return sorted(t.action for t in TRANSITIONS if t.from_status == cur and t.permits(role))


def workflow_definition() -> dict:
    """
    给前端用的稳定 JSON 结构。
    """
    return {
        "states": [s.value for s in SubmissionStatus],
        "initial": INITIAL_STATUS,
        "terminal": sorted(TERMINAL_STATUSES),
        "aliases": dict(STATUS_ALIASES),
        "transitions": [
            {
                "from": t.from_status,
                "action": t.action,
                "to": t.to_status,
                "capability": t.capability,
                "stage": t.stage,
            }
            for t in TRANSITIONS
        ],
    }


def stage_for_status(status: str | None) -> str | None:
    cur = normalize_status(status)
    for stage, waiting in STAGE_STATUS.items():
        if waiting == cur:
            return stage
    return None


class SubmissionCreate(BaseModel):
    skill_area: str = Field(..., min_length=1, max_length=200)
    skill_code: Optional[str] = Field(default=None, max_length=50)
    cluster: Optional[str] = Field(default=None, max_length=200)
    cohort: str = Field(..., min_length=1, max_length=100)
    test_date: Optional[date] = None
    description: Optional[str] = Field(default=None, max_length=5000)


class SubmissionUpdate(BaseModel):
    """
    草稿编辑。状态变更只能走 finalize / reviews / archive 接口。
    """

    skill_area: Optional[str] = Field(default=None, min_length=1, max_length=200)
    skill_code: Optional[str] = Field(default=None, max_length=50)
    cluster: Optional[str] = Field(default=None, max_length=200)
    cohort: Optional[str] = Field(default=None, min_length=1, max_length=100)
    test_date: Optional[date] = None
    description: Optional[str] = Field(default=None, max_length=5000)


class ArchiveRequest(BaseModel):
    submission_id: UUID
    file_format: Optional[str] = Field(default=None, max_length=50)
    retention_until: Optional[date] = None
    archive_notes: Optional[str] = Field(default=None, max_length=5000)

from __future__ import annotations

import logging
import re
from enum import Enum

logger = logging.getLogger("rfaportal.roles")

# 中文注释：
# - 这里集中定义“角色 -> 能力”矩阵，所有授权判断都走这里，不在路由里比较角色字符串。
# - 未知角色一律没有任何能力（fail-closed）。


class Role(str, Enum):
    INSTRUCTOR = "instructor"
    SENIOR_INSTRUCTOR = "senior_instructor"
    PC = "pc"
    AMO = "amo"
    INSTITUTION_MANAGER = "institution_manager"
    RECORDS = "records"
    REGISTRATION = "registration"
    ADMINISTRATOR = "administrator"


class Capability(str, Enum):
    SUBMIT = "submit"
    REVIEW_AS_PC = "review_as_pc"
    REVIEW_AS_AMO = "review_as_amo"
    SECONDARY_REVIEW = "secondary_review"
    ARCHIVE = "archive"
    MANAGE_USERS = "manage_users"
    VIEW_ALL_INSTITUTIONS = "view_all_institutions"
    VIEW_USERS = "view_users"
    APPROVE_USERS = "approve_users"
    VIEW_AUDIT_LOG = "view_audit_log"
    MANAGE_SETTINGS = "manage_settings"


# Legacy spellings from the update-role deployment.
ROLE_ALIASES: dict[str, str] = {
    "admin": Role.ADMINISTRATOR.value,
    "head_of_programs": Role.ADMINISTRATOR.value,
    "im": Role.INSTITUTION_MANAGER.value,
}

ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    Role.INSTRUCTOR.value: frozenset({Capability.SUBMIT.value}),
    Role.SENIOR_INSTRUCTOR.value: frozenset(
        {Capability.SUBMIT.value, Capability.SECONDARY_REVIEW.value}
    ),
    Role.PC.value: frozenset({Capability.REVIEW_AS_PC.value}),
    Role.AMO.value: frozenset({Capability.REVIEW_AS_AMO.value}),
    Role.INSTITUTION_MANAGER.value: frozenset(
        {
            Capability.SECONDARY_REVIEW.value,
            Capability.MANAGE_USERS.value,
            Capability.VIEW_USERS.value,
            Capability.VIEW_AUDIT_LOG.value,
        }
    ),
    Role.RECORDS.value: frozenset({Capability.ARCHIVE.value, Capability.VIEW_AUDIT_LOG.value}),
    Role.REGISTRATION.value: frozenset({Capability.VIEW_USERS.value}),
    Role.ADMINISTRATOR.value: frozenset(
        {
            Capability.SECONDARY_REVIEW.value,
            Capability.ARCHIVE.value,
            Capability.MANAGE_USERS.value,
            Capability.VIEW_USERS.value,
            Capability.APPROVE_USERS.value,
            Capability.VIEW_ALL_INSTITUTIONS.value,
            Capability.VIEW_AUDIT_LOG.value,
            Capability.MANAGE_SETTINGS.value,
        }
    ),
}

# senior_instructor 只能替 PC 审；IM/管理员两个阶段都可以。
SECONDARY_STAGES: dict[str, frozenset[str]] = {
    Role.SENIOR_INSTRUCTOR.value: frozenset({"pc"}),
    Role.INSTITUTION_MANAGER.value: frozenset({"pc", "amo"}),
    Role.ADMINISTRATOR.value: frozenset({"pc", "amo"}),
}

PRIMARY_STAGE_CAPABILITY: dict[str, str] = {
    "pc": Capability.REVIEW_AS_PC.value,
    "amo": Capability.REVIEW_AS_AMO.value,
}

VALID_ROLES: frozenset[str] = frozenset(r.value for r in Role)


def normalize_role(raw: str | None) -> str:
    """
    将输入角色归一化（去空、小写、空格/连字符转下划线），并解析历史别名。

    中文注释：
    - 别名命中时记 warning，方便发现仍在使用旧命名方案（admin/im）的部署。
    """
    role = str(raw or "").strip().lower()
    if not role:
        return ""
    role = re.sub(r"[\s\-]+", "_", role)
    role = re.sub(r"_+", "_", role)
    canonical = ROLE_ALIASES.get(role)
    if canonical is not None:
        logger.warning("[Roles] legacy role name %r resolved to %r", role, canonical)
        return canonical
    return role


def has_capability(role: str | None, capability: str | Capability) -> bool:
    cap = capability.value if isinstance(capability, Capability) else str(capability)
    return cap in ROLE_CAPABILITIES.get(normalize_role(role), frozenset())


def list_capabilities(role: str | None) -> set[str]:
    """
    返回角色拥有的能力集合（用于前端 capability 输出）。
    """
    return set(ROLE_CAPABILITIES.get(normalize_role(role), frozenset()))


def secondary_stages(role: str | None) -> frozenset[str]:
    normalized = normalize_role(role)
    if not has_capability(normalized, Capability.SECONDARY_REVIEW):
        return frozenset()
    return SECONDARY_STAGES.get(normalized, frozenset())


def is_primary_reviewer(role: str | None, stage: str) -> bool:
    capability = PRIMARY_STAGE_CAPABILITY.get(stage)
    return bool(capability) and has_capability(role, capability)


def can_secondary_review(role: str | None, stage: str) -> bool:
    return stage in secondary_stages(role)


def roles_with_capability(capability: str | Capability) -> list[str]:
    cap = capability.value if isinstance(capability, Capability) else str(capability)
    return sorted(role for role, caps in ROLE_CAPABILITIES.items() if cap in caps)


def is_valid_role(raw: str | None) -> bool:
    return normalize_role(raw) in VALID_ROLES

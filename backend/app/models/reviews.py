from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class ReviewStage(str, Enum):
    PC = "pc"
    AMO = "amo"


class ReviewDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewType(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


# 阶段先后顺序：AMO 晚于 PC
STAGE_ORDER: dict[str, int] = {ReviewStage.PC.value: 0, ReviewStage.AMO.value: 1}


class ReviewCreate(BaseModel):
    """
    POST /reviews 请求体（字段名与旧前端保持一致）。
    """

    submission_id: UUID
    reviewer_role: Literal["pc", "amo"]
    status: Literal["approved", "rejected"]
    comments: str = Field(default="", max_length=20000)

    @field_validator("comments", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

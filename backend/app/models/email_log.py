from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

EmailProvider = Literal["smtp", "resend"]


class EmailStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class EmailLogCreate(BaseModel):
    """
    public.email_logs 写入行（每次投递尝试一条）
    """

    recipient: str
    subject: str
    template_name: str
    status: EmailStatus
    provider: Optional[EmailProvider] = None
    submission_id: Optional[str] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)

import os
from dataclasses import dataclass, field
from typing import Optional

# === 配置层 ===
# 中文注释:
# - 所有配置只从环境变量读取（main.py 启动时 load_dotenv 注入 .env）。
# - 每组配置一个 frozen dataclass；可选的外部服务（SMTP / Resend）未配置时 from_env() 返回 None。


def _env_str(key: str, default: str = "") -> str:
    return (os.environ.get(key) or default).strip()


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int) -> int:
    try:
        return int(_env_str(key) or default)
    except ValueError:
        return default


def _env_list(key: str) -> list[str]:
    return [p.strip().rstrip("/") for p in _env_str(key).split(",") if p.strip()]


@dataclass(frozen=True)
class AppConfig:
    """
    进程级配置：运行环境、Supabase 连接、鉴权与上传限制。
    """

    env: str
    supabase_url: str
    supabase_key: str
    jwt_secret: str
    frontend_origins: tuple[str, ...] = field(default_factory=tuple)
    max_document_mb: int = 25

    @property
    def is_production(self) -> bool:
        return self.env == "production"

    @property
    def max_document_bytes(self) -> int:
        return self.max_document_mb * 1024 * 1024

    @staticmethod
    def from_env() -> "AppConfig":
        origins: list[str] = []
        for o in [_env_str("FRONTEND_ORIGIN").rstrip("/"), *_env_list("FRONTEND_ORIGINS")]:
            if o and o not in origins:
                origins.append(o)
        return AppConfig(
            env=_env_str("APP_ENV", "development").lower(),
            supabase_url=_env_str("SUPABASE_URL"),
            # service_role key：绕过 RLS 的写入（审阅、审计、归档）
            supabase_key=_env_str("SUPABASE_SERVICE_ROLE_KEY"),
            jwt_secret=_env_str("SUPABASE_JWT_SECRET", "mock-secret-replace-later"),
            frontend_origins=tuple(origins) or ("http://localhost:3000",),
            max_document_mb=_env_int("MAX_DOCUMENT_MB", 25),
        )


app_config = AppConfig.from_env()


@dataclass(frozen=True)
class SMTPConfig:
    """
    SMTP 配置（从环境变量读取）

    中文注释:
    - 只存在于后端进程内，不下发前端。
    - 本地/CI 可以不配置：审阅邮件降级为只记日志。
    """

    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    from_email: str
    use_starttls: bool

    @staticmethod
    def from_env() -> Optional["SMTPConfig"]:
        host = _env_str("SMTP_HOST")
        if not host:
            return None
        user = _env_str("SMTP_USER") or None
        return SMTPConfig(
            host=host,
            port=_env_int("SMTP_PORT", 587),
            user=user,
            password=_env_str("SMTP_PASSWORD") or None,
            from_email=_env_str("SMTP_FROM_EMAIL") or user or "no-reply@rfaportal.local",
            use_starttls=_env_bool("SMTP_USE_STARTTLS", True),
        )


@dataclass(frozen=True)
class ResendConfig:
    """
    Resend：SMTP 缺省时的生产邮件通道。
    """

    api_key: str
    sender: str

    @staticmethod
    def from_env() -> Optional["ResendConfig"]:
        api_key = _env_str("RESEND_API_KEY")
        if not api_key:
            return None
        return ResendConfig(api_key=api_key, sender=_env_str("EMAIL_SENDER", "RFA Portal <onboarding@resend.dev>"))


@dataclass(frozen=True)
class WorkflowSettings:
    """
    审阅流程的全局设置。

    中文注释:
    - workflow_settings 表只有一行；表不存在/为空时使用这里的环境变量默认值。
    - review_timeouts_days 仅用于前端提示与升级邮件，不参与状态机判定。
    """

    review_timeouts_days: int
    escalation_email: str
    default_primary_contact: Optional[str]
    file_retention_years: int

    @staticmethod
    def from_env() -> "WorkflowSettings":
        return WorkflowSettings(
            review_timeouts_days=_env_int("REVIEW_TIMEOUT_DAYS", 14),
            escalation_email=_env_str("ESCALATION_EMAIL", "admin-escalations@school.edu"),
            default_primary_contact=_env_str("DEFAULT_PRIMARY_CONTACT") or None,
            file_retention_years=_env_int("FILE_RETENTION_YEARS", 5),
        )

    def as_dict(self) -> dict:
        return {
            "review_timeouts_days": self.review_timeouts_days,
            "escalation_email": self.escalation_email,
            "default_primary_contact": self.default_primary_contact,
            "file_retention_years": self.file_retention_years,
        }


def get_frontend_url() -> str:
    """
    邮件中的链接前缀（例如 “查看提交” 按钮）。
    """
    return _env_str("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")

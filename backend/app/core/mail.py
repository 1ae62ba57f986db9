import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Dict, Optional

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape
from tenacity import retry, stop_after_attempt, wait_exponential

from app.core.config import ResendConfig, SMTPConfig, get_frontend_url
from app.models.email_log import EmailLogCreate, EmailStatus

logger = logging.getLogger("rfaportal.mail")

REVIEW_DECISION_TEMPLATE = "review_decision.html"
WORK_ITEM_TEMPLATE = "work_item.html"

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
DEFAULT_SENDER = "RFA Portal <no-reply@rfaportal.local>"

_UNSET = object()


class EmailService:
    """
    门户邮件：审阅结论通知 + 待办提醒。

    中文注释:
    - 投递顺序 SMTP → Resend（Resend 带 tenacity 重试）；两者都未配置时直接跳过。
    - deliver() 是 BackgroundTasks 的入口：渲染模板、投递、写 email_logs，任何失败都不向上抛。
    - 构造参数可注入（单测传 None 关闭某个 provider 或关闭日志写入）。
    """

    def __init__(
        self,
        *,
        smtp_config: Any = _UNSET,
        resend_config: Any = _UNSET,
        log_client: Any = _UNSET,
    ):
        self.smtp_config: Optional[SMTPConfig] = SMTPConfig.from_env() if smtp_config is _UNSET else smtp_config
        self.resend_config: Optional[ResendConfig] = (
            ResendConfig.from_env() if resend_config is _UNSET else resend_config
        )
        if self.resend_config:
            resend.api_key = self.resend_config.api_key

        if log_client is _UNSET:
            from app.lib.api_client import supabase_admin

            log_client = supabase_admin
        self._log_client = log_client

        self._templates = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def is_configured(self) -> bool:
        return bool(self.smtp_config or self.resend_config)

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        return self._templates.get_template(template_name).render(**context)

    def build_review_email(
        self,
        *,
        to_name: Optional[str],
        submission_title: str,
        action: str,
        reviewer_role: str,
        review_comment: Optional[str],
        submission_id: Optional[str] = None,
    ) -> tuple[str, Dict[str, Any]]:
        """
        审阅结论邮件的主题与模板上下文。
        """
        role_label = (reviewer_role or "").upper() or "Reviewer"
        frontend = get_frontend_url()
        return (
            f"[RFA Portal] {submission_title}: {role_label} review {action}",
            {
                "to_name": to_name or "Instructor",
                "submission_title": submission_title,
                "action": action,
                "reviewer_role": role_label,
                "review_comment": review_comment or "No comments provided",
                "link": f"{frontend}/dashboard/submissions/{submission_id}" if submission_id else frontend,
            },
        )

    # --- transport ---

    def _send_via_smtp(self, to_email: str, subject: str, html_body: str, text_body: Optional[str]) -> None:
        cfg = self.smtp_config
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = cfg.from_email
        message["To"] = to_email
        if text_body:
            message.attach(MIMEText(text_body, "plain", "utf-8"))
        message.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(cfg.host, cfg.port) as server:
            if cfg.use_starttls:
                server.starttls()
            if cfg.user and cfg.password:
                server.login(cfg.user, cfg.password)
            server.sendmail(cfg.from_email, [to_email], message.as_string())

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    def _send_via_resend(self, to_email: str, subject: str, html_body: str) -> Any:
        sender = self.resend_config.sender if self.resend_config else DEFAULT_SENDER
        return resend.Emails.send({"from": sender, "to": [to_email], "subject": subject, "html": html_body})

    def send_email(
        self,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> Optional[str]:
        """
        同步投递，返回实际使用的 provider（"smtp" / "resend"）；失败或未配置返回 None。
        """
        if self.smtp_config:
            try:
                self._send_via_smtp(to_email, subject, html_body, text_body)
                return "smtp"
            except Exception as e:
                logger.warning("[Mail] smtp delivery to %s failed: %s", to_email, e)
                return None
        if self.resend_config:
            try:
                self._send_via_resend(to_email, subject, html_body)
                return "resend"
            except Exception as e:
                logger.warning("[Mail] resend delivery to %s failed: %s", to_email, e)
                return None
        return None

    # --- background entry ---

    def deliver(
        self,
        *,
        to_email: str,
        subject: str,
        template_name: str,
        context: Dict[str, Any],
        submission_id: Optional[str] = None,
    ) -> None:
        if not self.is_configured():
            logger.info("[Mail] no provider configured, skipped %s -> %s", template_name, to_email)
            return

        entry = EmailLogCreate(
            recipient=to_email,
            subject=subject,
            template_name=template_name,
            status=EmailStatus.FAILED,
            submission_id=submission_id,
        )
        try:
            html = self.render(template_name, context)
        except Exception as e:
            logger.warning("[Mail] render %s failed: %s", template_name, e)
            entry.error_message = "template render failed"
            self._record(entry)
            return

        provider = self.send_email(to_email=to_email, subject=subject, html_body=html)
        if provider:
            entry.status = EmailStatus.SENT.value
            entry.provider = provider
        else:
            entry.error_message = "send failed"
        self._record(entry)

    def _record(self, entry: EmailLogCreate) -> None:
        if self._log_client is None:
            return
        try:
            self._log_client.table("email_logs").insert(entry.model_dump(mode="json")).execute()
        except Exception as e:
            logger.warning("[Mail] email_logs insert failed (ignored): %s", e)


email_service = EmailService()

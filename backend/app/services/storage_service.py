from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from app.lib.api_client import supabase_admin

logger = logging.getLogger("rfaportal.storage")

SUBMISSIONS_BUCKET = "submissions"

# 审阅人打开文档的签名链接有效期（10 分钟）
DOCUMENT_LINK_TTL_SECONDS = 60 * 10

ALLOWED_DOCUMENT_TYPES: dict[str, str] = {
    ".pdf": "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def safe_file_name(name: str | None) -> str:
    """
    空白替换为下划线，去掉路径分隔符；空名回退为 "file"。
    """
    raw = str(name or "").strip().replace("\\", "/").split("/")[-1]
    cleaned = re.sub(r"\s+", "_", raw)
    return cleaned or "file"


def document_path(submission_id: str, version: int, file_name: str) -> str:
    return f"{submission_id}/v{int(version)}/{safe_file_name(file_name)}"


def content_type_for(file_name: str) -> str | None:
    lowered = str(file_name or "").lower()
    return next((ct for ext, ct in ALLOWED_DOCUMENT_TYPES.items() if lowered.endswith(ext)), None)


def _bucket(name: str, client: Any = None) -> Any:
    return (client or supabase_admin).storage.from_(name)


def ensure_bucket_exists(*, bucket: str = SUBMISSIONS_BUCKET, client: Any = None) -> None:
    """
    submissions bucket 缺失时创建一个私有 bucket。

    中文注释:
    - 正式环境由 migration 建桶；这里只兜底本地/演示环境，避免首个上传 500。
    - 并发创建时 "already exists" 视为成功。
    """
    storage = getattr(client or supabase_admin, "storage", None)
    if storage is None:
        return
    try:
        storage.get_bucket(bucket)
        return
    except Exception:
        logger.info("[Storage] bucket %s not found, creating", bucket)

    try:
        storage.create_bucket(bucket, options={"public": False})
    except Exception as e:
        if any(word in str(e).lower() for word in ("already", "exists", "duplicate")):
            return
        raise


@dataclass(frozen=True)
class DocumentLink:
    url: str
    expires_in: int


def signed_document_link(path: str, *, expires_in: int = DOCUMENT_LINK_TTL_SECONDS) -> DocumentLink:
    signed = _bucket(SUBMISSIONS_BUCKET).create_signed_url(path, expires_in)
    # storage3 不同版本的字段名大小写不一致
    url = (signed.get("signedUrl") or signed.get("signedURL")) if isinstance(signed, dict) else None
    if not url:
        raise RuntimeError(f"Could not generate document link for {path}")
    return DocumentLink(url=str(url), expires_in=expires_in)


def upload_document(*, path: str, content: bytes, content_type: str) -> None:
    ensure_bucket_exists()
    # storage3 的 file_options 只接受字符串 header 值
    _bucket(SUBMISSIONS_BUCKET).upload(path, content, {"content-type": content_type, "upsert": "false"})


def remove_document(path: str) -> None:
    _bucket(SUBMISSIONS_BUCKET).remove([path])

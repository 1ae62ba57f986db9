import os
from typing import Any, Callable, Optional

from supabase import Client, create_client

from app.core.config import app_config

# === Supabase 客户端 ===
# 中文注释:
# - supabase（anon key）只用于 auth.get_user 校验非 HS256 token。
# - supabase_admin（service_role key）负责所有服务端读写：审阅、状态 CAS、审计、归档、Storage。
# - notifications 的读取/标记已读走 create_user_supabase_client，保证 RLS 按当前用户生效。
# - 两个全局 client 都延迟创建：import 阶段不连网，单测只需 patch 模块属性。


def _anon_key() -> str:
    # 老部署只有 SUPABASE_KEY，与 SUPABASE_ANON_KEY 等价
    key = os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("SUPABASE_KEY") or ""
    if not key:
        raise RuntimeError("SUPABASE_ANON_KEY or SUPABASE_KEY is required")
    return key


def _url() -> str:
    if not app_config.supabase_url:
        raise RuntimeError("SUPABASE_URL is required")
    return app_config.supabase_url


class _LazySupabaseClient:
    """
    第一次访问属性时才调用 factory 创建 Client；缺配置时在那一刻抛出 RuntimeError。
    """

    def __init__(self, factory: Callable[[], Client], *, name: str):
        self._factory = factory
        self._name = name
        self._client: Optional[Client] = None

    def __getattr__(self, item: str) -> Any:
        if self._client is None:
            self._client = self._factory()
        return getattr(self._client, item)

    def __repr__(self) -> str:
        return f"<LazySupabaseClient {self._name} ({'ready' if self._client is not None else 'lazy'})>"


def _create_admin() -> Client:
    key = app_config.supabase_key or os.environ.get("SUPABASE_KEY") or ""
    if not key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_KEY) is required")
    return create_client(_url(), key)


supabase: Client = _LazySupabaseClient(lambda: create_client(_url(), _anon_key()), name="supabase")  # type: ignore[assignment]

supabase_admin: Client = _LazySupabaseClient(_create_admin, name="supabase_admin")  # type: ignore[assignment]


def create_user_supabase_client(access_token: str) -> Client:
    """
    为单个请求创建注入了用户 JWT 的 client。

    不能在全局 client 上调用 postgrest.auth(token)：并发请求会串号。
    """
    client = create_client(_url(), _anon_key())
    client.postgrest.auth(access_token)
    return client

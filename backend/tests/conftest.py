import os
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Callable, Optional
from unittest.mock import MagicMock

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.roles import RequestContext, get_request_context
from main import app

# === 全局测试配置 ===
# 中文注释:
# 1. 显式使用 pytest_asyncio.fixture 解决 STRICT 模式下的生成器问题。
# 2. Supabase 客户端一律用 MagicMock 链替身（SupabaseStub），测试不依赖云端。
# 3. 路由测试通过 dependency_overrides 注入 RequestContext，跳过 JWT + profiles 查询。

INSTITUTION = "North Campus"
INSTRUCTOR_ID = "00000000-0000-0000-0000-000000000001"


@pytest_asyncio.fixture
async def client() -> AsyncGenerator:
    """
    提供一个模拟的异步测试客户端
    """
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver"
    ) as ac:
        yield ac


def generate_test_token(user_id: str = "00000000-0000-0000-0000-000000000000", *, expired: bool = False):
    """
    生成用于测试的 JWT（HS256，与后端 SUPABASE_JWT_SECRET 一致）
    """
    secret = os.environ.get("SUPABASE_JWT_SECRET", "mock-secret-replace-later")
    now = datetime.now(timezone.utc)
    exp = now - timedelta(hours=1) if expired else now + timedelta(hours=1)

    payload = {
        "sub": user_id,
        "email": "test@example.com",
        "aud": "authenticated",
        "exp": exp,
        "iat": now - timedelta(hours=2) if expired else now,
        "role": "authenticated",
    }

    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_token():
    return generate_test_token()


@pytest.fixture
def expired_token():
    return generate_test_token(expired=True)


class SupabaseStub:
    """
    supabase-py 客户端替身。

    - 每张表一条 MagicMock 链：select/eq/update/... 都返回自身，execute() 依次返回 respond() 登记的结果。
    - 登记的结果用完后 execute() 返回 data=[]。
    - 传入 Exception 实例时 execute() 抛出该异常。
    """

    CHAIN_METHODS = (
        "select",
        "insert",
        "update",
        "upsert",
        "delete",
        "eq",
        "neq",
        "in_",
        "gte",
        "lte",
        "order",
        "limit",
        "single",
        "maybe_single",
    )

    def __init__(self) -> None:
        self.client = MagicMock()
        self.client.table.side_effect = self.table
        self.tables: dict[str, MagicMock] = {}
        self._queues: dict[str, list[Any]] = {}
        self.rpc_chain = self._make_chain("__rpc__")
        self.client.rpc.return_value = self.rpc_chain

    def _make_chain(self, name: str) -> MagicMock:
        chain = MagicMock(name=f"table:{name}")
        for method in self.CHAIN_METHODS:
            getattr(chain, method).return_value = chain
        queue = self._queues.setdefault(name, [])

        def _execute(*_args, **_kwargs):
            if not queue:
                return SimpleNamespace(data=[])
            item = queue.pop(0)
            if isinstance(item, BaseException):
                raise item
            return SimpleNamespace(data=item)

        chain.execute.side_effect = _execute
        return chain

    def table(self, name: str) -> MagicMock:
        if name not in self.tables:
            self.tables[name] = self._make_chain(name)
        return self.tables[name]

    def respond(self, name: str, *results: Any) -> "SupabaseStub":
        self.table(name)
        self._queues[name].extend(results)
        return self


@pytest.fixture
def supabase_stub() -> SupabaseStub:
    return SupabaseStub()


@pytest.fixture
def make_ctx() -> Callable[..., RequestContext]:
    def _make(
        role: str,
        *,
        user_id: str = "00000000-0000-0000-0000-0000000000aa",
        institution: Optional[str] = INSTITUTION,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
    ) -> RequestContext:
        return RequestContext(
            user_id=user_id,
            email=email or f"{role}@example.com",
            role=role,
            institution=institution,
            full_name=full_name or role.replace("_", " ").title(),
            approval_status="approved",
        )

    return _make


@pytest.fixture
def act_as(make_ctx):
    """
    路由测试：以指定角色身份调用接口（覆盖 get_request_context）。
    """

    def _act(role: str, **kwargs) -> RequestContext:
        ctx = make_ctx(role, **kwargs)
        app.dependency_overrides[get_request_context] = lambda: ctx
        return ctx

    yield _act
    app.dependency_overrides.pop(get_request_context, None)


@pytest.fixture
def submission_row() -> Callable[..., dict]:
    def _row(status: str = "submitted", **overrides) -> dict:
        row = {
            "id": "11111111-1111-1111-1111-111111111111",
            "submission_id": "RFA-2026-1000042",
            "title": "Welding - Cohort 7",
            "status": status,
            "institution": INSTITUTION,
            "instructor_id": INSTRUCTOR_ID,
            "instructor_email": "instructor@example.com",
            "instructor_name": "Ida Instructor",
            "skill_area": "Welding",
            "cohort": "Cohort 7",
        }
        row.update(overrides)
        return row

    return _row

from unittest.mock import MagicMock

import pytest

# 路由测试里默认构造的 service 会读各自模块里的 supabase_admin，这里统一替换为 SupabaseStub
SERVICE_MODULES = (
    "app.services.review_service",
    "app.services.submission_service",
    "app.services.archive_service",
    "app.services.audit_service",
    "app.services.notification_service",
    "app.services.settings_service",
    "app.services.user_management",
)


@pytest.fixture
def db(supabase_stub, monkeypatch):
    for module in SERVICE_MODULES:
        monkeypatch.setattr(f"{module}.supabase_admin", supabase_stub.client)
    monkeypatch.setattr(
        "app.services.notification_service.create_user_supabase_client",
        lambda _token: supabase_stub.client,
    )
    return supabase_stub


@pytest.fixture
def mailer(monkeypatch):
    fake = MagicMock()
    fake.build_review_email.return_value = ("subject", {})
    monkeypatch.setattr("app.services.notification_service.email_service", fake)
    return fake

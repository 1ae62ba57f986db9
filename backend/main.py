from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 在导入 app.* 之前加载 .env（config 在模块导入时读取环境变量）
load_dotenv()

from app.api.v1 import (  # noqa: E402
    archive,
    audit_logs,
    notifications,
    reviews,
    settings,
    submissions,
    users,
)
from app.core.config import app_config  # noqa: E402
from app.core.middleware import ExceptionHandlerMiddleware  # noqa: E402

API_PREFIX = "/api/v1"

app = FastAPI(
    title="RFA Portal API",
    description="Document submission and review workflow backend (PC / AMO stages, archive, audit log)",
    version="1.0.0",
)

# === 中间件配置 ===
# 1. CORS：FRONTEND_ORIGIN / FRONTEND_ORIGINS（逗号分隔），本地默认 http://localhost:3000
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(app_config.frontend_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 2. 统一异常处理与请求日志
app.add_middleware(ExceptionHandlerMiddleware)

# === 路由注册 ===
for module in (submissions, reviews, archive, audit_logs, users, notifications, settings):
    app.include_router(module.router, prefix=API_PREFIX)


@app.get("/")
async def root():
    return {"message": "RFA Portal API is running", "docs": "/docs", "env": app_config.env}

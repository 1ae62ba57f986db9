import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import app_config
from app.lib.api_client import supabase

logger = logging.getLogger("rfaportal.auth")

# === Auth 核心配置 ===
# 中文注释:
# 1. HS256 token 用 Supabase 项目的 JWT Secret 本地校验，不发网络请求。
# 2. 其他算法（新版 JWT Signing Keys）交给 Supabase Auth API 校验。
# 3. 缺少 Authorization 头时 HTTPBearer 直接拒绝。
SUPABASE_JWT_SECRET = app_config.jwt_secret
ALGORITHM = "HS256"
AUDIENCE = "authenticated"

security = HTTPBearer()


def _unauthorized(detail: str = "Token invalid or expired") -> HTTPException:
    return HTTPException(status_code=401, detail=detail)


def _decode_locally(token: str) -> dict:
    payload = jwt.decode(token, SUPABASE_JWT_SECRET, algorithms=[ALGORITHM], audience=AUDIENCE)
    if not payload.get("sub"):
        raise _unauthorized("Invalid token payload")
    return {"id": payload["sub"], "email": payload.get("email")}


def _verify_with_auth_api(token: str) -> dict:
    try:
        response = supabase.auth.get_user(token)
    except Exception as e:
        # Supabase 不可达或配置缺失也按鉴权失败处理（401 而不是 500）
        logger.warning("[Auth] auth.get_user failed: %s", e)
        raise _unauthorized()
    user = getattr(response, "user", None) if response else None
    if not user:
        raise _unauthorized("Invalid token payload")
    return {"id": user.id, "email": user.email}


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    校验 Supabase JWT，返回 {"id", "email"}。

    角色与机构不在 token 里，由 app.core.roles 从 profiles 表补齐。
    """
    token = credentials.credentials
    try:
        if jwt.get_unverified_header(token).get("alg") == ALGORITHM and SUPABASE_JWT_SECRET:
            return _decode_locally(token)
        return _verify_with_auth_api(token)
    except JWTError as e:
        logger.info("[Auth] JWT verification failed: %s", e)
        raise _unauthorized()

import logging
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.services.workflow_errors import WorkflowError

# === 日志配置 ===
# 全局只配置一次；各模块使用 rfaportal.<area> 子 logger
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("rfaportal")


def _error(status_code: int, detail: str, kind: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "type": kind})


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    请求日志 + 兜底异常处理。

    中文注释:
    - 每个请求记录 method / path / status / 耗时(ms)，并回写 X-Process-Time 头。
    - 路由没有转换掉的 WorkflowError 按其 status_code 返回，其余未处理异常返回 500 并打印堆栈。
    """

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except HTTPException as exc:
            return _error(exc.status_code, exc.detail, "http_exception")
        except WorkflowError as exc:
            logger.info("%s %s -> %s (%s)", request.method, request.url.path, exc.status_code, exc.message)
            return _error(exc.status_code, exc.message, "workflow_error")
        except Exception as exc:
            logger.error("%s %s -> unhandled: %s", request.method, request.url.path, exc, exc_info=True)
            return _error(500, "Internal server error, please contact the administrator", "server_error")

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Process-Time"] = f"{elapsed_ms:.1f}ms"
        logger.info("%s %s -> %s in %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

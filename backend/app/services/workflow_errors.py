from __future__ import annotations

from typing import NoReturn

from fastapi import HTTPException


class WorkflowError(Exception):
    """
    审阅流程错误基类。

    中文注释:
    - 引擎只抛这些带类型的错误，不直接依赖 HTTP；路由层用 raise_http() 统一转换。
    - 所有错误都不应重试：它们表示请求本身不合法或客户端看到的状态已过期。
    """

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthorized(WorkflowError):
    status_code = 403


class InvalidTransition(WorkflowError):
    status_code = 400


class MissingReason(WorkflowError):
    status_code = 400


class MissingDocument(WorkflowError):
    status_code = 400


class NotFound(WorkflowError):
    status_code = 404


class ConcurrentUpdate(WorkflowError):
    status_code = 409


def raise_http(err: WorkflowError) -> NoReturn:
    raise HTTPException(status_code=err.status_code, detail=err.message) from err

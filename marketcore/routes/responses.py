"""路由层统一的 JSON 响应格式：成功 {"code": 1, ...}，失败 {"code": -1, "msg": ...}。"""

from fastapi.responses import JSONResponse

from marketcore.services.errors import LedgerError


def ok(**data) -> JSONResponse:
    return JSONResponse(content={"code": 1, **data})


def fail(msg: str, error: str | None = None) -> JSONResponse:
    content = {"code": -1, "msg": msg}
    if error:
        content["error"] = error
    return JSONResponse(content=content)


def ledger_fail(e: LedgerError) -> JSONResponse:
    """业务异常按 code 输出，调用方据 error 字段区分处理。"""
    return fail(str(e), e.code)

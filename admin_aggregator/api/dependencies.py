"""
依赖注入模块

提供 FastAPI 依赖项。
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from ..context import AdminContext


async def get_context(request: Request) -> AdminContext:
    """获取应用上下文"""
    return request.app.state.context


async def get_actor(request: Request, x_admin_user: Optional[str] = Header(None)) -> str:
    """审计日志中的操作者，未指定时使用配置的默认操作者"""
    if x_admin_user:
        return x_admin_user
    return request.app.state.context.config.api.default_actor


async def verify_admin_token(request: Request, x_admin_token: Optional[str] = Header(None)):
    """
    验证管理员 Token

    用于保护 POST/PUT/DELETE 操作。
    """
    expected_token = request.app.state.context.config.api.admin_token

    # 如果配置为默认值，跳过验证（开发环境）
    if expected_token == "CHANGE_ME_IN_PRODUCTION":
        return

    if x_admin_token != expected_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )

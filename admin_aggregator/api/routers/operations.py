"""
变更操作 API

PUT / POST / DELETE 的兜底路由，交给 OperationDispatcher 处理。
成功返回 204；后端失败时原样返回后端的状态码和响应体。
"""

from fastapi import APIRouter, Depends, Request, Response, status

from ...context import AdminContext
from ...models import Operation
from ..dependencies import get_actor, get_context, verify_admin_token

router = APIRouter(tags=["operations"], dependencies=[Depends(verify_admin_token)])


@router.api_route(
    "/{path:path}",
    methods=["PUT", "POST", "DELETE"],
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def dispatch_operation(
    path: str,
    request: Request,
    context: AdminContext = Depends(get_context),
    actor: str = Depends(get_actor),
):
    """转发一次变更操作（请求体和查询串原样传递）"""
    operation = Operation(
        verb=request.method,
        path=f"/{path}",
        query_string=request.url.query,
        body=await request.body(),
        actor=actor,
    )
    await context.dispatcher.dispatch(operation)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

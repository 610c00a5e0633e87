"""
异常定义

聚合核心内的所有错误都派生自 AdminAggregatorError，API 层统一映射为 HTTP 响应。
"""

from typing import Optional


class AdminAggregatorError(Exception):
    """聚合核心异常基类"""


class SourceUnreachable(AdminAggregatorError):
    """数据源拉取失败（网络错误、超时、响应无法解析）"""

    def __init__(self, source: str, message: str, cause: Optional[Exception] = None):
        self.source = source
        self.cause = cause
        super().__init__(f"[{source}] {message}")


class NotFound(AdminAggregatorError):
    """资源类型、视图键或操作路径在当前视图状态中不存在"""


class BackingOperationFailed(AdminAggregatorError):
    """后端 API 返回非成功状态，状态码与响应体原样向上传递"""

    def __init__(self, status_code: int, body: bytes = b"", content_type: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.content_type = content_type
        super().__init__(f"Backing operation failed with status {status_code}")


class MalformedInput(AdminAggregatorError):
    """变更请求体校验失败，未发出任何后端调用"""


class MigrationConflict(AdminAggregatorError):
    """旧版统计文件存在，但 stats 表已经存在，跳过迁移"""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"stats table already exists, legacy file {path} not migrated")

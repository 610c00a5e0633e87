"""
审计日志

每个被接受的请求写一行，在响应返回前同步写出：
    [ admin ] : [ put ] : /organizations/<guid>; body = {"name":"x"}

每个操作者的第一次请求额外记录一条 authenticated。
"""

import logging
import threading
from typing import Optional, Set

AUDIT_LOGGER_NAME = "admin_aggregator.audit"


class AuditLogger:
    """审计日志写入器"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)
        self._seen_actors: Set[str] = set()
        self._lock = threading.Lock()

    def _write(self, actor: str, operation: str, path: str, body: Optional[bytes] = None):
        line = f"[ {actor} ] : [ {operation} ] : {path}"
        if body:
            line += f"; body = {body.decode('utf-8', errors='replace')}"
        self.logger.info(line)

    def _authenticate(self, actor: str, is_admin: bool):
        with self._lock:
            if actor in self._seen_actors:
                return
            self._seen_actors.add(actor)
        self._write(actor, "authenticated", f"is admin? {str(is_admin).lower()}")

    def log_get(self, actor: str, path: str, is_admin: bool = True):
        self._authenticate(actor, is_admin)
        self._write(actor, "get", path)

    def log_operation(self, actor: str, verb: str, path: str, body: bytes = b"", is_admin: bool = True):
        """
        记录一次变更操作

        Args:
            actor: 操作者
            verb: HTTP 方法
            path: 带原始查询串的路径
            body: 原始请求体
        """
        self._authenticate(actor, is_admin)
        self._write(actor, verb.lower(), path, body)

"""
数据源客户端基类

每个客户端负责从一个后端 API 拉取原始记录，不维护状态，
只记录最近一次拉取的结果（用于 /api/health）。
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import httpx

from ..config import SourceConfig
from ..errors import SourceUnreachable
from ..models import SourceRecord, SourceStatus, SourceType

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


class BaseSourceClient(ABC):
    """数据源客户端基类"""

    source_type: SourceType

    def __init__(
        self,
        config: SourceConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
    ):
        """
        Args:
            config: 数据源配置
            transport: 自定义 httpx 传输层（测试中注入 MockTransport）
            token_provider: 返回 Bearer token 的协程函数
        """
        self.config = config
        self.transport = transport
        self.token_provider = token_provider
        self.connected = True
        self.last_success_at: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.config.url)

    def _client(self, use_base_url: bool = True) -> httpx.AsyncClient:
        kwargs = {
            "timeout": self.config.timeout,
            "verify": self.config.verify_ssl,
            "transport": self.transport,
        }
        if use_base_url and self.config.url:
            kwargs["base_url"] = self.config.url
        return httpx.AsyncClient(**kwargs)

    async def _auth_headers(self) -> Dict[str, str]:
        if self.token_provider is None:
            return {}
        token = await self.token_provider()
        return {"Authorization": f"Bearer {token}"}

    @abstractmethod
    async def fetch(self, kinds: Optional[Set[str]] = None) -> List[SourceRecord]:
        """
        拉取记录

        Args:
            kinds: 只拉取这些种类（定向刷新），None 表示全部
        """

    def produced_kinds(self, kinds: Iterable[str]) -> Set[str]:
        """定向刷新实际会替换的记录种类"""
        return set(kinds)

    async def collect(self, kinds: Optional[Set[str]] = None) -> List[SourceRecord]:
        """
        拉取并记录结果

        Raises:
            SourceUnreachable: 网络错误、非 2xx 响应或响应无法解析
        """
        try:
            records = await self.fetch(kinds)
        except SourceUnreachable as e:
            self.record_failure(str(e))
            raise
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            message = f"{type(e).__name__}: {e}"
            self.record_failure(message)
            raise SourceUnreachable(self.source_type.value, message, cause=e) from e

        self.connected = True
        self.last_success_at = time.time()
        self.last_error = None
        return records

    def record_failure(self, message: str):
        self.connected = False
        self.last_error = message

    async def request(
        self,
        method: str,
        path: str,
        query_string: str = "",
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        """
        向后端发出一次变更请求

        查询串和请求体原样转发，不做解析。
        """
        headers = await self._auth_headers()
        if content:
            headers["Content-Type"] = "application/json"
        url = f"{path}?{query_string}" if query_string else path
        async with self._client() as client:
            return await client.request(method, url, content=content or None, headers=headers)

    def get_status(self) -> SourceStatus:
        return SourceStatus(
            source=self.source_type.value,
            configured=self.configured,
            connected=self.connected,
            last_success_at=self.last_success_at,
            last_error=self.last_error,
        )

    @staticmethod
    def _json(response: httpx.Response, expected: type = dict):
        """
        解析响应体并校验顶层类型

        Raises:
            ValueError: 不是合法 JSON，或顶层类型不符（null、标量、对象/数组错位）
        """
        payload = response.json()
        if not isinstance(payload, expected):
            raise ValueError(
                f"expected JSON {expected.__name__}, got {type(payload).__name__}"
            )
        return payload

    @staticmethod
    def _objects(items: Any, what: str) -> List[Dict[str, Any]]:
        """校验集合中的每一项都是 JSON 对象"""
        if items is None:
            return []
        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise ValueError(f"{what} is not a list of JSON objects")
        return items

    def _record(self, kind: str, key: str, data: Dict) -> SourceRecord:
        return SourceRecord(source=self.source_type, kind=kind, key=key, data=data)

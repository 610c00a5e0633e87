"""
Firehose 客户端

订阅换行分隔的 JSON 事件流，每次轮询消费 window_seconds 秒：
- ValueMetric / CounterEvent 合并为组件记录（origin:index:ip）
- ContainerMetric 合并为容器指标记录（app_guid/index）
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from ..config import FirehoseConfig
from ..errors import SourceUnreachable
from ..models import SourceRecord, SourceType
from .base import BaseSourceClient, TokenProvider

logger = logging.getLogger(__name__)


def _timestamp_ms(envelope: Dict[str, Any]) -> Optional[float]:
    # 事件时间戳单位为纳秒
    timestamp = envelope.get("timestamp")
    return timestamp / 1e6 if timestamp is not None else None


class FirehoseClient(BaseSourceClient):
    """Firehose 事件流客户端"""

    source_type = SourceType.FIREHOSE

    def __init__(
        self,
        config: FirehoseConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
    ):
        super().__init__(config, transport, token_provider)

    @property
    def stream_path(self) -> str:
        return f"/firehose/{self.config.subscription_id}"

    def apply_envelope(
        self,
        envelope: Dict[str, Any],
        components: Dict[str, Dict[str, Any]],
        containers: Dict[str, Dict[str, Any]],
    ):
        """把一条事件合并进工作集"""
        event_type = envelope.get("eventType")
        origin = envelope.get("origin")
        index = envelope.get("index")
        ip = envelope.get("ip")

        if event_type in ("ValueMetric", "CounterEvent"):
            key = f"{origin}:{index}:{ip}"
            component = components.setdefault(key, {
                "origin": origin,
                "deployment": envelope.get("deployment"),
                "job": envelope.get("job"),
                "index": index,
                "ip": ip,
                "metrics": {},
            })
            component["timestamp"] = _timestamp_ms(envelope)
            if event_type == "ValueMetric":
                metric = envelope.get("valueMetric") or {}
                component["metrics"][metric.get("name")] = metric.get("value")
            else:
                counter = envelope.get("counterEvent") or {}
                component["metrics"][counter.get("name")] = counter.get("total")

        elif event_type == "ContainerMetric":
            metric = envelope.get("containerMetric") or {}
            app_guid = metric.get("applicationId")
            instance_index = metric.get("instanceIndex")
            containers[f"{app_guid}/{instance_index}"] = {
                "application_id": app_guid,
                "instance_index": instance_index,
                "cpu_percentage": metric.get("cpuPercentage"),
                "memory_bytes": metric.get("memoryBytes"),
                "disk_bytes": metric.get("diskBytes"),
                "memory_bytes_quota": metric.get("memoryBytesQuota"),
                "disk_bytes_quota": metric.get("diskBytesQuota"),
                "origin": origin,
                "ip": ip,
                "timestamp": _timestamp_ms(envelope),
            }

    async def _consume(
        self,
        client: httpx.AsyncClient,
        opened: asyncio.Event,
        components: Dict[str, Dict[str, Any]],
        containers: Dict[str, Dict[str, Any]],
    ):
        headers = await self._auth_headers()
        async with client.stream("GET", self.stream_path, headers=headers) as response:
            response.raise_for_status()
            opened.set()
            async for line in response.aiter_lines():
                line = line.strip()
                if not line:
                    continue
                try:
                    envelope = json.loads(line)
                except ValueError:
                    envelope = None
                if not isinstance(envelope, dict):
                    logger.debug(f"Skipping malformed firehose envelope: {line[:200]}")
                    continue
                self.apply_envelope(envelope, components, containers)

    async def fetch(self, kinds: Optional[Set[str]] = None) -> List[SourceRecord]:
        components: Dict[str, Dict[str, Any]] = {}
        containers: Dict[str, Dict[str, Any]] = {}
        opened = asyncio.Event()

        async with self._client() as client:
            try:
                await asyncio.wait_for(
                    self._consume(client, opened, components, containers),
                    timeout=self.config.window_seconds,
                )
            except asyncio.TimeoutError:
                # 窗口到期是正常结束；流没能打开才算失败
                if not opened.is_set():
                    raise SourceUnreachable(
                        self.source_type.value,
                        f"stream not opened within {self.config.window_seconds}s",
                    )

        records = [self._record("components", key, data) for key, data in components.items()]
        records.extend(self._record("container_metrics", key, data) for key, data in containers.items())
        logger.debug(f"Consumed firehose window: {len(components)} components, {len(containers)} containers")
        return records

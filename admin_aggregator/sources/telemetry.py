"""
心跳总线客户端

先从发现端点获取组件公告，再并发拉取每个组件的 /varz。
单个组件的 varz 失败不会让整次拉取失败，该组件记为离线。
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

import httpx

from ..config import TelemetryConfig
from ..models import SourceRecord, SourceType
from .base import BaseSourceClient

logger = logging.getLogger(__name__)


class TelemetryClient(BaseSourceClient):
    """心跳总线客户端"""

    source_type = SourceType.TELEMETRY

    def __init__(self, config: TelemetryConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config, transport)

    async def _discover(self, client: httpx.AsyncClient) -> List[Dict[str, Any]]:
        response = await client.get(self.config.url)
        response.raise_for_status()
        return self._objects(self._json(response, list), "component announcements")

    async def _fetch_varz(self, client: httpx.AsyncClient, announcement: Dict[str, Any]) -> Dict[str, Any]:
        """拉取单个组件的 varz，失败时返回离线组件"""
        host = announcement["host"]
        uri = f"http://{host}/varz"
        component = {
            "type": announcement.get("type"),
            "index": announcement.get("index"),
            "host": host,
            "uuid": announcement.get("uuid"),
            "uri": uri,
            "connected": False,
            "varz": None,
            "error": None,
        }
        credentials = announcement.get("credentials")
        auth = tuple(credentials) if credentials else None
        try:
            response = await client.get(uri, auth=auth)
            response.raise_for_status()
            component["varz"] = self._json(response)
            component["connected"] = True
        except (httpx.HTTPError, ValueError) as e:
            component["error"] = f"{type(e).__name__}: {e}"
            logger.warning(f"Failed to fetch varz from {uri}: {e}")
        return component

    def _instance_records(self, component: Dict[str, Any], registry: Dict[str, Any]) -> List[SourceRecord]:
        """把 DEA 的 instance_registry 展开为实例记录"""
        records = []
        for app_guid, instances in (registry or {}).items():
            for instance_id, instance in (instances or {}).items():
                data = dict(instance)
                data.setdefault("application_id", app_guid)
                data.setdefault("instance_id", instance_id)
                data["host"] = component["host"]
                key = f"{app_guid}/{data.get('instance_index')}/{instance_id}"
                records.append(self._record("instances", key, data))
        return records

    async def fetch(self, kinds: Optional[Set[str]] = None) -> List[SourceRecord]:
        async with self._client(use_base_url=False) as client:
            announcements = await self._discover(client)
            components = await asyncio.gather(*[self._fetch_varz(client, a) for a in announcements])

        records = []
        for component in components:
            varz = component.get("varz")
            if varz and "instance_registry" in varz:
                varz = dict(varz)
                records.extend(self._instance_records(component, varz.pop("instance_registry")))
                component["varz"] = varz
            records.append(self._record("components", component["host"], component))

        offline = sum(1 for c in components if not c["connected"])
        logger.debug(f"Fetched {len(components)} components ({offline} offline)")
        return records

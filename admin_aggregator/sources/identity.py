"""
身份服务客户端（SCIM API）

用 client credentials 获取 token，分页拉取用户、组和 OAuth 客户端。
控制面和 firehose 客户端共用这里的 token。
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

import httpx

from ..config import IdentityConfig
from ..models import SourceRecord, SourceType
from .base import BaseSourceClient

logger = logging.getLogger(__name__)

# 种类 -> (路径, 自然键字段)
SCIM_COLLECTIONS = {
    "users": ("/Users", "id"),
    "groups": ("/Groups", "id"),
    "clients": ("/oauth/clients", "client_id"),
}

# 距 token 过期少于该秒数时重新获取
TOKEN_REFRESH_MARGIN = 60


class IdentityClient(BaseSourceClient):
    """身份服务客户端"""

    source_type = SourceType.IDENTITY

    def __init__(self, config: IdentityConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config, transport, token_provider=self.get_token)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def token_url(self) -> str:
        if self.config.token_url:
            return self.config.token_url
        return f"{self.config.url.rstrip('/')}/oauth/token"

    async def get_token(self) -> str:
        """获取（必要时刷新）访问令牌"""
        if self._token and time.time() < self._token_expires_at:
            return self._token

        async with self._client(use_base_url=False) as client:
            response = await client.post(
                self.token_url,
                data={"grant_type": "client_credentials"},
                auth=(self.config.client_id, self.config.client_secret),
            )
            response.raise_for_status()
            payload = self._json(response)

        self._token = payload["access_token"]
        expires_in = int(payload.get("expires_in", 0))
        self._token_expires_at = time.time() + max(expires_in - TOKEN_REFRESH_MARGIN, 0)
        logger.debug(f"Obtained identity token (expires in {expires_in}s)")
        return self._token

    async def _fetch_collection(self, client: httpx.AsyncClient, path: str) -> List[Dict[str, Any]]:
        """按 startIndex/count 分页拉取一个 SCIM 集合"""
        headers = await self._auth_headers()
        resources: List[Dict[str, Any]] = []
        start_index = 1
        while True:
            response = await client.get(
                path,
                params={"startIndex": start_index, "count": self.config.results_per_page},
                headers=headers,
            )
            response.raise_for_status()
            payload = self._json(response)
            page = self._objects(payload.get("resources"), f"{path} resources")
            resources.extend(page)
            total = payload.get("totalResults", len(resources))
            if not page or len(resources) >= total:
                return resources
            start_index += len(page)

    async def fetch(self, kinds: Optional[Set[str]] = None) -> List[SourceRecord]:
        selected = [k for k in SCIM_COLLECTIONS if kinds is None or k in kinds]
        async with self._client() as client:
            results = await asyncio.gather(*[
                self._fetch_collection(client, SCIM_COLLECTIONS[kind][0]) for kind in selected
            ])

        records = []
        for kind, resources in zip(selected, results):
            key_field = SCIM_COLLECTIONS[kind][1]
            for resource in resources:
                records.append(self._record(kind, resource[key_field], resource))
        logger.debug(f"Fetched {len(records)} identity records ({', '.join(selected)})")
        return records

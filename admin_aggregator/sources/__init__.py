"""
数据源客户端
"""

from typing import Dict, Mapping, Optional

import httpx

from ..config import SourcesConfig
from ..models import SourceType
from .base import BaseSourceClient
from .control_plane import ControlPlaneClient
from .firehose import FirehoseClient
from .identity import IdentityClient
from .telemetry import TelemetryClient


def build_clients(
    config: SourcesConfig,
    transports: Optional[Mapping[SourceType, httpx.AsyncBaseTransport]] = None,
) -> Dict[SourceType, BaseSourceClient]:
    """
    按配置创建全部客户端

    控制面与 firehose 使用身份服务签发的 token（身份服务未配置时不带认证头）。
    """
    transports = transports or {}
    identity = IdentityClient(config.identity, transports.get(SourceType.IDENTITY))
    token_provider = identity.get_token if identity.configured else None
    return {
        SourceType.CONTROL_PLANE: ControlPlaneClient(
            config.control_plane, transports.get(SourceType.CONTROL_PLANE), token_provider
        ),
        SourceType.IDENTITY: identity,
        SourceType.TELEMETRY: TelemetryClient(config.telemetry, transports.get(SourceType.TELEMETRY)),
        SourceType.FIREHOSE: FirehoseClient(
            config.firehose, transports.get(SourceType.FIREHOSE), token_provider
        ),
    }


__all__ = [
    "BaseSourceClient",
    "ControlPlaneClient",
    "FirehoseClient",
    "IdentityClient",
    "TelemetryClient",
    "build_clients",
]

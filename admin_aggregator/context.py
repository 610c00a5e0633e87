"""
应用上下文

所有组件在这里显式组装，由 API 层通过 app.state 取用（不使用模块级单例）。
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import httpx

from .audit import AuditLogger
from .cache import SourceRecordCache
from .config import AppConfig
from .database import StatsDatabase
from .dispatcher import OperationDispatcher
from .engine import ViewModelEngine
from .models import SourceType
from .poller import Poller
from .sources import BaseSourceClient, build_clients
from .store import ViewModelStore


@dataclass
class AdminContext:
    """组装好的组件集合"""
    config: AppConfig
    cache: SourceRecordCache
    store: ViewModelStore
    engine: ViewModelEngine
    clients: Dict[SourceType, BaseSourceClient]
    poller: Poller
    audit: AuditLogger
    dispatcher: OperationDispatcher
    db: StatsDatabase


def build_context(
    config: AppConfig,
    transports: Optional[Mapping[SourceType, httpx.AsyncBaseTransport]] = None,
) -> AdminContext:
    """
    按配置组装组件

    Args:
        config: 应用配置
        transports: 按数据源注入的 httpx 传输层（测试用）
    """
    cache = SourceRecordCache()
    store = ViewModelStore()
    engine = ViewModelEngine(cache, store)
    clients = build_clients(config.sources, transports)
    poller = Poller(cache, engine, clients)
    audit = AuditLogger()
    dispatcher = OperationDispatcher(engine, poller, audit)
    db = StatsDatabase(config.database.path, timeout=config.database.timeout)
    return AdminContext(
        config=config,
        cache=cache,
        store=store,
        engine=engine,
        clients=clients,
        poller=poller,
        audit=audit,
        dispatcher=dispatcher,
        db=db,
    )

"""
配置加载模块

从 config.yaml 加载配置，使用 Pydantic 验证。
"""

import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field


class DatabaseConfig(BaseModel):
    """数据库配置"""
    path: str = "data/admin_aggregator.db"
    stats_file: Optional[str] = None  # 旧版统计 JSON 文件，仅迁移时使用
    timeout: int = 30


class APIConfig(BaseModel):
    """API 服务配置"""
    host: str = "0.0.0.0"
    port: int = 8070
    cors_origins: List[str] = ["http://localhost:8070", "http://127.0.0.1:8070"]
    admin_token: str = "CHANGE_ME_IN_PRODUCTION"
    default_actor: str = "admin"


class SourceConfig(BaseModel):
    """单个数据源的通用配置"""
    url: Optional[str] = None  # 未配置 url 的数据源不轮询
    interval: int = 30
    timeout: float = 10.0
    poll_timeout: float = 60.0
    verify_ssl: bool = True


class ControlPlaneConfig(SourceConfig):
    """控制面 REST API 配置"""
    results_per_page: int = 100
    events_max_pages: int = 1


class IdentityConfig(SourceConfig):
    """身份服务配置（client credentials）"""
    client_id: str = "admin_ui_client"
    client_secret: str = ""
    token_url: Optional[str] = None  # 默认为 {url}/oauth/token
    results_per_page: int = 100


class TelemetryConfig(SourceConfig):
    """心跳总线配置"""
    interval: int = 30


class FirehoseConfig(SourceConfig):
    """事件流 firehose 配置"""
    interval: int = 30
    subscription_id: str = "admin-aggregator"
    window_seconds: float = 5.0


class SourcesConfig(BaseModel):
    """全部数据源"""
    control_plane: ControlPlaneConfig = Field(default_factory=ControlPlaneConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    firehose: FirehoseConfig = Field(default_factory=FirehoseConfig)


class StatsConfig(BaseModel):
    """统计历史配置"""
    interval_minutes: int = 60
    retention_days: int = 365


class LoggingConfig(BaseModel):
    """日志配置"""
    level: str = "INFO"
    file: Optional[str] = None
    audit_file: Optional[str] = None


class AppConfig(BaseModel):
    """应用配置（完整配置）"""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    stats: StatsConfig = Field(default_factory=StatsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    加载配置文件

    优先级：
    1. 参数指定的路径
    2. 环境变量 ADMIN_AGGREGATOR_CONFIG
    3. 默认路径 config.yaml

    配置文件中的相对路径按配置文件所在目录解析。
    """
    if config_path is None:
        config_path = os.environ.get("ADMIN_AGGREGATOR_CONFIG", "config.yaml")

    config_file = Path(config_path)
    if not config_file.exists():
        # 配置文件不存在时使用默认配置
        return AppConfig()

    with open(config_file, "r", encoding="utf-8") as f:
        raw_config = yaml.safe_load(f) or {}

    base_dir = config_file.resolve().parent

    def _resolve_path(value: Optional[str]) -> Optional[str]:
        if not value:
            return value
        path = Path(value)
        if path.is_absolute():
            return str(path)
        return str((base_dir / path).resolve())

    database = raw_config.setdefault("database", {})
    if "path" in database:
        database["path"] = _resolve_path(database["path"])
    database["stats_file"] = _resolve_path(database.get("stats_file"))

    logging_section = raw_config.setdefault("logging", {})
    logging_section["file"] = _resolve_path(logging_section.get("file"))
    logging_section["audit_file"] = _resolve_path(logging_section.get("audit_file"))

    return AppConfig(**raw_config)

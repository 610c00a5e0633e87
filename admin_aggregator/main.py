"""
主程序入口

启动顺序：
1. 旧版统计迁移
2. 数据源轮询任务（每个数据源一个）
3. 统计历史任务与 REST API 服务并发运行
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import uvicorn

from . import __version__
from .audit import AUDIT_LOGGER_NAME
from .config import AppConfig, load_config
from .context import AdminContext, build_context
from .historian import run_historian
from .migration import StatsMigration

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _file_handler(path: str) -> logging.FileHandler:
    log_path = Path(path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(str(log_path), encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def setup_logging(config: AppConfig):
    """配置日志"""
    level = getattr(logging, config.logging.level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    if config.logging.file:
        logging.getLogger().addHandler(_file_handler(config.logging.file))

    # 审计日志可以单独写一个文件
    if config.logging.audit_file:
        audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        audit_logger.setLevel(logging.INFO)
        audit_logger.addHandler(_file_handler(config.logging.audit_file))

    # 降低第三方库日志级别
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


async def run_api_server(context: AdminContext):
    """运行 API 服务器"""
    from .api.app import create_app

    app = create_app(context)
    server_config = uvicorn.Config(
        app=app,
        host=context.config.api.host,
        port=context.config.api.port,
        log_level="info",
        access_log=False  # 请求由审计日志记录
    )
    server = uvicorn.Server(server_config)
    await server.serve()


async def main(config_path: Optional[str] = None):
    """主函数：启动所有任务"""
    logger = logging.getLogger(__name__)

    config = load_config(config_path)
    setup_logging(config)
    logger.info("=" * 60)
    logger.info(f"Admin Aggregator v{__version__}")
    logger.info("=" * 60)
    logger.info(f"Config loaded: API={config.api.host}:{config.api.port}")
    logger.info(f"Database: {config.database.path}")

    context = build_context(config)

    try:
        status = StatsMigration(context.db).migrate(config.database.stats_file)
        logger.info(f"Stats migration: {status.value}")
    except Exception as e:
        logger.error(f"Stats migration failed: {e}", exc_info=True)

    context.poller.start()
    logger.info("Starting concurrent tasks...")

    try:
        await asyncio.gather(
            run_historian(
                context.engine,
                context.db,
                config.stats.interval_minutes,
                config.stats.retention_days,
            ),
            run_api_server(context),
        )
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        raise
    finally:
        await context.poller.stop()


def cli():
    """命令行入口"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested, exiting...")
        sys.exit(0)


if __name__ == "__main__":
    cli()

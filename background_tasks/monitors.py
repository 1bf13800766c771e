"""
后台监控任务
监控配置文件变化并热加载
"""
import asyncio
import logging
import os
from datetime import datetime

from core.config_loader import CONFIG, CONFIG_FILE
from core.logging_config import setup_logging

logger = logging.getLogger(__name__)


def check_config_changes(CONFIG_FILE_MTIMES: dict, load_config_func, config_file: str = CONFIG_FILE) -> list:
    """检查一次配置文件，有变化时重新加载，返回变化描述列表"""
    config_changes = []
    try:
        config_mtime = os.path.getmtime(config_file)
    except FileNotFoundError:
        return config_changes

    if config_mtime != CONFIG_FILE_MTIMES.get(config_file, 0):
        # load_config() 会更新 CONFIG_FILE_MTIMES
        load_config_func()
        setup_logging(CONFIG.get("log_level"))
        config_changes.append(
            f"{config_file} (修改于 {datetime.fromtimestamp(config_mtime).strftime('%H:%M:%S')})"
        )
    return config_changes


async def config_monitor(CONFIG_FILE_MTIMES: dict, load_config_func, interval_seconds: float = 30):
    """定期监控配置文件的变化并报告"""
    logger.info("[CONFIG_MONITOR] 配置文件监控任务已启动")

    while True:
        try:
            await asyncio.sleep(interval_seconds)

            config_changes = check_config_changes(CONFIG_FILE_MTIMES, load_config_func)
            if config_changes:
                logger.info(f"[CONFIG_MONITOR] 🔄 检测到配置文件更新: {', '.join(config_changes)}")
                logger.info("[CONFIG_MONITOR] ✅ 配置已自动重新加载（存储后端变更需重启生效）")
            else:
                logger.debug("[CONFIG_MONITOR] 配置文件无变化")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[CONFIG_MONITOR] 错误: {e}", exc_info=True)

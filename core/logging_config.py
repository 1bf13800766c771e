"""日志配置模块"""
import logging
import os

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = None) -> logging.Logger:
    """初始化根日志记录器（重复调用只会调整日志级别）"""
    level_name = (level or os.environ.get("REPORT_LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    root.setLevel(numeric_level)

    # aiohttp 的访问日志过于嘈杂
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return logging.getLogger("report_server")


logger = setup_logging()

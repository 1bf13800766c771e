"""配置加载和管理模块"""
import copy
import json
import logging
import os
from threading import Lock

logger = logging.getLogger(__name__)

CONFIG_FILE = os.environ.get("REPORT_CONFIG_FILE", "config.jsonc")

# 配置文件修改时间跟踪（用于热更新）
CONFIG_FILE_MTIMES = {
    CONFIG_FILE: 0,
}
CONFIG_LOCK = Lock()  # 保护配置重载的线程锁

DEFAULT_CONFIG = {
    "log_level": "INFO",
    "storage": {
        "backend": "sqlite",  # sqlite / memory
        "sqlite_path": "./data/reports.db",
        "collection": "laporan",
    },
    "local_cache": {
        "backend": "sqlite",  # sqlite / memory
        "sqlite_path": "./data/local_cache.db",
        "quota_kb": 5120,
    },
    "legacy_store": {
        "enabled": False,
        "database_url": "",
        "collection": "images",
        "auth_token": None,
        "fetch_timeout_ms": 10000,
    },
    "image_resolution": {
        "batch_timeout_ms": 5000,
    },
    "image_presets": {
        "upload": {"max_dimension_px": 1200, "quality": 0.7},
        "inline": {"max_dimension_px": 800, "quality": 0.6},
        "storage": {"max_dimension_px": 600, "quality": 0.5},
    },
    "max_inline_image_kb": 900,
    "file_bed_enabled": False,
    "file_bed_endpoints": [],
    "file_bed_selection_strategy": "failover",
    "file_bed_recovery_seconds": 300,
    "file_bed_server": {
        "upload_dir": "",  # 为空时使用 file_bed_server/uploads
        "api_key": "",
        "cleanup_interval_minutes": 60,
        "file_max_age_minutes": 0,  # 0 表示不自动清理（报告会长期引用上传的URL）
        "compress_uploads": True,
    },
    "connection_pool": {
        "total_limit": 100,
        "per_host_limit": 30,
        "dns_cache_ttl": 300,
        "keepalive_timeout": 30,
    },
    "download_timeout": {
        "total": 30,
        "connect": 5,
        "sock_read": 10,
    },
}

# 全局配置存储
CONFIG = copy.deepcopy(DEFAULT_CONFIG)


def _parse_jsonc(jsonc_string: str) -> dict:
    """
    稳健地解析 JSONC 字符串，移除注释。
    正确处理字符串内的 // 和 /* */
    """
    lines = jsonc_string.splitlines()
    no_comments_lines = []
    in_block_comment = False

    for line in lines:
        if in_block_comment:
            if '*/' in line:
                in_block_comment = False
                line = line.split('*/', 1)[1]
            else:
                continue

        if '/*' in line:
            before_comment, _, after_comment = line.partition('/*')
            if '*/' in after_comment:
                _, _, after_block = after_comment.partition('*/')
                line = before_comment + after_block
            else:
                line = before_comment
                in_block_comment = True

        # 查找不在引号内的 //
        processed_line = ""
        in_string = False
        escape_next = False
        i = 0

        while i < len(line):
            char = line[i]

            if escape_next:
                processed_line += char
                escape_next = False
                i += 1
                continue

            if char == '\\':
                processed_line += char
                escape_next = True
                i += 1
                continue

            if char == '"':
                in_string = not in_string
                processed_line += char
            elif char == '/' and i + 1 < len(line) and line[i + 1] == '/' and not in_string:
                break
            else:
                processed_line += char

            i += 1

        if processed_line.strip():
            no_comments_lines.append(processed_line)

    if not no_comments_lines:
        return {}
    return json.loads("\n".join(no_comments_lines))


def _deep_merge(base: dict, override: dict) -> dict:
    """递归合并配置，override 优先"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(force_reload=False, config_file: str = None):
    """从 config.jsonc 加载配置，合并到默认配置之上。

    Args:
        force_reload: 是否强制重新加载，忽略文件修改时间检查
        config_file: 配置文件路径，默认为 CONFIG_FILE
    """
    config_file = config_file or CONFIG_FILE

    try:
        current_mtime = os.path.getmtime(config_file)
        if not force_reload and current_mtime == CONFIG_FILE_MTIMES.get(config_file, 0):
            return
    except FileNotFoundError:
        logger.warning(f"配置文件 '{config_file}' 未找到，使用默认配置。")
        with CONFIG_LOCK:
            CONFIG.clear()
            CONFIG.update(copy.deepcopy(DEFAULT_CONFIG))
        return

    with CONFIG_LOCK:
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                content = f.read()
            # 使用 clear() + update()，保持字典对象不变，让所有导入的引用都能看到更新
            new_config = _deep_merge(DEFAULT_CONFIG, _parse_jsonc(content))
            CONFIG.clear()
            CONFIG.update(new_config)
            CONFIG_FILE_MTIMES[config_file] = current_mtime
            logger.info(f"✅ 已{'重新' if not force_reload else ''}加载配置文件 '{config_file}'")
            logger.info(f"  - 存储后端: {CONFIG['storage'].get('backend')}")
            logger.info(f"  - 旧版图片库: {'✅ 启用' if CONFIG['legacy_store'].get('enabled') else '❌ 禁用'}")
            logger.info(f"  - 图床上传: {'✅ 启用' if CONFIG.get('file_bed_enabled') else '❌ 禁用'}")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"加载或解析 '{config_file}' 失败: {e}。将使用默认配置。")
            CONFIG.clear()
            CONFIG.update(copy.deepcopy(DEFAULT_CONFIG))


def get_section(name: str) -> dict:
    """读取配置节（缺失时回退到默认值）"""
    section = CONFIG.get(name)
    if isinstance(section, dict):
        return section
    return copy.deepcopy(DEFAULT_CONFIG.get(name, {}))

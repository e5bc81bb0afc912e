"""deployflow 日志配置

提供普通文本和结构化 JSON 两种输出格式，JSON 格式便于 CI 采集。
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """结构化 JSON 日志格式器

    输出字段: timestamp / level / logger / message / module / function / line，
    有异常时附加 exception；日志记录上的 run_id / stage 属性（通过 extra 传入）会一并输出。
    """

    _CONTEXT_FIELDS = ("run_id", "stage")

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            # 使用 record.created，记录事件发生时间而非格式化时间
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        for name in self._CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_entry[name] = value
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """配置根日志器

    参数:
        level: 日志级别字符串（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        json_output: 为 True 时使用 JSON 格式（适用于 CI），否则使用人类可读格式

    输出到 stderr，重复调用会先清理已有 handlers。
    """
    root = logging.getLogger()
    reset_logging()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        fmt = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"
        handler.setFormatter(logging.Formatter(fmt))
    root.addHandler(handler)


def reset_logging() -> None:
    """清理根日志器上的所有 handlers"""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

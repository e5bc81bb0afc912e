"""配置与记录文件读写工具

- YAML 配置读取（空值保护、大小限制）
- 原子写入（临时文件 + rename）
- KEY=VALUE 记录文件的读写（部署记录 IMAGE_URI.env）
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

# YAML 文件最大大小限制 (1MB)，配置文件不应超过该大小
MAX_YAML_SIZE = 1024 * 1024


def atomic_write(path: Path, content: str) -> None:
    """原子写入文件：先写同目录临时文件再 rename，防止中途崩溃导致记录损坏"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, str(path))
    except Exception:
        # 只捕获普通异常，不拦截 KeyboardInterrupt/SystemExit
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def load_yaml(path: str | Path) -> dict[str, Any]:
    """安全读取 YAML 文件

    文件不存在、为空、或顶层不是字典时返回空字典；
    格式错误和 IO 错误原样抛出。
    """
    p = Path(path)
    if not p.exists():
        return {}

    file_size = p.stat().st_size
    if file_size > MAX_YAML_SIZE:
        raise ValueError(
            f"YAML 文件过大: {p} ({file_size} 字节), 超过限制 {MAX_YAML_SIZE} 字节"
        )

    try:
        with open(p, encoding="utf-8") as f:
            result = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("解析 YAML 文件失败: %s, 错误: %s", path, e)
        raise
    except OSError as e:
        logger.error("读取文件失败: %s, 错误: %s", path, e)
        raise

    if result is None:
        return {}
    if not isinstance(result, dict):
        logger.warning(
            "%s 内容不是字典类型 (实际类型: %s)，返回空字典",
            path, type(result).__name__,
        )
        return {}
    return result


def write_env_file(path: str | Path, values: Mapping[str, str]) -> None:
    """以 KEY=VALUE 行格式原子写入记录文件"""
    lines = []
    for key, value in values.items():
        if "\n" in str(value) or "=" in key:
            raise ValueError(f"记录项无法写成 KEY=VALUE 格式: {key}")
        lines.append(f"{key}={value}")
    atomic_write(Path(path), "\n".join(lines) + "\n")


def read_env_file(path: str | Path) -> dict[str, str]:
    """读取 KEY=VALUE 记录文件，忽略空行和 # 注释"""
    p = Path(path)
    if not p.exists():
        return {}
    result: dict[str, str] = {}
    for line in p.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        result[key.strip()] = value.strip()
    return result

"""敏感信息遮蔽

外部工具输出在写日志、写审计记录之前，先把本阶段解析出的密钥值替换为掩码。
"""

from __future__ import annotations

from typing import Iterable

MASK = "****"

# 过短的值替换会误伤正常输出
_MIN_SECRET_LEN = 4


def mask_secrets(text: str, secrets: Iterable[str]) -> str:
    """把 text 中出现的每个密钥值替换为掩码（长值优先）"""
    if not text:
        return text
    values = sorted(
        {s for s in secrets if s and len(s) >= _MIN_SECRET_LEN},
        key=len, reverse=True,
    )
    for value in values:
        text = text.replace(value, MASK)
    return text


def mask_identity(value: str, keep: int = 4) -> str:
    """保留前缀的部分遮蔽，用于日志中的 access key id 等标识"""
    if len(value) <= keep:
        return MASK
    return f"{value[:keep]}{MASK}"

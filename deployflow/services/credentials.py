"""凭据解析

CredentialProvider 把命名的凭据引用解析为短期使用的密钥材料。
调用方在阶段内解析、用完即丢，引擎不会把密钥写入任何持久化文件。

宿主 CI 通过环境变量注入凭据（EnvCredentialProvider）:
    DEPLOYFLOW_CRED_<REF>_USER      身份（用户名 / access key id）
    DEPLOYFLOW_CRED_<REF>_SECRET    密钥
    DEPLOYFLOW_CRED_<REF>_EXPIRES   可选，ISO-8601 过期时间
<REF> 为引用名大写、非字母数字替换为下划线：aws-creds → AWS_CREDS
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping, Protocol

from deployflow.core.exceptions import CredentialExpired, CredentialNotFound
from deployflow.utils.masking import mask_identity

logger = logging.getLogger(__name__)

ENV_PREFIX = "DEPLOYFLOW_CRED_"


@dataclass(frozen=True)
class Credential:
    """解析后的凭据（repr 不泄露密钥）"""

    ref: str
    identity: str
    secret: str
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"Credential(ref={self.ref!r}, identity={mask_identity(self.identity)!r}, "
            f"secret='****')"
        )

    __str__ = __repr__

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(tz=timezone.utc)) >= self.expires_at


class CredentialProvider(Protocol):
    """凭据提供者协议"""

    def resolve(self, ref: str) -> Credential:
        """解析凭据引用，失败抛 CredentialNotFound / CredentialExpired"""
        ...


def _check_expiry(cred: Credential) -> Credential:
    if cred.is_expired():
        raise CredentialExpired(f"凭据已过期: {cred.ref}")
    return cred


def env_key(ref: str) -> str:
    """凭据引用 → 环境变量前缀"""
    return ENV_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", ref).upper()


def _parse_expiry(ref: str, raw: str) -> datetime:
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as e:
        raise CredentialExpired(f"凭据 {ref} 的过期时间无法解析: {raw!r}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class EnvCredentialProvider:
    """从宿主 CI 注入的环境变量解析凭据"""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ

    def resolve(self, ref: str) -> Credential:
        environ = self._environ if self._environ is not None else os.environ
        key = env_key(ref)
        secret = environ.get(f"{key}_SECRET")
        if not secret:
            raise CredentialNotFound(f"凭据不存在: {ref} (需要环境变量 {key}_SECRET)")
        expires_raw = environ.get(f"{key}_EXPIRES", "")
        cred = Credential(
            ref=ref,
            identity=environ.get(f"{key}_USER", ""),
            secret=secret,
            expires_at=_parse_expiry(ref, expires_raw) if expires_raw else None,
        )
        logger.debug("凭据已解析: %r", cred)
        return _check_expiry(cred)


class StaticCredentialProvider:
    """内存凭据表，供嵌入方直接注入"""

    def __init__(self, credentials: Mapping[str, Credential] | None = None) -> None:
        self._credentials: dict[str, Credential] = dict(credentials or {})

    def add(
        self, ref: str, identity: str, secret: str,
        expires_at: datetime | None = None,
    ) -> None:
        self._credentials[ref] = Credential(
            ref=ref, identity=identity, secret=secret, expires_at=expires_at,
        )

    def resolve(self, ref: str) -> Credential:
        cred = self._credentials.get(ref)
        if cred is None:
            raise CredentialNotFound(f"凭据不存在: {ref}")
        return _check_expiry(cred)

"""AWS 客户端与环境变量

- create_client: 用阶段内解析出的凭据构建 boto3 客户端（不落盘、不缓存）
- aws_env: 为 terraform 等外部工具生成 AWS_* 环境变量
- error_code: 从 botocore ClientError 中取错误码
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from deployflow.services.credentials import Credential

# (service, credential, region) -> boto3 client
ClientFactory = Callable[[str, "Credential", str], Any]

_SDK_TIMEOUT_SECONDS = 30


def create_client(service: str, credential: Credential, region: str) -> Any:
    """用显式凭据创建 boto3 客户端"""
    session = boto3.Session(
        aws_access_key_id=credential.identity,
        aws_secret_access_key=credential.secret,
        region_name=region,
    )
    config = Config(
        read_timeout=_SDK_TIMEOUT_SECONDS,
        connect_timeout=_SDK_TIMEOUT_SECONDS,
        retries={"max_attempts": 2},
    )
    return session.client(service, config=config)


def aws_env(credential: Credential, region: str) -> dict[str, str]:
    return {
        "AWS_ACCESS_KEY_ID": credential.identity,
        "AWS_SECRET_ACCESS_KEY": credential.secret,
        "AWS_REGION": region,
        "AWS_DEFAULT_REGION": region,
    }


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))

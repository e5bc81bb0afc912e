"""镜像发布模块 - Strategy Pattern

拆分说明:
- base.py: 发布器公共接口（登录 / 打标签 / 推送策略）
- ecr.py: AWS ECR
- dockerhub.py: Docker Hub

新增仓库类型只需实现 RegistryPublisher 并调用 register_publisher()，
无需修改流水线。
"""

from __future__ import annotations

from typing import Any

from deployflow.core.config import Config
from deployflow.core.exceptions import ValidationError
from deployflow.core.models import DeploymentRequest, RegistryKind
from deployflow.services.credentials import CredentialProvider
from deployflow.services.registry.base import RegistryPublisher
from deployflow.services.registry.dockerhub import DockerHubPublisher
from deployflow.services.registry.ecr import ECRPublisher, ecr_registry_host
from deployflow.utils.shell import CommandRunner

_PUBLISHERS: dict[str, type[RegistryPublisher]] = {
    RegistryKind.ECR.value: ECRPublisher,
    RegistryKind.DOCKERHUB.value: DockerHubPublisher,
}


def register_publisher(kind: str, cls: type[RegistryPublisher]) -> None:
    """注册（或替换）某仓库类型的发布器"""
    _PUBLISHERS[kind] = cls


def get_publisher_class(kind: str | RegistryKind) -> type[RegistryPublisher]:
    key = kind.value if isinstance(kind, RegistryKind) else kind
    cls = _PUBLISHERS.get(key)
    if cls is None:
        raise ValidationError(
            f"不支持的镜像仓库类型: {key}", details=sorted(_PUBLISHERS),
        )
    return cls


def validate_request(request: DeploymentRequest) -> type[RegistryPublisher]:
    """通用字段校验 + 仓库类型已注册 + 发布器自身的要求，全部问题一次性报告

    返回该请求对应的发布器类。
    """
    problems = request.validate()
    registry = request.registry if isinstance(request.registry, str) else ""
    cls = _PUBLISHERS.get(registry)
    if cls is None:
        if registry:
            problems.append(f"registry 取值非法: {registry!r}，可选: {sorted(_PUBLISHERS)}")
    else:
        problems.extend(cls.check_request(request))
    if problems or cls is None:
        raise ValidationError("部署请求校验失败", details=problems)
    return cls


def create_publisher(
    kind: str | RegistryKind,
    runner: CommandRunner,
    credentials: CredentialProvider,
    config: Config,
    **options: Any,
) -> RegistryPublisher:
    """按仓库类型构建发布器（options 透传给具体实现，如 ECR 的 client_factory）"""
    cls = get_publisher_class(kind)
    return cls.from_config(runner, credentials, config, **options)


__all__ = [
    "RegistryPublisher",
    "ECRPublisher",
    "DockerHubPublisher",
    "ecr_registry_host",
    "register_publisher",
    "get_publisher_class",
    "create_publisher",
    "validate_request",
]

"""镜像发布器公共接口

各仓库类型（ECR / Docker Hub / ...）实现 publish()，共享：
- docker login --password-stdin 登录（密钥只经 stdin 传递）
- 打标签 + 推送 版本标签 与 latest

推送策略:
  - 版本标签是记录标签，先打标签并推送，任一步失败即 PushFailed
  - latest 在版本标签推送成功后才处理，打标签或推送失败只记为告警
    （PublishedImage.warnings），不作为失败
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from deployflow.core.config import Config
from deployflow.core.exceptions import AuthenticationFailed, PushFailed
from deployflow.core.models import (
    BuildArtifact,
    CommandResult,
    DeploymentRequest,
    PublishedImage,
    RegistryKind,
)
from deployflow.services.credentials import CredentialProvider
from deployflow.utils.shell import CommandRunner

logger = logging.getLogger(__name__)

LATEST_TAG = "latest"


class RegistryPublisher(ABC):
    """镜像发布器基类"""

    kind: RegistryKind | str

    def __init__(
        self,
        runner: CommandRunner,
        credentials: CredentialProvider,
        *,
        credential_ref: str,
        docker_bin: str = "docker",
    ) -> None:
        self.runner = runner
        self.credentials = credentials
        self.credential_ref = credential_ref
        self.docker_bin = docker_bin

    @classmethod
    def kind_name(cls) -> str:
        return cls.kind.value if isinstance(cls.kind, RegistryKind) else cls.kind

    @classmethod
    def credential_ref_for(cls, config: Config) -> str:
        """该仓库使用的凭据引用，默认取 config.extra[<kind>_credential_ref]"""
        return config.extra.get(f"{cls.kind_name()}_credential_ref", "")

    @classmethod
    def check_request(cls, request: DeploymentRequest) -> list[str]:
        """仓库相关的请求校验，返回问题列表（默认无额外要求）"""
        return []

    @classmethod
    def from_config(
        cls,
        runner: CommandRunner,
        credentials: CredentialProvider,
        config: Config,
        **options: Any,
    ) -> RegistryPublisher:
        """按配置构建发布器"""
        return cls(
            runner, credentials,
            credential_ref=cls.credential_ref_for(config), docker_bin=config.docker_bin,
        )

    @abstractmethod
    def publish(self, artifact: BuildArtifact, request: DeploymentRequest) -> PublishedImage:
        """推送镜像，返回 PublishedImage"""

    def _login(self, username: str, password: str, server: str = "") -> None:
        args = ["login", "--username", username, "--password-stdin"]
        if server:
            args.append(server)
        result = self.runner.run(
            self.docker_bin, args,
            input_text=password + "\n", secrets=(password,),
        )
        if not result.success:
            raise AuthenticationFailed(
                f"镜像仓库登录失败: {server or 'docker.io'}", output=result.output,
            )
        logger.info("镜像仓库登录成功: %s", server or "docker.io")

    def _tag(self, source: str, target: str) -> CommandResult:
        return self.runner.run(self.docker_bin, ["tag", source, target])

    def _push(self, target: str) -> CommandResult:
        return self.runner.run(self.docker_bin, ["push", target])

    def push_tags(
        self, artifact: BuildArtifact, repository: str, version: str,
    ) -> tuple[tuple[str, ...], tuple[str, ...]]:
        """推送版本标签和 latest，返回 (已推送标签, 告警)"""
        versioned = f"{repository}:{version}"
        latest = f"{repository}:{LATEST_TAG}"

        result = self._tag(artifact.local_ref, versioned)
        if not result.success:
            raise PushFailed(f"打标签失败: {versioned}", tag=version, output=result.output)
        result = self._push(versioned)
        if not result.success:
            raise PushFailed(
                f"镜像推送失败: {versioned}", tag=version, output=result.output,
            )
        logger.info("镜像已推送: %s", versioned)

        result = self._tag(artifact.local_ref, latest)
        if result.success:
            result = self._push(latest)
        if not result.success:
            warning = f"latest 标签发布失败（版本标签 {version} 已推送）: {latest}"
            logger.warning("%s\n%s", warning, result.output)
            return (version,), (warning,)
        logger.info("镜像已推送: %s", latest)
        return (version, LATEST_TAG), ()

"""AWS ECR 发布器

1. STS get_caller_identity 解析账号 ID
2. 仓库不存在则创建（已存在 / 并发创建冲突都视为正常）
3. 每次运行重新获取短期授权令牌并 docker login
4. 推送 <账号>.dkr.ecr.<区域>.amazonaws.com/<应用>:<版本> 与 :latest
"""

from __future__ import annotations

import base64
import logging
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from deployflow.core.config import Config
from deployflow.core.exceptions import (
    AuthenticationFailed,
    RepositoryProvisionFailed,
)
from deployflow.core.models import (
    BuildArtifact,
    DeploymentRequest,
    PublishedImage,
    RegistryKind,
)
from deployflow.services.credentials import Credential, CredentialProvider
from deployflow.services.registry.base import RegistryPublisher
from deployflow.utils.aws import ClientFactory, create_client, error_code
from deployflow.utils.shell import CommandRunner

logger = logging.getLogger(__name__)


def ecr_registry_host(account_id: str, region: str) -> str:
    return f"{account_id}.dkr.ecr.{region}.amazonaws.com"


class ECRPublisher(RegistryPublisher):
    """推送到 AWS ECR"""

    kind = RegistryKind.ECR

    def __init__(
        self,
        runner: CommandRunner,
        credentials: CredentialProvider,
        *,
        credential_ref: str = "aws-creds",
        docker_bin: str = "docker",
        client_factory: ClientFactory | None = None,
    ) -> None:
        super().__init__(
            runner, credentials, credential_ref=credential_ref, docker_bin=docker_bin,
        )
        self._client_factory = client_factory or create_client

    @classmethod
    def credential_ref_for(cls, config: Config) -> str:
        return config.aws_credential_ref

    @classmethod
    def from_config(
        cls,
        runner: CommandRunner,
        credentials: CredentialProvider,
        config: Config,
        **options: Any,
    ) -> ECRPublisher:
        return cls(
            runner, credentials,
            credential_ref=cls.credential_ref_for(config),
            docker_bin=config.docker_bin,
            client_factory=options.get("client_factory"),
        )

    def publish(self, artifact: BuildArtifact, request: DeploymentRequest) -> PublishedImage:
        cred = self.credentials.resolve(self.credential_ref)
        account_id = self.resolve_account_id(cred, request.region)
        self.ensure_repository(cred, request.region, request.app_name)

        host = ecr_registry_host(account_id, request.region)
        username, password = self._authorization(cred, request.region)
        self._login(username, password, server=host)

        repository = f"{host}/{request.app_name}"
        tags, warnings = self.push_tags(artifact, repository, request.version)
        image = PublishedImage(
            uri=f"{repository}:{request.version}",
            registry=self.kind.value,
            account_id=account_id,
            tags=tags,
            warnings=warnings,
        )
        logger.info("镜像已发布: %s", image.uri)
        return image

    def resolve_account_id(self, cred: Credential, region: str) -> str:
        sts = self._client_factory("sts", cred, region)
        try:
            identity = sts.get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise AuthenticationFailed(f"无法解析 AWS 账号 ID: {e}") from e
        account_id = str(identity["Account"])
        logger.info("AWS 账号已解析: %s", account_id)
        return account_id

    def ensure_repository(self, cred: Credential, region: str, name: str) -> None:
        """仓库不存在则创建，幂等"""
        ecr = self._client_factory("ecr", cred, region)
        try:
            ecr.describe_repositories(repositoryNames=[name])
            logger.info("ECR 仓库已存在: %s", name)
            return
        except ClientError as e:
            if error_code(e) != "RepositoryNotFoundException":
                raise RepositoryProvisionFailed(f"查询 ECR 仓库失败: {name}: {e}") from e
        except BotoCoreError as e:
            raise RepositoryProvisionFailed(f"查询 ECR 仓库失败: {name}: {e}") from e

        try:
            ecr.create_repository(repositoryName=name)
            logger.info("ECR 仓库已创建: %s", name)
        except ClientError as e:
            if error_code(e) == "RepositoryAlreadyExistsException":
                logger.info("ECR 仓库已由其他运行创建: %s", name)
                return
            raise RepositoryProvisionFailed(f"创建 ECR 仓库失败: {name}: {e}") from e
        except BotoCoreError as e:
            raise RepositoryProvisionFailed(f"创建 ECR 仓库失败: {name}: {e}") from e

    def _authorization(self, cred: Credential, region: str) -> tuple[str, str]:
        """获取短期授权令牌，返回 (用户名, 密码)"""
        ecr = self._client_factory("ecr", cred, region)
        try:
            resp = ecr.get_authorization_token()
            token = resp["authorizationData"][0]["authorizationToken"]
            username, password = base64.b64decode(token).decode("utf-8").split(":", 1)
        except (ClientError, BotoCoreError) as e:
            raise AuthenticationFailed(f"获取 ECR 授权令牌失败: {e}") from e
        except (KeyError, IndexError, ValueError) as e:
            raise AuthenticationFailed(f"ECR 授权令牌格式异常: {e}") from e
        return username, password

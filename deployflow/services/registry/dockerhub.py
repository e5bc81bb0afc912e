"""Docker Hub 发布器：推送 {user}/{app}:{version} 与 {user}/{app}:latest"""

from __future__ import annotations

import logging

from deployflow.core.config import Config
from deployflow.core.models import (
    BuildArtifact,
    DeploymentRequest,
    PublishedImage,
    RegistryKind,
)
from deployflow.services.credentials import CredentialProvider
from deployflow.services.registry.base import RegistryPublisher
from deployflow.utils.shell import CommandRunner

logger = logging.getLogger(__name__)


class DockerHubPublisher(RegistryPublisher):
    kind = RegistryKind.DOCKERHUB

    def __init__(
        self,
        runner: CommandRunner,
        credentials: CredentialProvider,
        *,
        credential_ref: str = "docker-hub",
        docker_bin: str = "docker",
    ) -> None:
        super().__init__(
            runner, credentials, credential_ref=credential_ref, docker_bin=docker_bin,
        )

    @classmethod
    def credential_ref_for(cls, config: Config) -> str:
        return config.dockerhub_credential_ref

    @classmethod
    def check_request(cls, request: DeploymentRequest) -> list[str]:
        if not request.registry_identity:
            return ["registry=dockerhub 时 registry_identity 为必填"]
        return []

    def publish(self, artifact: BuildArtifact, request: DeploymentRequest) -> PublishedImage:
        cred = self.credentials.resolve(self.credential_ref)
        self._login(cred.identity or request.registry_identity, cred.secret)

        repository = f"{request.registry_identity}/{request.app_name}"
        tags, warnings = self.push_tags(artifact, repository, request.version)
        image = PublishedImage(
            uri=f"{repository}:{request.version}",
            registry=self.kind.value,
            tags=tags,
            warnings=warnings,
        )
        logger.info("镜像已发布: %s", image.uri)
        return image

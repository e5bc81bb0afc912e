"""镜像发布器单元测试：ECR（boto3 客户端替身）/ Docker Hub / 发布器注册表"""

from __future__ import annotations

import pytest
from botocore.exceptions import ClientError

from conftest import ACCOUNT_ID, ECR_PASSWORD, HUB_SECRET, client_factory_for
from deployflow.core.config import Config
from deployflow.core.exceptions import (
    AuthenticationFailed,
    CredentialNotFound,
    PushFailed,
    RepositoryProvisionFailed,
    ValidationError,
)
from deployflow.core.models import BuildArtifact, DeploymentRequest, PublishedImage
from deployflow.services import registry as registry_mod
from deployflow.services.credentials import StaticCredentialProvider
from deployflow.services.registry import (
    DockerHubPublisher,
    ECRPublisher,
    RegistryPublisher,
    create_publisher,
    ecr_registry_host,
    get_publisher_class,
    register_publisher,
    validate_request,
)
from deployflow.utils.shell import CommandRunner

HOST = f"{ACCOUNT_ID}.dkr.ecr.ap-south-1.amazonaws.com"
URI = f"{HOST}/demo:2.0.0"

ARTIFACT = BuildArtifact(
    local_ref="demo:build-2.0.0", image_id="sha256:abc", context_dir="/x/app", version="2.0.0",
)


def _request(registry: str = "ecr", **kw) -> DeploymentRequest:
    return DeploymentRequest(
        provider="aws", action="apply", region="ap-south-1", app_name="demo",
        version="2.0.0", registry=registry, secret_ref="app-secret-key", **kw,
    )


def _client_error(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


@pytest.fixture
def ecr_publisher(fake_executor, credentials, clients) -> ECRPublisher:
    return ECRPublisher(
        CommandRunner(fake_executor), credentials,
        client_factory=client_factory_for(clients),
    )


class TestECRPublisher:
    def test_publish(self, ecr_publisher: ECRPublisher, fake_executor, clients) -> None:
        image = ecr_publisher.publish(ARTIFACT, _request())
        assert image.uri == URI
        assert image.account_id == ACCOUNT_ID
        assert image.tags == ("2.0.0", "latest")
        assert image.warnings == ()
        assert ecr_registry_host(ACCOUNT_ID, "ap-south-1") == HOST

        clients["ecr"].describe_repositories.assert_called_once_with(repositoryNames=["demo"])
        clients["ecr"].create_repository.assert_not_called()

        assert fake_executor.lines == [
            f"docker login --username AWS --password-stdin {HOST}",
            f"docker tag demo:build-2.0.0 {HOST}/demo:2.0.0",
            f"docker push {HOST}/demo:2.0.0",
            f"docker tag demo:build-2.0.0 {HOST}/demo:latest",
            f"docker push {HOST}/demo:latest",
        ]

    def test_login_password_only_via_stdin(self, ecr_publisher: ECRPublisher, fake_executor) -> None:
        ecr_publisher.publish(ARTIFACT, _request())
        login = fake_executor.find("docker login")[0]
        assert ECR_PASSWORD not in login["line"]
        assert login["input_text"].strip() == ECR_PASSWORD
        assert ECR_PASSWORD in login["secrets"]

    def test_creates_missing_repository(self, ecr_publisher: ECRPublisher, clients) -> None:
        existing = ecr_publisher.publish(ARTIFACT, _request())

        clients["ecr"].describe_repositories.side_effect = _client_error(
            "RepositoryNotFoundException", "DescribeRepositories",
        )
        created = ecr_publisher.publish(ARTIFACT, _request())
        clients["ecr"].create_repository.assert_called_once_with(repositoryName="demo")
        assert created == existing

    def test_concurrent_create_absorbed(self, ecr_publisher: ECRPublisher, clients) -> None:
        clients["ecr"].describe_repositories.side_effect = _client_error(
            "RepositoryNotFoundException", "DescribeRepositories",
        )
        clients["ecr"].create_repository.side_effect = _client_error(
            "RepositoryAlreadyExistsException", "CreateRepository",
        )
        assert ecr_publisher.publish(ARTIFACT, _request()).uri == URI

    def test_repository_query_denied(self, ecr_publisher: ECRPublisher, clients) -> None:
        clients["ecr"].describe_repositories.side_effect = _client_error(
            "AccessDeniedException", "DescribeRepositories",
        )
        with pytest.raises(RepositoryProvisionFailed):
            ecr_publisher.publish(ARTIFACT, _request())

    def test_account_lookup_failure(self, ecr_publisher: ECRPublisher, clients, fake_executor) -> None:
        clients["sts"].get_caller_identity.side_effect = _client_error(
            "InvalidClientTokenId", "GetCallerIdentity",
        )
        with pytest.raises(AuthenticationFailed):
            ecr_publisher.publish(ARTIFACT, _request())
        assert fake_executor.calls == []

    def test_login_failure(self, ecr_publisher: ECRPublisher, fake_executor) -> None:
        fake_executor.when("docker login", exit_code=1, stderr="unauthorized")
        with pytest.raises(AuthenticationFailed) as exc:
            ecr_publisher.publish(ARTIFACT, _request())
        assert "unauthorized" in exc.value.output
        assert not fake_executor.find("docker push")

    def test_versioned_push_failure(self, ecr_publisher: ECRPublisher, fake_executor) -> None:
        fake_executor.when(f"push {HOST}/demo:2.0.0", exit_code=1, stderr="denied")
        with pytest.raises(PushFailed) as exc:
            ecr_publisher.publish(ARTIFACT, _request())
        assert exc.value.tag == "2.0.0"
        assert exc.value.output == "denied"

    def test_versioned_tag_failure(self, ecr_publisher: ECRPublisher, fake_executor) -> None:
        fake_executor.when(f"tag demo:build-2.0.0 {HOST}/demo:2.0.0", exit_code=1, stderr="no such image")
        with pytest.raises(PushFailed) as exc:
            ecr_publisher.publish(ARTIFACT, _request())
        assert exc.value.tag == "2.0.0"
        assert not fake_executor.find("docker push")

    def test_latest_tag_failure_is_warning(self, ecr_publisher: ECRPublisher, fake_executor) -> None:
        fake_executor.when(f"tag demo:build-2.0.0 {HOST}/demo:latest", exit_code=1, stderr="refused")
        image = ecr_publisher.publish(ARTIFACT, _request())
        assert image.uri == URI
        assert image.tags == ("2.0.0",)
        assert len(image.warnings) == 1 and "latest" in image.warnings[0]
        assert fake_executor.find(f"docker push {HOST}/demo:2.0.0")
        assert not fake_executor.find(f"docker push {HOST}/demo:latest")

    def test_latest_push_failure_is_warning(self, ecr_publisher: ECRPublisher, fake_executor) -> None:
        fake_executor.when(f"push {HOST}/demo:latest", exit_code=1, stderr="timeout")
        image = ecr_publisher.publish(ARTIFACT, _request())
        assert image.uri == URI
        assert image.tags == ("2.0.0",)
        assert len(image.warnings) == 1 and "latest" in image.warnings[0]

    def test_missing_cloud_credential(self, fake_executor, clients) -> None:
        pub = ECRPublisher(
            CommandRunner(fake_executor), StaticCredentialProvider(),
            client_factory=client_factory_for(clients),
        )
        with pytest.raises(CredentialNotFound):
            pub.publish(ARTIFACT, _request())

    def test_client_factory_receives_credential(self, fake_executor, credentials, clients) -> None:
        factory = client_factory_for(clients)
        ECRPublisher(CommandRunner(fake_executor), credentials, client_factory=factory).publish(
            ARTIFACT, _request(),
        )
        service, cred, region = factory.call_args_list[0].args
        assert service == "sts" and cred.ref == "aws-creds" and region == "ap-south-1"


class TestDockerHubPublisher:
    def test_publish(self, fake_executor, credentials) -> None:
        pub = DockerHubPublisher(CommandRunner(fake_executor), credentials)
        image = pub.publish(ARTIFACT, _request("dockerhub", registry_identity="acme"))
        assert image.uri == "acme/demo:2.0.0"
        assert image.account_id == "" and image.registry == "dockerhub"
        assert fake_executor.lines[0] == "docker login --username acme --password-stdin"
        assert fake_executor.calls[0]["input_text"].strip() == HUB_SECRET
        assert "docker push acme/demo:latest" in fake_executor.lines


class TestPublisherRegistry:
    def test_known_kinds(self) -> None:
        assert get_publisher_class("ecr") is ECRPublisher
        assert get_publisher_class("dockerhub") is DockerHubPublisher

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValidationError, match="quay"):
            get_publisher_class("quay")

    def test_create_uses_config_refs(self, fake_executor, credentials) -> None:
        cfg = Config(dockerhub_credential_ref="hub-prod", docker_bin="/usr/bin/docker")
        pub = create_publisher("dockerhub", CommandRunner(fake_executor), credentials, cfg)
        assert isinstance(pub, DockerHubPublisher)
        assert pub.credential_ref == "hub-prod" and pub.docker_bin == "/usr/bin/docker"

    def test_register_third_registry(
        self, fake_executor, credentials, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        class QuayPublisher(RegistryPublisher):
            kind = "quay"

            def publish(self, artifact, request):
                return PublishedImage(uri=f"quay.io/{request.app_name}", registry="quay")

        monkeypatch.setattr(registry_mod, "_PUBLISHERS", dict(registry_mod._PUBLISHERS))
        register_publisher("quay", QuayPublisher)
        cfg = Config.from_dict({"quay_credential_ref": "quay-robot"})
        pub = create_publisher("quay", CommandRunner(fake_executor), credentials, cfg)
        assert isinstance(pub, QuayPublisher) and pub.credential_ref == "quay-robot"
        assert pub.publish(ARTIFACT, _request()).uri == "quay.io/demo"


class TestValidateRequest:
    def test_returns_publisher_class(self) -> None:
        assert validate_request(_request()) is ECRPublisher
        assert validate_request(_request("dockerhub", registry_identity="acme")) is DockerHubPublisher

    def test_dockerhub_requires_identity(self) -> None:
        with pytest.raises(ValidationError) as exc:
            validate_request(_request("dockerhub"))
        assert exc.value.details == ["registry=dockerhub 时 registry_identity 为必填"]

    def test_unregistered_registry(self) -> None:
        with pytest.raises(ValidationError) as exc:
            validate_request(_request("quay"))
        assert any("registry 取值非法: 'quay'" in d for d in exc.value.details)

    def test_collects_generic_and_registry_problems(self) -> None:
        req = DeploymentRequest(
            provider="aws", action="apply", region="ap-south-1", app_name="demo",
            version="-bad", registry="dockerhub", secret_ref="app-secret-key",
        )
        with pytest.raises(ValidationError) as exc:
            validate_request(req)
        assert len(exc.value.details) == 2

    def test_registered_publisher_rules_apply(self, monkeypatch: pytest.MonkeyPatch) -> None:
        class QuayPublisher(RegistryPublisher):
            kind = "quay"

            @classmethod
            def check_request(cls, request):
                return [] if request.registry_identity else ["quay 需要组织名"]

            def publish(self, artifact, request):
                raise NotImplementedError

        monkeypatch.setattr(registry_mod, "_PUBLISHERS", dict(registry_mod._PUBLISHERS))
        register_publisher("quay", QuayPublisher)
        assert validate_request(_request("quay", registry_identity="acme")) is QuayPublisher
        with pytest.raises(ValidationError, match="部署请求校验失败"):
            validate_request(_request("quay"))

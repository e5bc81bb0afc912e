"""测试公共夹具：假命令执行器、内存凭据、ECR 客户端替身、标准目录布局"""

from __future__ import annotations

import base64
import os
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence
from unittest.mock import MagicMock

import pytest

from deployflow.core.config import Config
from deployflow.core.models import CommandResult
from deployflow.services.container import ServiceContainer
from deployflow.services.credentials import StaticCredentialProvider
from deployflow.utils.logger import reset_logging

ACCOUNT_ID = "123456789012"
AWS_KEY_ID = "AKIAEXAMPLEKEY01"
AWS_SECRET = "aws-secret-value-xyz"
HUB_SECRET = "hub-pass-123"
APP_SECRET = "s3cr3t-app-value"
ECR_PASSWORD = "ecr-login-password"


class FakeExecutor:
    """按命令行子串匹配返回结果的假执行器，记录全部调用

    rule 后注册优先；raises 为异常实例时抛出，before 为回调时先执行。
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self._rules: list[tuple[str, CommandResult | None, BaseException | None,
                                Callable[[], None] | None]] = []
        self._lock = threading.Lock()
        self.when("image inspect", stdout="sha256:0123456789abcdef")

    def when(
        self, pattern: str, *, exit_code: int = 0, stdout: str = "", stderr: str = "",
        raises: BaseException | None = None, before: Callable[[], None] | None = None,
    ) -> FakeExecutor:
        result = CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)
        self._rules.append((pattern, result, raises, before))
        return self

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: dict[str, str] | None = None,
        cwd: str = ".",
        timeout: float | None = None,
        input_text: str | None = None,
        cancel: Any = None,
        secrets: Iterable[str] = (),
    ) -> CommandResult:
        line = " ".join([os.path.basename(command), *args])
        with self._lock:
            self.calls.append({
                "line": line, "env": dict(env or {}), "cwd": cwd,
                "input_text": input_text, "secrets": tuple(secrets),
            })
        for pattern, result, raises, before in reversed(self._rules):
            if pattern in line:
                if before is not None:
                    before()
                if raises is not None:
                    raise raises
                assert result is not None
                return CommandResult(
                    exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr,
                )
        return CommandResult(exit_code=0)

    @property
    def lines(self) -> list[str]:
        with self._lock:
            return [c["line"] for c in self.calls]

    def find(self, pattern: str) -> list[dict[str, Any]]:
        with self._lock:
            return [c for c in self.calls if pattern in c["line"]]


def ecr_clients() -> dict[str, MagicMock]:
    token = base64.b64encode(f"AWS:{ECR_PASSWORD}".encode()).decode()
    sts = MagicMock()
    sts.get_caller_identity.return_value = {"Account": ACCOUNT_ID}
    ecr = MagicMock()
    ecr.describe_repositories.return_value = {"repositories": [{"repositoryName": "demo"}]}
    ecr.get_authorization_token.return_value = {
        "authorizationData": [{"authorizationToken": token}],
    }
    return {"sts": sts, "ecr": ecr}


def client_factory_for(clients: dict[str, MagicMock]) -> MagicMock:
    return MagicMock(side_effect=lambda service, cred, region: clients[service])


@pytest.fixture(autouse=True)
def _clean_logging():
    yield
    reset_logging()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def credentials() -> StaticCredentialProvider:
    creds = StaticCredentialProvider()
    creds.add("aws-creds", AWS_KEY_ID, AWS_SECRET)
    creds.add("docker-hub", "acme", HUB_SECRET)
    creds.add("app-secret-key", "", APP_SECRET)
    return creds


@pytest.fixture
def clients() -> dict[str, MagicMock]:
    return ecr_clients()


@pytest.fixture
def layout(tmp_path: Path) -> Path:
    """标准目录布局：<base>/app/Dockerfile + <base>/infra/aws"""
    base = tmp_path / "secure-store"
    (base / "app").mkdir(parents=True)
    (base / "app" / "Dockerfile").write_text("FROM scratch\n", encoding="utf-8")
    (base / "infra" / "aws").mkdir(parents=True)
    return base


@pytest.fixture
def config(layout: Path, tmp_path: Path) -> Config:
    return Config(
        base_dir=str(layout),
        records_dir=str(tmp_path / "records"),
        default_app_name="demo",
        default_version="2.0.0",
        command_timeout=60,
        run_timeout=600,
    )


@pytest.fixture
def container(
    config: Config, fake_executor: FakeExecutor,
    credentials: StaticCredentialProvider, clients: dict[str, MagicMock],
) -> ServiceContainer:
    return ServiceContainer(
        config=config,
        executor=fake_executor,
        credentials=credentials,
        client_factory=client_factory_for(clients),
    )

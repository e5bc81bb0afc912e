"""服务容器 — 统一依赖注入

跨运行共享的对象（配置、凭据提供者、命令执行器、工作区锁、记录存储）由容器懒加载持有；
每次运行独有的组件（镜像构建器、发布器、部署引擎）由工厂方法按运行创建，
绑定该运行的 CommandRunner（超时 + 取消令牌）。

用法:
    container = ServiceContainer(config=Config.from_file("deployflow.yml"))
    report = container.deploy.run(request)

    # 测试时注入替身
    container = ServiceContainer(executor=FakeExecutor(), credentials=StaticCredentialProvider())
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

from deployflow.core.cancellation import CancelToken
from deployflow.utils.shell import CommandRunner

if TYPE_CHECKING:
    from deployflow.core.config import Config
    from deployflow.core.locks import WorkspaceLocks
    from deployflow.core.records import RecordStore
    from deployflow.services.credentials import CredentialProvider
    from deployflow.services.deploy_service import DeploymentService
    from deployflow.services.image_builder import ImageBuilder
    from deployflow.services.pipeline import DeploymentPipeline
    from deployflow.services.provisioning import ProvisioningEngine
    from deployflow.services.registry import RegistryPublisher
    from deployflow.utils.aws import ClientFactory
    from deployflow.utils.shell import CommandExecutor


class ServiceContainer:
    """懒加载服务容器"""

    def __init__(
        self,
        config: Config | None = None,
        *,
        executor: CommandExecutor | None = None,
        credentials: CredentialProvider | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        if config is None:
            from deployflow.core.config import get_config
            config = get_config()
        self._config = config
        self._instances: dict[str, object] = {}
        self._lock = threading.Lock()
        if executor is not None:
            self._instances["executor"] = executor
        if credentials is not None:
            self._instances["credentials"] = credentials
        self._client_factory = client_factory

    @property
    def config(self) -> Config:
        return self._config

    def _get(self, name: str, build: Any) -> Any:
        with self._lock:
            if name not in self._instances:
                self._instances[name] = build()
            return self._instances[name]

    # ---- 共享对象 ----

    @property
    def executor(self) -> CommandExecutor:
        def build() -> CommandExecutor:
            from deployflow.utils.shell import LocalExecutor
            return LocalExecutor(max_lines=self._config.output_max_lines)
        return self._get("executor", build)  # type: ignore[no-any-return]

    @property
    def credentials(self) -> CredentialProvider:
        def build() -> CredentialProvider:
            from deployflow.services.credentials import EnvCredentialProvider
            return EnvCredentialProvider()
        return self._get("credentials", build)  # type: ignore[no-any-return]

    @property
    def locks(self) -> WorkspaceLocks:
        def build() -> WorkspaceLocks:
            from deployflow.core.locks import WorkspaceLocks
            return WorkspaceLocks()
        return self._get("locks", build)  # type: ignore[no-any-return]

    @property
    def records(self) -> RecordStore:
        def build() -> RecordStore:
            from deployflow.core.records import RecordStore
            return RecordStore(self._config.records_path, self._config.history_path)
        return self._get("records", build)  # type: ignore[no-any-return]

    @property
    def pipeline(self) -> DeploymentPipeline:
        def build() -> DeploymentPipeline:
            from deployflow.services.pipeline import DeploymentPipeline
            return DeploymentPipeline(self)
        return self._get("pipeline", build)  # type: ignore[no-any-return]

    @property
    def deploy(self) -> DeploymentService:
        def build() -> DeploymentService:
            from deployflow.services.deploy_service import DeploymentService
            return DeploymentService(self)
        return self._get("deploy", build)  # type: ignore[no-any-return]

    # ---- 按运行创建 ----

    def runner(self, cancel: CancelToken | None = None) -> CommandRunner:
        return CommandRunner(
            self.executor, timeout=self._config.command_timeout or None, cancel=cancel,
        )

    def image_builder(self, runner: CommandRunner) -> ImageBuilder:
        from deployflow.services.image_builder import ImageBuilder
        return ImageBuilder(runner, docker_bin=self._config.docker_bin)

    def publisher(self, kind: str, runner: CommandRunner) -> RegistryPublisher:
        from deployflow.services.registry import create_publisher
        return create_publisher(
            kind, runner, self.credentials, self._config,
            client_factory=self._client_factory,
        )

    def provisioning_engine(self, runner: CommandRunner, region: str) -> ProvisioningEngine:
        from deployflow.services.provisioning import ProvisioningEngine
        return ProvisioningEngine(
            runner, self.credentials,
            region=region,
            cloud_credential_ref=self._config.aws_credential_ref,
            terraform_bin=self._config.terraform_bin,
        )


# ---- 全局单例 ----

_global: ServiceContainer | None = None
_global_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """获取全局 ServiceContainer 单例（线程安全）"""
    global _global  # noqa: PLW0603
    if _global is not None:
        return _global
    with _global_lock:
        if _global is None:
            _global = ServiceContainer()
        return _global


def reset_container() -> None:
    """重置全局容器（仅用于测试）"""
    global _global  # noqa: PLW0603
    with _global_lock:
        _global = None

"""部署服务 — CLI 与批量调用共享的运行入口

负责：用配置默认值补全请求参数、跟踪活动运行的取消令牌、
按 max_parallel_runs 并发执行多个互不相关的部署。
同一 (app_name, workspace) 的并发运行由流水线内的工作区锁串行化。
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from deployflow.core.cancellation import CancelToken
from deployflow.core.exceptions import CredentialError, DeployFlowError
from deployflow.core.models import DeploymentRequest, PipelineReport
from deployflow.services.registry import get_publisher_class, validate_request
from deployflow.utils.masking import mask_identity

if TYPE_CHECKING:
    from deployflow.services.container import ServiceContainer

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """批量运行中单个请求的结果，report 和 error 至多一个为空"""

    request: DeploymentRequest
    report: PipelineReport | None = None
    error: DeployFlowError | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.report is not None and self.report.success


class DeploymentService:
    """部署运行入口"""

    def __init__(self, container: ServiceContainer) -> None:
        self.c = container
        self._active: dict[str, CancelToken] = {}
        self._lock = threading.Lock()

    def build_request(self, **params: Any) -> DeploymentRequest:
        """未给出的字段取配置默认值，然后校验"""
        cfg = self.c.config
        defaults: dict[str, Any] = {
            "provider": cfg.default_provider,
            "region": cfg.default_region,
            "app_name": cfg.default_app_name,
            "version": cfg.default_version,
            "registry_identity": cfg.default_dockerhub_user,
            "secret_ref": cfg.default_secret_ref,
        }
        merged = {k: v for k, v in defaults.items() if v}
        merged.update({k: v for k, v in params.items() if v is not None and v != ""})
        request = DeploymentRequest.from_params(merged)
        validate_request(request)
        return request

    def verify(self, request: DeploymentRequest) -> list[tuple[str, bool, str]]:
        """不执行任何外部命令的预检：目录布局、构建描述文件、凭据引用可解析

        返回 (检查项, 是否通过, 说明) 列表；说明中不含任何密钥。
        """
        from deployflow.services.image_builder import ImageBuilder

        cfg = self.c.config
        checks: list[tuple[str, bool, str]] = []
        for name, path in (("构建上下文", cfg.context_path), ("部署工作区", cfg.infra_path)):
            checks.append((name, path.is_dir(), str(path)))
        descriptor = ImageBuilder.find_descriptor(cfg.context_path)
        checks.append(("构建描述文件", descriptor is not None,
                       descriptor.name if descriptor else "未找到 Dockerfile/Containerfile"))

        refs = [("云凭据", cfg.aws_credential_ref)]
        registry_ref = get_publisher_class(request.registry).credential_ref_for(cfg)
        if registry_ref and registry_ref != cfg.aws_credential_ref:
            refs.append(("仓库凭据", registry_ref))
        if request.secret_ref:
            refs.append(("应用密钥", request.secret_ref))
        for name, ref in refs:
            try:
                cred = self.c.credentials.resolve(ref)
                checks.append((name, True, f"{ref} ({mask_identity(cred.identity)})"))
            except CredentialError as e:
                checks.append((name, False, str(e)))
        return checks

    def run(
        self, request: DeploymentRequest, *, run_id: str = "",
        cancel: CancelToken | None = None,
    ) -> PipelineReport:
        """执行一次部署；失败时抛出流水线的异常"""
        run_id = run_id or uuid.uuid4().hex[:12]
        if cancel is None:
            cancel = CancelToken(timeout=self.c.config.run_timeout or None)
        with self._lock:
            self._active[run_id] = cancel
        try:
            return self.c.pipeline.run(request, run_id=run_id, cancel=cancel)
        finally:
            with self._lock:
                self._active.pop(run_id, None)

    def run_many(
        self, requests: list[DeploymentRequest], max_workers: int | None = None,
    ) -> list[RunResult]:
        """并发执行多个请求，返回结果与输入顺序一致"""
        workers = max(1, max_workers or self.c.config.max_parallel_runs)

        def one(req: DeploymentRequest) -> RunResult:
            try:
                return RunResult(request=req, report=self.run(req))
            except DeployFlowError as e:
                return RunResult(request=req, error=e)

        if workers == 1 or len(requests) <= 1:
            return [one(r) for r in requests]

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(one, r) for r in requests]
            results = []
            for req, future in zip(requests, futures):
                result = future.result()
                logger.info("完成: %s %s -> %s", req.app_name, req.action,
                            "成功" if result.success else "失败")
                results.append(result)
            return results

    def active_runs(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    def cancel(self, run_id: str, reason: str = "用户取消") -> bool:
        """取消指定运行，运行不存在返回 False"""
        with self._lock:
            token = self._active.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.warning("已请求取消运行: %s (%s)", run_id, reason)
        return True

    def cancel_all(self, reason: str = "用户取消") -> int:
        with self._lock:
            tokens = list(self._active.values())
        for t in tokens:
            t.cancel(reason)
        return len(tokens)

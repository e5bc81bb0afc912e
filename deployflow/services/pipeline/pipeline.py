"""部署流水线 - 显式状态机

start → verify_layout → build → publish → plan → (apply | destroy) → finalize → succeeded
任一阶段出错 → failed → finalize → failed

- finalize 每次运行恰好执行一次，无论成功还是任一阶段失败
- plan 到 apply/destroy 期间持有 (app_name, workspace) 工作区锁
- 校验类错误（ValidationError）在 finalize 后原样抛出；
  其余阶段错误包装为 DeploymentFailed，标明失败阶段并携带工具输出
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING

from deployflow.core.cancellation import CancelToken
from deployflow.core.exceptions import (
    Cancelled,
    DeployFlowError,
    DeploymentFailed,
    ValidationError,
)
from deployflow.core.models import (
    DeploymentRequest,
    PipelineReport,
    PipelineState,
    StageResult,
    StageStatus,
)
from deployflow.services.pipeline.models import RunContext, check_transition
from deployflow.services.pipeline.stages import PipelineStages, is_destroy

if TYPE_CHECKING:
    from deployflow.services.container import ServiceContainer

logger = logging.getLogger(__name__)

S = PipelineState


class DeploymentPipeline:
    """构建 → 发布 → 部署 编排器"""

    def __init__(self, container: ServiceContainer) -> None:
        self.c = container
        self.stages = PipelineStages(container)

    @staticmethod
    def _enter(report: PipelineReport, target: PipelineState) -> None:
        check_transition(report.state, target)
        logger.debug("状态迁移: %s -> %s", report.state.value, target.value)
        report.state = target

    def _context(
        self, request: DeploymentRequest, run_id: str, cancel: CancelToken,
    ) -> RunContext:
        cfg = self.c.config
        runner = self.c.runner(cancel)
        return RunContext(
            run_id=run_id,
            request=request,
            cancel=cancel,
            runner=runner,
            cleanup_runner=self.c.runner(None),
            context_dir=str(cfg.context_path),
            workspace=str(cfg.infra_path),
        )

    def run(
        self,
        request: DeploymentRequest,
        *,
        run_id: str = "",
        cancel: CancelToken | None = None,
    ) -> PipelineReport:
        """执行一次完整运行，成功返回报告，失败抛异常（报告挂在异常上）"""
        run_id = run_id or uuid.uuid4().hex[:12]
        if cancel is None:
            cancel = CancelToken(timeout=self.c.config.run_timeout or None)
        ctx = self._context(request, run_id, cancel)
        report = PipelineReport(run_id=run_id, request=request)
        error: BaseException | None = None
        stage_start = time.monotonic()
        logger.info("流水线开始: run_id=%s app=%s action=%s",
                    run_id, request.app_name, request.action, extra={"run_id": run_id})

        try:
            self.stages.validate(ctx, report)
            for state, step in (
                (S.VERIFY_LAYOUT, self.stages.verify_layout),
                (S.BUILD, self.stages.build),
                (S.PUBLISH, self.stages.publish),
            ):
                self._enter(report, state)
                stage_start = time.monotonic()
                cancel.check()
                step(ctx, report)

            self._enter(report, S.PLAN)
            stage_start = time.monotonic()
            cancel.check()
            with self.c.locks.hold(
                request.app_name, ctx.workspace, owner=run_id, cancel=cancel,
            ):
                ctx.engine = self.c.provisioning_engine(ctx.runner, request.region)
                self.stages.plan(ctx, report)

                final = S.DESTROY if is_destroy(ctx) else S.APPLY
                self._enter(report, final)
                stage_start = time.monotonic()
                cancel.check()
                if final == S.DESTROY:
                    self.stages.destroy(ctx, report)
                else:
                    self.stages.apply(ctx, report)
        except DeployFlowError as e:
            error = e
            self._fail(report, e, stage_start)
        except BaseException as e:
            # 非业务异常（含 KeyboardInterrupt）同样需要 finalize，之后原样抛出
            error = e
            self._fail(report, e, stage_start)
            self._finalize(ctx, report, failed=True)
            raise

        self._finalize(ctx, report, failed=error is not None)

        if error is None:
            return report
        if isinstance(error, ValidationError):
            raise error
        assert isinstance(error, DeployFlowError)
        raise DeploymentFailed(report.failed_stage, error, report) from error

    def _fail(self, report: PipelineReport, error: BaseException, start: float) -> None:
        stage = "validate" if report.state == S.START else report.state.value
        if isinstance(error, Cancelled):
            reason = "cancelled"
        elif isinstance(error, DeployFlowError):
            reason = error.code.lower()
        else:
            reason = type(error).__name__
        report.failed_stage = stage
        report.failure_reason = reason
        output = getattr(error, "output", "") or ""
        report.stages.append(StageResult(
            stage=stage,
            status=StageStatus.FAILED,
            output=output,
            duration=time.monotonic() - start,
            message=str(error),
        ))
        logger.error("阶段 %s 失败 (%s): %s", stage, reason, error,
                     extra={"run_id": report.run_id, "stage": stage})
        if output:
            logger.error("工具输出:\n%s", output)
        self._enter(report, S.FAILED)

    def _finalize(self, ctx: RunContext, report: PipelineReport, *, failed: bool) -> None:
        self._enter(report, S.FINALIZE)
        self.stages.finalize(ctx, report, failed=failed)
        self._enter(report, S.FAILED if failed else S.SUCCEEDED)

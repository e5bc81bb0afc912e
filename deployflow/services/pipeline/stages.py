"""流水线阶段实现

阶段顺序：
1. validate - 请求校验（无副作用）
2. verify_layout - 目录布局检查
3. build - 无缓存构建镜像
4. publish - 推送到 ECR / Docker Hub
5. plan - terraform init + plan（destroy 只做 init）
6. apply / destroy - 应用或销毁
7. finalize - 清理本地镜像、写部署记录、记录审计历史（必定执行）
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

from deployflow.core.exceptions import DeployFlowError, LayoutInvalid
from deployflow.core.models import (
    Action,
    PipelineReport,
    RunOutcome,
    StageResult,
    StageStatus,
)
from deployflow.services.registry import validate_request

if TYPE_CHECKING:
    from deployflow.services.container import ServiceContainer
    from deployflow.services.pipeline.models import RunContext

logger = logging.getLogger(__name__)

# terraform 变量名
VAR_IMAGE = "container_image"
VAR_APP = "app_name"
VAR_REGION = "aws_region"
VAR_SECRET = "secret_key"


def _record(
    report: PipelineReport, stage: str, status: StageStatus, start: float,
    *, output: str = "", message: str = "",
) -> StageResult:
    result = StageResult(
        stage=stage, status=status, output=output,
        duration=time.monotonic() - start, message=message,
    )
    report.stages.append(result)
    return result


class PipelineStages:
    """流水线阶段集合"""

    def __init__(self, container: ServiceContainer) -> None:
        self.c = container

    def validate(self, ctx: RunContext, report: PipelineReport) -> None:
        """步骤1: 请求校验，失败时不产生任何副作用"""
        start = time.monotonic()
        validate_request(ctx.request)
        _record(report, "validate", StageStatus.SUCCESS, start)
        logger.info("[Stage 1] 请求校验通过: app=%s version=%s action=%s registry=%s",
                    ctx.request.app_name, ctx.request.version,
                    ctx.request.action, ctx.request.registry)

    def verify_layout(self, ctx: RunContext, report: PipelineReport) -> None:
        """步骤2: 检查构建上下文和部署工作区目录"""
        start = time.monotonic()
        missing = [p for p in (ctx.context_dir, ctx.workspace) if not Path(p).is_dir()]
        if missing:
            raise LayoutInvalid("目录布局不完整", details=missing)
        base = Path(self.c.config.base_dir)
        listing = "\n".join(sorted(p.name for p in base.iterdir())) if base.is_dir() else ""
        _record(report, "verify_layout", StageStatus.SUCCESS, start, output=listing)
        logger.info("[Stage 2] 目录布局检查通过: context=%s workspace=%s",
                    ctx.context_dir, ctx.workspace)

    def build(self, ctx: RunContext, report: PipelineReport) -> None:
        """步骤3: 无缓存构建镜像"""
        start = time.monotonic()
        builder = self.c.image_builder(ctx.runner)
        ctx.artifact = builder.build(
            ctx.context_dir, ctx.request.app_name, ctx.request.version,
        )
        _record(report, "build", StageStatus.SUCCESS, start,
                message=f"{ctx.artifact.local_ref} {ctx.artifact.image_id}")
        logger.info("[Stage 3] 镜像构建完成: %s", ctx.artifact.local_ref)

    def publish(self, ctx: RunContext, report: PipelineReport) -> None:
        """步骤4: 登录仓库、打标签并推送"""
        assert ctx.artifact is not None
        start = time.monotonic()
        publisher = self.c.publisher(ctx.request.registry, ctx.runner)
        image = publisher.publish(ctx.artifact, ctx.request)
        ctx.published = image
        report.published = image
        report.warnings.extend(image.warnings)
        status = StageStatus.WARNING if image.warnings else StageStatus.SUCCESS
        _record(report, "publish", status, start,
                message=image.uri, output="\n".join(image.warnings))
        logger.info("[Stage 4] 镜像已发布: %s", image.uri)

    def plan(self, ctx: RunContext, report: PipelineReport) -> None:
        """步骤5: terraform init + plan（destroy 只做 init）"""
        assert ctx.published is not None and ctx.engine is not None
        start = time.monotonic()
        ctx.variables = {
            VAR_IMAGE: ctx.published.uri,
            VAR_APP: ctx.request.app_name,
            VAR_REGION: ctx.request.region,
        }
        ctx.secret_vars = (
            {VAR_SECRET: ctx.request.secret_ref} if ctx.request.secret_ref else {}
        )
        if is_destroy(ctx):
            result = ctx.engine.init(ctx.workspace)
            _record(report, "plan", StageStatus.SKIPPED, start,
                    output=result.output, message="destroy 不生成计划，仅初始化工作区")
            logger.info("[Stage 5] destroy 跳过 plan，工作区已初始化")
            return
        ctx.plan = ctx.engine.plan(ctx.workspace, ctx.variables, ctx.secret_vars)
        _record(report, "plan", StageStatus.SUCCESS, start,
                output=ctx.plan.output, message=f"plan_id={ctx.plan.plan_id}")
        logger.info("[Stage 5] 部署计划完成: plan_id=%s", ctx.plan.plan_id)

    def apply(self, ctx: RunContext, report: PipelineReport) -> None:
        """步骤6a: 应用计划"""
        assert ctx.plan is not None and ctx.engine is not None
        start = time.monotonic()
        result = ctx.engine.apply(ctx.plan)
        _record(report, "apply", StageStatus.SUCCESS, start, output=result.output)
        logger.info("[Stage 6] 部署已应用: %s", ctx.request.app_name)

    def destroy(self, ctx: RunContext, report: PipelineReport) -> None:
        """步骤6b: 销毁资源（跳过计划，需显式确认）"""
        assert ctx.engine is not None
        start = time.monotonic()
        result = ctx.engine.destroy(
            ctx.workspace, ctx.variables, ctx.secret_vars,
            confirmed=ctx.request.confirm_destroy,
        )
        _record(report, "destroy", StageStatus.SUCCESS, start, output=result.output)
        logger.info("[Stage 6] 部署已销毁: %s", ctx.request.app_name)

    def finalize(self, ctx: RunContext, report: PipelineReport, *, failed: bool) -> None:
        """步骤7: 清理 + 部署记录 + 审计历史；自身错误只降级为告警，不掩盖原始失败"""
        start = time.monotonic()
        notes: list[str] = []

        if ctx.artifact is not None:
            builder = self.c.image_builder(ctx.cleanup_runner)
            try:
                if not builder.remove(ctx.artifact):
                    notes.append(f"本地镜像删除失败: {ctx.artifact.local_ref}")
                if self.c.config.prune_images:
                    builder.prune()
            except DeployFlowError as e:
                logger.warning("本地镜像清理失败: %s", e)
                notes.append(f"本地镜像清理失败: {e}")

        if ctx.published is not None:
            try:
                self.c.records.write_record(
                    ctx.request.app_name, ctx.published,
                    run_id=ctx.run_id, version=ctx.request.version,
                )
            except (OSError, ValueError) as e:
                logger.exception("部署记录写入失败")
                notes.append(f"部署记录写入失败: {e}")

        report.warnings.extend(notes)
        if failed:
            report.outcome = RunOutcome.FAILED
        elif report.warnings:
            report.outcome = RunOutcome.SUCCEEDED_WITH_WARNINGS
        else:
            report.outcome = RunOutcome.SUCCEEDED
        _record(
            report, "finalize",
            StageStatus.WARNING if notes else StageStatus.SUCCESS, start,
            output="\n".join(notes),
        )

        try:
            self.c.records.append_history(report)
        except (OSError, ValueError) as e:
            logger.exception("执行历史写入失败")
            report.warnings.append(f"执行历史写入失败: {e}")
            if report.outcome == RunOutcome.SUCCEEDED:
                report.outcome = RunOutcome.SUCCEEDED_WITH_WARNINGS

        for s in report.stages:
            logger.info("  [%-8s] %-14s %.1fs %s",
                        s.status.value, s.stage, s.duration, s.message)
        logger.info("[Stage 7] 运行结束: run_id=%s outcome=%s",
                    ctx.run_id, report.outcome.value)


def is_destroy(ctx: RunContext) -> bool:
    return ctx.request.action == Action.DESTROY.value

"""镜像构建

职责:
- 构建上下文校验（目录存在且包含 Dockerfile / Containerfile）
- 无缓存构建（docker build --no-cache），保证审计可复现
- 解析内容寻址的本地镜像 ID
- 清理本地构建镜像（流水线 finalize 调用，尽力而为）
"""

from __future__ import annotations

import logging
from pathlib import Path

from deployflow.core.exceptions import BuildContextMissing, BuildFailed
from deployflow.core.models import BuildArtifact
from deployflow.utils.shell import CommandRunner

logger = logging.getLogger(__name__)

BUILD_DESCRIPTORS = ("Dockerfile", "Containerfile")


def local_image_ref(app_name: str, version: str) -> str:
    return f"{app_name}:build-{version}"


class ImageBuilder:
    """容器镜像构建器"""

    def __init__(self, runner: CommandRunner, docker_bin: str = "docker") -> None:
        self.runner = runner
        self.docker_bin = docker_bin

    @staticmethod
    def find_descriptor(context_dir: str | Path) -> Path | None:
        ctx = Path(context_dir)
        for name in BUILD_DESCRIPTORS:
            candidate = ctx / name
            if candidate.is_file():
                return candidate
        return None

    def build(self, context_dir: str, app_name: str, version: str) -> BuildArtifact:
        """从构建上下文构建镜像，返回本地构建产物"""
        ctx = Path(context_dir)
        if not ctx.is_dir():
            raise BuildContextMissing(f"构建上下文目录不存在: {ctx}")
        descriptor = self.find_descriptor(ctx)
        if descriptor is None:
            raise BuildContextMissing(
                f"构建上下文缺少构建描述文件 {'/'.join(BUILD_DESCRIPTORS)}: {ctx}"
            )

        ref = local_image_ref(app_name, version)
        args = ["build", "--no-cache", "-t", ref]
        if descriptor.name != "Dockerfile":
            args += ["-f", descriptor.name]
        args.append(".")
        result = self.runner.run(self.docker_bin, args, workdir=str(ctx))
        if not result.success:
            raise BuildFailed(
                f"镜像构建失败: {ref} (rc={result.exit_code})", output=result.output,
            )

        inspected = self.runner.run(
            self.docker_bin, ["image", "inspect", "--format", "{{.Id}}", ref],
            workdir=str(ctx),
        )
        if not inspected.success or not inspected.stdout.strip():
            raise BuildFailed(f"无法解析镜像 ID: {ref}", output=inspected.output)

        artifact = BuildArtifact(
            local_ref=ref,
            image_id=inspected.stdout.strip().splitlines()[-1],
            context_dir=str(ctx),
            version=version,
        )
        logger.info("镜像构建完成: %s (%s)", ref, artifact.image_id)
        return artifact

    def remove(self, artifact: BuildArtifact) -> bool:
        """删除本地构建镜像，失败只记日志"""
        result = self.runner.run(
            self.docker_bin, ["image", "rm", "-f", artifact.local_ref],
        )
        if not result.success:
            logger.warning("本地镜像删除失败: %s\n%s", artifact.local_ref, result.output)
            return False
        logger.info("本地镜像已删除: %s", artifact.local_ref)
        return True

    def prune(self) -> bool:
        """清理悬空镜像，失败只记日志"""
        result = self.runner.run(self.docker_bin, ["image", "prune", "-f"])
        if not result.success:
            logger.warning("镜像清理失败:\n%s", result.output)
            return False
        return True

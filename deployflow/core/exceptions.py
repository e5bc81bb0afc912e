"""统一异常体系

所有业务异常继承 DeployFlowError，按阶段分组：
校验 / 凭据 / 进程 / 构建 / 发布 / 部署 / 取消。
携带外部工具输出的异常统一通过 output 字段透传，CLI 与审计记录原样展示。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deployflow.core.models import PipelineReport


class DeployFlowError(Exception):
    """框架基础异常"""

    code: str = "UNKNOWN"

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class ConfigError(DeployFlowError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


class ValidationError(DeployFlowError):
    """请求或输入校验失败（任何副作用发生之前）"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class LayoutInvalid(ValidationError):
    """构建上下文或基础设施目录缺失"""

    code = "LAYOUT_INVALID"


# =========================================================================
# 凭据
# =========================================================================

class CredentialError(DeployFlowError):
    code = "CREDENTIAL_ERROR"


class CredentialNotFound(CredentialError):
    code = "CREDENTIAL_NOT_FOUND"


class CredentialExpired(CredentialError):
    code = "CREDENTIAL_EXPIRED"


# =========================================================================
# 进程
# =========================================================================

class ProcessError(DeployFlowError):
    code = "PROCESS_ERROR"


class ProcessTimeout(ProcessError):
    code = "PROCESS_TIMEOUT"


class ProcessLaunchError(ProcessError):
    code = "PROCESS_LAUNCH_ERROR"


# =========================================================================
# 构建 / 发布 / 部署
# =========================================================================

class BuildError(DeployFlowError):
    code = "BUILD_ERROR"


class BuildContextMissing(BuildError):
    code = "BUILD_CONTEXT_MISSING"


class BuildFailed(BuildError):
    code = "BUILD_FAILED"


class PublishError(DeployFlowError):
    code = "PUBLISH_ERROR"


class AuthenticationFailed(PublishError):
    code = "AUTHENTICATION_FAILED"


class PushFailed(PublishError):
    """推送失败，tag 标明失败的镜像标签"""

    code = "PUSH_FAILED"

    def __init__(self, message: str, *, tag: str, output: str = "") -> None:
        super().__init__(message, output=output)
        self.tag = tag


class RepositoryProvisionFailed(PublishError):
    code = "REPOSITORY_PROVISION_FAILED"


class ProvisionError(DeployFlowError):
    code = "PROVISION_ERROR"


class InitFailed(ProvisionError):
    code = "INIT_FAILED"


class PlanFailed(ProvisionError):
    code = "PLAN_FAILED"


class ApplyFailed(ProvisionError):
    code = "APPLY_FAILED"


class DestroyFailed(ProvisionError):
    code = "DESTROY_FAILED"


class PlanRequired(ProvisionError):
    """apply 收到的不是本次运行中 plan 产出的计划"""

    code = "PLAN_REQUIRED"


class PlanDrift(ProvisionError):
    """apply 时变量集与 plan 时不一致"""

    code = "PLAN_DRIFT"


# =========================================================================
# 取消 / 汇总
# =========================================================================

class Cancelled(DeployFlowError):
    """运行被取消（超时或外部中止）"""

    code = "CANCELLED"


class DeploymentFailed(DeployFlowError):
    """流水线失败的汇总异常，标明失败阶段并携带原始工具输出"""

    code = "DEPLOYMENT_FAILED"

    def __init__(
        self,
        stage: str,
        cause: DeployFlowError,
        report: PipelineReport | None = None,
    ) -> None:
        super().__init__(
            f"阶段 {stage} 失败: [{cause.code}] {cause}", output=cause.output,
        )
        self.stage = stage
        self.cause = cause
        self.report = report

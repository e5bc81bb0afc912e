"""核心数据模型

所有跨阶段流转的数据类集中定义：
请求 → 构建产物 → 发布镜像 → 部署计划 → 阶段结果 → 流水线报告。
阶段之间只通过这些显式类型传值，不共享可变变量。
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping

from deployflow.core.exceptions import ValidationError

# =========================================================================
# 枚举
# =========================================================================


class CloudProvider(str, Enum):
    AWS = "aws"


class Action(str, Enum):
    APPLY = "apply"
    DESTROY = "destroy"


class RegistryKind(str, Enum):
    ECR = "ecr"
    DOCKERHUB = "dockerhub"


class StageStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    WARNING = "warning"


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SUCCEEDED_WITH_WARNINGS = "succeeded_with_warnings"
    FAILED = "failed"


class PipelineState(str, Enum):
    START = "start"
    VERIFY_LAYOUT = "verify_layout"
    BUILD = "build"
    PUBLISH = "publish"
    PLAN = "plan"
    APPLY = "apply"
    DESTROY = "destroy"
    FINALIZE = "finalize"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ProvisionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    PLANNED = "planned"
    APPLIED = "applied"
    DESTROYED = "destroyed"


# =========================================================================
# 部署请求
# =========================================================================

# 镜像仓库名 / 标签的合法字符（docker reference 语法子集）
_NAME_RE = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_REGION_RE = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d+$")

_REQUIRED_FIELDS = ("provider", "action", "region", "app_name", "version", "registry")
_STR_FIELDS = _REQUIRED_FIELDS + ("registry_identity", "secret_ref")


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [m.value for m in enum_cls]


@dataclass(frozen=True)
class DeploymentRequest:
    """一次部署的不可变输入

    secret_ref 只是凭据引用，原始密钥在使用时才由 CredentialProvider 解析。
    """

    provider: str
    action: str
    region: str
    app_name: str
    version: str
    registry: str
    registry_identity: str = ""
    secret_ref: str = ""
    confirm_destroy: bool = False

    def validate(self) -> list[str]:
        """返回全部校验问题，空列表表示合法

        仓库类型只校验格式；是否已注册以及仓库相关的字段要求由对应发布器检查
        （见 deployflow.services.registry.validate_request）。
        """
        problems: list[str] = []
        mistyped: set[str] = set()
        for name in _STR_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, str):
                mistyped.add(name)
                problems.append(f"{name} 必须是字符串: {value!r}")

        def given(name: str) -> bool:
            return name not in mistyped and bool(getattr(self, name))

        for name in _REQUIRED_FIELDS:
            if name not in mistyped and not getattr(self, name):
                problems.append(f"缺少必填字段: {name}")

        checks: list[tuple[str, type[Enum]]] = [
            ("provider", CloudProvider),
            ("action", Action),
        ]
        for name, enum_cls in checks:
            value = getattr(self, name)
            if given(name) and value not in _enum_values(enum_cls):
                problems.append(
                    f"{name} 取值非法: {value!r}，可选: {_enum_values(enum_cls)}"
                )

        if given("registry") and not _NAME_RE.match(self.registry):
            problems.append(f"registry 格式非法: {self.registry!r}")
        if given("region") and not _REGION_RE.match(self.region):
            problems.append(f"region 格式非法: {self.region!r}")
        if given("app_name") and not _NAME_RE.match(self.app_name):
            problems.append(f"app_name 不是合法的镜像仓库名: {self.app_name!r}")
        if given("version") and not _TAG_RE.match(self.version):
            problems.append(f"version 不是合法的镜像标签: {self.version!r}")
        if given("registry_identity") and not _NAME_RE.match(self.registry_identity):
            problems.append(f"registry_identity 格式非法: {self.registry_identity!r}")
        if (self.action == Action.APPLY.value and "secret_ref" not in mistyped
                and not self.secret_ref):
            problems.append("action=apply 时 secret_ref 为必填")

        # 字符串 "false" / 数字 1 之类一律拒绝，只接受真正的布尔值
        if not isinstance(self.confirm_destroy, bool):
            problems.append(
                f"confirm_destroy 必须是布尔值: {self.confirm_destroy!r}"
            )
        elif self.action == Action.DESTROY.value and self.confirm_destroy is not True:
            problems.append("action=destroy 需要显式确认 (confirm_destroy)")
        return problems

    def ensure_valid(self) -> None:
        problems = self.validate()
        if problems:
            raise ValidationError("部署请求校验失败", details=problems)

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> DeploymentRequest:
        """从参数字典构建请求并校验，非法则抛 ValidationError"""
        known = {f for f in cls.__dataclass_fields__}
        unknown = sorted(set(params) - known)
        if unknown:
            raise ValidationError("部署请求包含未知字段", details=unknown)
        values = {k: v for k, v in params.items() if v is not None}
        for key in ("provider", "action", "registry"):
            if isinstance(values.get(key), Enum):
                values[key] = values[key].value
        try:
            req = cls(**values)
        except TypeError as e:
            raise ValidationError("部署请求缺少必填字段", details=[str(e)]) from e
        req.ensure_valid()
        return req

    @property
    def action_enum(self) -> Action:
        return Action(self.action)


# =========================================================================
# 阶段产物
# =========================================================================


@dataclass
class CommandResult:
    """外部命令执行结果（非零退出码只是数据，不是异常）"""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """合并后的输出，用于错误诊断"""
        parts = [p for p in (self.stdout, self.stderr) if p]
        return "\n".join(parts)


@dataclass(frozen=True)
class BuildArtifact:
    """本地构建镜像（发布后即丢弃，只保留远端引用）"""

    local_ref: str
    image_id: str
    context_dir: str
    version: str


@dataclass(frozen=True)
class PublishedImage:
    """已推送到远端仓库的镜像，流水线的持久化输出"""

    uri: str
    registry: str
    account_id: str = ""
    tags: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    def to_record(self) -> dict[str, str]:
        record = {"IMAGE_URI": self.uri, "REGISTRY": self.registry}
        if self.account_id:
            record["ACCOUNT_ID"] = self.account_id
        return record


@dataclass(frozen=True)
class ProvisioningPlan:
    """plan 阶段产出，apply 阶段原样消费

    secret_vars 只保存 变量名 → 凭据引用；fingerprint 覆盖包含密钥在内的完整变量集，
    apply 时重新解析密钥并比对，不一致即失败。
    """

    plan_id: str
    workspace: str
    variables: tuple[tuple[str, str], ...]
    secret_vars: tuple[tuple[str, str], ...]
    fingerprint: str
    output: str = field(default="", compare=False, repr=False)

    @property
    def variable_dict(self) -> dict[str, str]:
        return dict(self.variables)

    @property
    def secret_var_dict(self) -> dict[str, str]:
        return dict(self.secret_vars)


@dataclass
class StageResult:
    """单个阶段的执行结果，既用于控制流也用于审计"""

    stage: str
    status: StageStatus
    output: str = ""
    duration: float = 0.0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class PipelineReport:
    """一次流水线运行的完整报告"""

    run_id: str
    request: DeploymentRequest
    state: PipelineState = PipelineState.START
    outcome: RunOutcome | None = None
    stages: list[StageResult] = field(default_factory=list)
    published: PublishedImage | None = None
    warnings: list[str] = field(default_factory=list)
    failed_stage: str = ""
    failure_reason: str = ""

    @property
    def success(self) -> bool:
        return self.outcome in (
            RunOutcome.SUCCEEDED, RunOutcome.SUCCEEDED_WITH_WARNINGS,
        )

    def stage(self, name: str) -> StageResult | None:
        for s in self.stages:
            if s.stage == name:
                return s
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "request": asdict(self.request),
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "stages": [s.to_dict() for s in self.stages],
            "published": asdict(self.published) if self.published else None,
            "warnings": list(self.warnings),
            "failed_stage": self.failed_stage,
            "failure_reason": self.failure_reason,
        }

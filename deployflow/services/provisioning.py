"""基础设施部署引擎（terraform）

状态机: uninitialized → initialized → planned → applied | destroyed

约束:
  - apply 只接受本引擎在本次运行中 plan 产出的 ProvisioningPlan，
    手工构造或已消费的计划一律拒绝（PlanRequired）
  - apply 时重新解析密钥并比对指纹，变量集与 plan 时不一致即失败（PlanDrift）
  - destroy 跳过 plan，但必须显式确认
  - 变量通过 TF_VAR_<name> 环境变量传递，密钥不出现在命令行
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from pathlib import Path
from typing import Mapping

from deployflow.core.exceptions import (
    ApplyFailed,
    DestroyFailed,
    InitFailed,
    PlanDrift,
    PlanFailed,
    PlanRequired,
    ValidationError,
)
from deployflow.core.models import (
    ProvisioningPlan,
    ProvisionState,
    StageResult,
    StageStatus,
)
from deployflow.services.credentials import CredentialProvider
from deployflow.utils.aws import aws_env
from deployflow.utils.shell import CommandRunner

logger = logging.getLogger(__name__)

_COMMON_FLAGS = ["-input=false", "-no-color"]


def fingerprint(variables: Mapping[str, str], secrets: Mapping[str, str]) -> str:
    """完整变量集指纹；密钥只以哈希参与"""
    material = {
        "vars": sorted(variables.items()),
        "secrets": sorted(
            (k, hashlib.sha256(v.encode("utf-8")).hexdigest())
            for k, v in secrets.items()
        ),
    }
    return hashlib.sha256(
        json.dumps(material, sort_keys=True).encode("utf-8")
    ).hexdigest()


class ProvisioningEngine:
    """一次运行对应一个引擎实例"""

    def __init__(
        self,
        runner: CommandRunner,
        credentials: CredentialProvider,
        *,
        region: str,
        cloud_credential_ref: str = "aws-creds",
        terraform_bin: str = "terraform",
    ) -> None:
        self.runner = runner
        self.credentials = credentials
        self.region = region
        self.cloud_credential_ref = cloud_credential_ref
        self.terraform_bin = terraform_bin
        self.state = ProvisionState.UNINITIALIZED
        self._initialized: set[str] = set()
        self._issued: dict[str, ProvisioningPlan] = {}

    # ---- 环境 ----

    def _resolve_secrets(self, secret_vars: Mapping[str, str]) -> dict[str, str]:
        return {
            name: self.credentials.resolve(ref).secret
            for name, ref in secret_vars.items()
        }

    def _tool_env(
        self, variables: Mapping[str, str], secrets: Mapping[str, str],
    ) -> tuple[dict[str, str], list[str]]:
        cloud = self.credentials.resolve(self.cloud_credential_ref)
        env = aws_env(cloud, self.region)
        for name, value in {**variables, **secrets}.items():
            env[f"TF_VAR_{name}"] = value
        return env, [cloud.secret, *secrets.values()]

    # ---- 操作 ----

    def init(self, workspace: str) -> StageResult:
        if not Path(workspace).is_dir():
            raise InitFailed(f"部署工作区不存在: {workspace}")
        env, masked = self._tool_env({}, {})
        result = self.runner.run(
            self.terraform_bin, ["init", "-upgrade", *_COMMON_FLAGS],
            env=env, workdir=workspace, secrets=masked,
        )
        if not result.success:
            raise InitFailed(
                f"terraform init 失败 (rc={result.exit_code})", output=result.output,
            )
        self._initialized.add(workspace)
        if self.state == ProvisionState.UNINITIALIZED:
            self.state = ProvisionState.INITIALIZED
        logger.info("部署工作区已初始化: %s", workspace)
        return StageResult(
            stage="init", status=StageStatus.SUCCESS,
            output=result.output, duration=result.duration,
        )

    def _ensure_init(self, workspace: str) -> None:
        if workspace not in self._initialized:
            self.init(workspace)

    def plan(
        self,
        workspace: str,
        variables: Mapping[str, str],
        secret_vars: Mapping[str, str] | None = None,
    ) -> ProvisioningPlan:
        """执行 plan，返回唯一可用于 apply 的计划对象"""
        secret_vars = dict(secret_vars or {})
        self._ensure_init(workspace)
        secrets = self._resolve_secrets(secret_vars)
        env, masked = self._tool_env(variables, secrets)
        logger.info("terraform plan: workspace=%s vars=%s secrets=%s",
                    workspace, dict(variables), sorted(secret_vars))
        result = self.runner.run(
            self.terraform_bin, ["plan", *_COMMON_FLAGS],
            env=env, workdir=workspace, secrets=masked,
        )
        if not result.success:
            raise PlanFailed(
                f"terraform plan 失败 (rc={result.exit_code})", output=result.output,
            )
        plan = ProvisioningPlan(
            plan_id=uuid.uuid4().hex[:12],
            workspace=workspace,
            variables=tuple(sorted(variables.items())),
            secret_vars=tuple(sorted(secret_vars.items())),
            fingerprint=fingerprint(variables, secrets),
            output=result.output,
        )
        self._issued[plan.plan_id] = plan
        self.state = ProvisionState.PLANNED
        logger.info("部署计划已生成: plan_id=%s", plan.plan_id)
        return plan

    def apply(self, plan: ProvisioningPlan) -> StageResult:
        if not isinstance(plan, ProvisioningPlan):
            raise PlanRequired(f"apply 需要 ProvisioningPlan，收到 {type(plan).__name__}")
        issued = self._issued.get(plan.plan_id)
        if issued is None or issued != plan:
            raise PlanRequired(f"计划未经本次运行 plan 产出或已被消费: {plan.plan_id}")
        if self.state != ProvisionState.PLANNED:
            raise PlanRequired(f"当前状态不允许 apply: {self.state.value}")

        secrets = self._resolve_secrets(plan.secret_var_dict)
        if fingerprint(plan.variable_dict, secrets) != plan.fingerprint:
            raise PlanDrift(f"apply 时变量集与 plan 时不一致: {plan.plan_id}")

        env, masked = self._tool_env(plan.variable_dict, secrets)
        result = self.runner.run(
            self.terraform_bin, ["apply", "-auto-approve", *_COMMON_FLAGS],
            env=env, workdir=plan.workspace, secrets=masked,
        )
        del self._issued[plan.plan_id]
        if not result.success:
            raise ApplyFailed(
                f"terraform apply 失败 (rc={result.exit_code})", output=result.output,
            )
        self.state = ProvisionState.APPLIED
        logger.info("部署已应用: plan_id=%s", plan.plan_id)
        return StageResult(
            stage="apply", status=StageStatus.SUCCESS,
            output=result.output, duration=result.duration,
        )

    def destroy(
        self,
        workspace: str,
        variables: Mapping[str, str],
        secret_vars: Mapping[str, str] | None = None,
        *,
        confirmed: bool = False,
    ) -> StageResult:
        if confirmed is not True:
            raise ValidationError("destroy 需要显式确认")
        self._ensure_init(workspace)
        secrets = self._resolve_secrets(dict(secret_vars or {}))
        env, masked = self._tool_env(variables, secrets)
        result = self.runner.run(
            self.terraform_bin, ["destroy", "-auto-approve", *_COMMON_FLAGS],
            env=env, workdir=workspace, secrets=masked,
        )
        if not result.success:
            raise DestroyFailed(
                f"terraform destroy 失败 (rc={result.exit_code})", output=result.output,
            )
        self.state = ProvisionState.DESTROYED
        logger.info("部署已销毁: %s", workspace)
        return StageResult(
            stage="destroy", status=StageStatus.SUCCESS,
            output=result.output, duration=result.duration,
        )

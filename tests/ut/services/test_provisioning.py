"""ProvisioningEngine 单元测试：状态机、计划校验、变量传递"""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import APP_SECRET, AWS_KEY_ID, AWS_SECRET
from deployflow.core.exceptions import (
    ApplyFailed,
    DestroyFailed,
    InitFailed,
    PlanDrift,
    PlanFailed,
    PlanRequired,
    ValidationError,
)
from deployflow.core.models import ProvisioningPlan, ProvisionState, StageStatus
from deployflow.services.provisioning import ProvisioningEngine, fingerprint
from deployflow.utils.shell import CommandRunner

VARIABLES = {
    "container_image": "123456789012.dkr.ecr.ap-south-1.amazonaws.com/demo:2.0.0",
    "app_name": "demo",
    "aws_region": "ap-south-1",
}
SECRET_VARS = {"secret_key": "app-secret-key"}


@pytest.fixture
def workspace(layout: Path) -> str:
    return str(layout / "infra" / "aws")


@pytest.fixture
def engine(fake_executor, credentials) -> ProvisioningEngine:
    return ProvisioningEngine(CommandRunner(fake_executor), credentials, region="ap-south-1")


class TestPlanApply:
    def test_plan_then_apply(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        assert engine.state == ProvisionState.UNINITIALIZED
        plan = engine.plan(workspace, VARIABLES, SECRET_VARS)
        assert engine.state == ProvisionState.PLANNED
        assert plan.workspace == workspace
        assert plan.secret_var_dict == SECRET_VARS
        assert plan.variable_dict == VARIABLES

        result = engine.apply(plan)
        assert result.status == StageStatus.SUCCESS
        assert engine.state == ProvisionState.APPLIED
        assert fake_executor.lines == [
            "terraform init -upgrade -input=false -no-color",
            "terraform plan -input=false -no-color",
            "terraform apply -auto-approve -input=false -no-color",
        ]

    def test_variables_travel_as_env(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        engine.apply(engine.plan(workspace, VARIABLES, SECRET_VARS))
        apply_call = fake_executor.find("terraform apply")[0]
        env = apply_call["env"]
        assert env["TF_VAR_container_image"] == VARIABLES["container_image"]
        assert env["TF_VAR_secret_key"] == APP_SECRET
        assert env["AWS_ACCESS_KEY_ID"] == AWS_KEY_ID
        assert env["AWS_SECRET_ACCESS_KEY"] == AWS_SECRET
        assert env["AWS_REGION"] == "ap-south-1"
        assert apply_call["cwd"] == workspace
        assert {APP_SECRET, AWS_SECRET} <= set(apply_call["secrets"])
        for call in fake_executor.calls:
            assert APP_SECRET not in call["line"]

    def test_plan_does_not_hold_secret(self, engine: ProvisioningEngine, workspace: str) -> None:
        plan = engine.plan(workspace, VARIABLES, SECRET_VARS)
        assert APP_SECRET not in repr(plan)
        assert APP_SECRET not in plan.fingerprint

    def test_synthesized_plan_rejected(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        forged = ProvisioningPlan(
            plan_id="forged", workspace=workspace,
            variables=tuple(sorted(VARIABLES.items())), secret_vars=(),
            fingerprint=fingerprint(VARIABLES, {}),
        )
        with pytest.raises(PlanRequired):
            engine.apply(forged)
        assert not fake_executor.find("terraform apply")

    def test_non_plan_rejected(self, engine: ProvisioningEngine) -> None:
        with pytest.raises(PlanRequired):
            engine.apply({"plan_id": "x"})  # type: ignore[arg-type]

    def test_plan_from_other_engine_rejected(
        self, engine: ProvisioningEngine, fake_executor, credentials, workspace: str,
    ) -> None:
        other = ProvisioningEngine(CommandRunner(fake_executor), credentials, region="ap-south-1")
        plan = other.plan(workspace, VARIABLES, SECRET_VARS)
        with pytest.raises(PlanRequired):
            engine.apply(plan)

    def test_plan_consumed_once(self, engine: ProvisioningEngine, workspace: str) -> None:
        plan = engine.plan(workspace, VARIABLES, SECRET_VARS)
        engine.apply(plan)
        with pytest.raises(PlanRequired):
            engine.apply(plan)

    def test_secret_drift(self, engine: ProvisioningEngine, fake_executor, credentials, workspace: str) -> None:
        plan = engine.plan(workspace, VARIABLES, SECRET_VARS)
        credentials.add("app-secret-key", "", "rotated-secret-value")
        with pytest.raises(PlanDrift):
            engine.apply(plan)
        assert not fake_executor.find("terraform apply")

    def test_plan_failure(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        fake_executor.when("terraform plan", exit_code=1, stderr="Error: invalid reference")
        with pytest.raises(PlanFailed) as exc:
            engine.plan(workspace, VARIABLES, SECRET_VARS)
        assert "invalid reference" in exc.value.output
        assert engine.state == ProvisionState.INITIALIZED

    def test_apply_failure(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        fake_executor.when("terraform apply", exit_code=1, stdout="Error: quota exceeded")
        plan = engine.plan(workspace, VARIABLES, SECRET_VARS)
        with pytest.raises(ApplyFailed) as exc:
            engine.apply(plan)
        assert exc.value.output == "Error: quota exceeded"


class TestInit:
    def test_missing_workspace(self, engine: ProvisioningEngine, fake_executor, tmp_path: Path) -> None:
        with pytest.raises(InitFailed):
            engine.init(str(tmp_path / "nope"))
        assert fake_executor.calls == []

    def test_init_failure(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        fake_executor.when("terraform init", exit_code=1, stderr="provider download failed")
        with pytest.raises(InitFailed) as exc:
            engine.plan(workspace, VARIABLES, SECRET_VARS)
        assert "provider download failed" in exc.value.output

    def test_init_once_per_workspace(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        engine.plan(workspace, VARIABLES, SECRET_VARS)
        engine.plan(workspace, VARIABLES, SECRET_VARS)
        assert len(fake_executor.find("terraform init")) == 1


class TestDestroy:
    def test_requires_confirmation(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        with pytest.raises(ValidationError):
            engine.destroy(workspace, VARIABLES, SECRET_VARS)
        assert fake_executor.calls == []

    @pytest.mark.parametrize("confirmed", ["false", "yes", 1])
    def test_truthy_non_bool_not_a_confirmation(
        self, engine: ProvisioningEngine, fake_executor, workspace: str, confirmed,
    ) -> None:
        with pytest.raises(ValidationError):
            engine.destroy(workspace, VARIABLES, SECRET_VARS, confirmed=confirmed)
        assert fake_executor.calls == []

    def test_destroy(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        result = engine.destroy(workspace, VARIABLES, {}, confirmed=True)
        assert result.stage == "destroy"
        assert engine.state == ProvisionState.DESTROYED
        assert fake_executor.lines[-1] == "terraform destroy -auto-approve -input=false -no-color"

    def test_destroy_failure(self, engine: ProvisioningEngine, fake_executor, workspace: str) -> None:
        fake_executor.when("terraform destroy", exit_code=1, stderr="resource in use")
        with pytest.raises(DestroyFailed):
            engine.destroy(workspace, VARIABLES, confirmed=True)


class TestFingerprint:
    def test_stable_and_sensitive(self) -> None:
        a = fingerprint(VARIABLES, {"secret_key": "one"})
        assert a == fingerprint(dict(reversed(list(VARIABLES.items()))), {"secret_key": "one"})
        assert a != fingerprint(VARIABLES, {"secret_key": "two"})
        assert a != fingerprint({**VARIABLES, "app_name": "other"}, {"secret_key": "one"})

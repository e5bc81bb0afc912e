"""流水线运行上下文与状态迁移表

- RunContext: 单次运行内阶段之间传递的显式产物（取代共享可变变量）
- TRANSITIONS: 合法状态迁移，非法迁移直接报错
"""

from __future__ import annotations

from dataclasses import dataclass, field

from deployflow.core.cancellation import CancelToken
from deployflow.core.models import (
    BuildArtifact,
    DeploymentRequest,
    PipelineState,
    ProvisioningPlan,
    PublishedImage,
)
from deployflow.services.provisioning import ProvisioningEngine
from deployflow.utils.shell import CommandRunner

S = PipelineState

TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    S.START: frozenset({S.VERIFY_LAYOUT, S.FAILED}),
    S.VERIFY_LAYOUT: frozenset({S.BUILD, S.FAILED}),
    S.BUILD: frozenset({S.PUBLISH, S.FAILED}),
    S.PUBLISH: frozenset({S.PLAN, S.FAILED}),
    S.PLAN: frozenset({S.APPLY, S.DESTROY, S.FAILED}),
    S.APPLY: frozenset({S.FINALIZE, S.FAILED}),
    S.DESTROY: frozenset({S.FINALIZE, S.FAILED}),
    S.FAILED: frozenset({S.FINALIZE}),
    S.FINALIZE: frozenset({S.SUCCEEDED, S.FAILED}),
    S.SUCCEEDED: frozenset(),
}


class IllegalTransition(RuntimeError):
    """流水线实现错误：出现了迁移表之外的状态迁移"""


def check_transition(current: PipelineState, target: PipelineState) -> None:
    if target not in TRANSITIONS.get(current, frozenset()):
        raise IllegalTransition(f"非法状态迁移: {current.value} -> {target.value}")


@dataclass
class RunContext:
    """单次运行的阶段产物"""

    run_id: str
    request: DeploymentRequest
    cancel: CancelToken
    runner: CommandRunner
    cleanup_runner: CommandRunner
    context_dir: str
    workspace: str
    engine: ProvisioningEngine | None = None
    artifact: BuildArtifact | None = None
    published: PublishedImage | None = None
    plan: ProvisioningPlan | None = None
    variables: dict[str, str] = field(default_factory=dict)
    secret_vars: dict[str, str] = field(default_factory=dict)

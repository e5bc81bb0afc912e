"""部署流水线模块

拆分说明：
- models.py: 运行上下文与状态迁移表
- stages.py: 各阶段实现
- pipeline.py: 状态机协调器（finalize 必定执行）
"""

from deployflow.services.pipeline.models import TRANSITIONS, IllegalTransition, RunContext
from deployflow.services.pipeline.pipeline import DeploymentPipeline
from deployflow.services.pipeline.stages import PipelineStages

__all__ = [
    "TRANSITIONS",
    "IllegalTransition",
    "RunContext",
    "DeploymentPipeline",
    "PipelineStages",
]

"""deployflow 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
"""

import os
from typing import Any

import click

from deployflow import __version__
from deployflow.services.container import get_container, reset_container
from deployflow.utils.logger import setup_logging


def _svc() -> Any:
    """获取全局服务容器的快捷方式"""
    return get_container()


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default="", help="配置文件路径（YAML）")
def main(config_path: str) -> None:
    """deployflow - 容器镜像构建、发布与基础设施部署流水线"""
    setup_logging(
        level=os.getenv("DEPLOYFLOW_LOG_LEVEL", "INFO"),
        json_output=os.getenv("DEPLOYFLOW_LOG_JSON", "") == "1",
    )
    if config_path:
        from deployflow.core.config import init_config
        init_config(config_path)
        reset_container()


# 注册各领域子命令
from deployflow.cli.cmd_deploy import register as _reg_deploy  # noqa: E402
from deployflow.cli.cmd_record import register as _reg_record  # noqa: E402

_reg_deploy(main)
_reg_record(main)

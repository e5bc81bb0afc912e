"""CLI — 部署与预检命令

退出码: 0 成功（有告警时 stderr 输出 WARNING 行）/ 1 运行失败 / 2 请求校验失败
"""

from __future__ import annotations

import signal
from typing import Any, Callable

import click

from deployflow.cli import _svc

EXIT_FAILED = 1
EXIT_INVALID = 2


def register(group: click.Group) -> None:
    group.add_command(deploy)
    group.add_command(verify)


def _request_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """deploy / verify 共享的请求参数，未指定时取配置默认值"""
    options = [
        click.option("--provider", default=None, help="云厂商（目前仅 aws）"),
        click.option("--action", "-a", default="apply",
                     type=click.Choice(["apply", "destroy"]), help="部署动作"),
        click.option("--region", default=None, help="云区域，如 ap-south-1"),
        click.option("--app-name", default=None, help="应用名（镜像仓库名）"),
        click.option("--version", "-v", "version", default=None, help="镜像版本标签"),
        click.option("--registry", "-r", default="ecr",
                     help="镜像仓库类型（ecr / dockerhub / 已注册的其他发布器）"),
        click.option("--registry-identity", default=None, help="Docker Hub 命名空间"),
        click.option("--secret-ref", default=None, help="应用密钥的凭据引用（不是密钥本身）"),
        click.option("--confirm-destroy", is_flag=True, default=False,
                     help="action=destroy 时必须显式确认"),
    ]
    for opt in reversed(options):
        func = opt(func)
    return func


def _build_request(params: dict[str, Any]) -> Any:
    from deployflow.core.exceptions import ValidationError

    try:
        return _svc().deploy.build_request(**params)
    except ValidationError as e:
        _echo_validation(e)
        raise SystemExit(EXIT_INVALID) from e


def _echo_validation(err: Any) -> None:
    click.echo(f"请求无效: {err}", err=True)
    for d in err.details:
        click.echo(f"  - {d}", err=True)


@click.command()
@_request_options
@click.option("--run-id", default="", help="自定义运行 ID")
def deploy(run_id: str, **params: Any) -> None:
    """构建镜像 → 推送仓库 → terraform 部署"""
    from deployflow.core.exceptions import DeployFlowError, DeploymentFailed, ValidationError
    from deployflow.core.models import RunOutcome

    request = _build_request(params)
    service = _svc().deploy

    def _on_term(signum: int, frame: Any) -> None:
        service.cancel_all(f"收到信号 {signum}")

    previous = signal.signal(signal.SIGTERM, _on_term)
    try:
        report = service.run(request, run_id=run_id)
    except ValidationError as e:
        _echo_validation(e)
        raise SystemExit(EXIT_INVALID) from e
    except DeploymentFailed as e:
        click.echo(f"部署失败: {e}", err=True)
        if e.report is not None:
            click.echo(f"  run_id={e.report.run_id} reason={e.report.failure_reason}", err=True)
        raise SystemExit(EXIT_FAILED) from e
    except DeployFlowError as e:
        click.echo(f"部署失败: [{e.code}] {e}", err=True)
        raise SystemExit(EXIT_FAILED) from e
    finally:
        signal.signal(signal.SIGTERM, previous)

    if report.published is not None:
        click.echo(f"IMAGE_URI={report.published.uri}")
    click.echo(f"run_id={report.run_id} outcome={report.outcome.value if report.outcome else '-'}")
    if report.outcome == RunOutcome.SUCCEEDED_WITH_WARNINGS:
        for w in report.warnings:
            click.echo(f"WARNING: {w}", err=True)


@click.command()
@_request_options
def verify(**params: Any) -> None:
    """预检：请求参数、目录布局、凭据引用（不执行任何外部命令）"""
    request = _build_request(params)
    checks = _svc().deploy.verify(request)
    failed = 0
    for name, ok, detail in checks:
        click.echo(f"  [{'OK' if ok else 'FAIL':4s}] {name:8s} {detail}")
        failed += 0 if ok else 1
    if failed:
        click.echo(f"预检未通过: {failed} 项", err=True)
        raise SystemExit(EXIT_INVALID)
    click.echo("预检通过")

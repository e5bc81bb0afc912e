"""CLI — 部署记录与执行历史查询"""

from __future__ import annotations

import click

from deployflow.cli import _svc


def register(group: click.Group) -> None:
    group.add_command(record_group)
    group.add_command(history)


@click.group(name="record")
def record_group() -> None:
    """部署记录（IMAGE_URI.env）"""


@record_group.command(name="show")
@click.argument("app_name", required=False)
def record_show(app_name: str | None) -> None:
    """显示应用最近一次发布的镜像记录"""
    svc = _svc()
    app = app_name or svc.config.default_app_name
    values = svc.records.read_record(app)
    if not values:
        click.echo(f"没有部署记录: {svc.records.record_path(app)}", err=True)
        raise SystemExit(1)
    for k, v in values.items():
        click.echo(f"{k}={v}")


@click.command()
@click.option("--app", "app_name", default=None, help="按应用名过滤")
@click.option("--outcome", default=None,
              type=click.Choice(["succeeded", "succeeded_with_warnings", "failed"]),
              help="按结论过滤")
@click.option("--limit", default=20, help="最大记录数")
def history(app_name: str | None, outcome: str | None, limit: int) -> None:
    """列出执行历史"""
    records = _svc().records.query(app_name=app_name, outcome=outcome, limit=limit)
    if not records:
        click.echo("没有执行历史。")
        return
    for r in records:
        req = r.get("request", {})
        failed = f"  失败阶段={r['failed_stage']}" if r.get("failed_stage") else ""
        click.echo(
            f"  {r['run_id']}  {r.get('timestamp', '')[:19]}  "
            f"app={req.get('app_name', '-'):14s} {req.get('action', '-'):8s} "
            f"{r.get('outcome') or '-'}{failed}"
        )

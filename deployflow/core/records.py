"""部署记录与审计历史

两类持久化输出:
  - 部署记录: <records_dir>/<app>/IMAGE_URI.env，KEY=VALUE 格式，
    至少包含 IMAGE_URI，ECR 另含 ACCOUNT_ID；每次成功发布写一次，供外部运维工具读取
  - 审计历史: history.json，追加每次运行的阶段结果与最终结论

两者都不包含任何密钥（阶段输出在执行器中已遮蔽）。
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from deployflow.core.models import PipelineReport, PublishedImage
from deployflow.utils.yaml_io import atomic_write, read_env_file, write_env_file

logger = logging.getLogger(__name__)

RECORD_FILE = "IMAGE_URI.env"
# 审计记录中单个阶段输出的最大字符数
MAX_STAGE_OUTPUT = 20_000


class RecordStore:
    """部署记录 + 执行历史（多运行并发写入时串行化）"""

    def __init__(self, records_dir: str | Path, history_file: str | Path = "") -> None:
        self.records_dir = Path(records_dir)
        self.history_file = Path(history_file) if history_file else self.records_dir / "history.json"
        self._lock = threading.Lock()

    # ---- 部署记录 ----

    def record_path(self, app_name: str) -> Path:
        return self.records_dir / app_name / RECORD_FILE

    def write_record(
        self, app_name: str, image: PublishedImage, *, run_id: str, version: str,
    ) -> Path:
        values = {
            **image.to_record(),
            "VERSION": version,
            "RUN_ID": run_id,
            "RECORDED_AT": datetime.now(tz=timezone.utc).isoformat(),
        }
        path = self.record_path(app_name)
        with self._lock:
            write_env_file(path, values)
        logger.info("部署记录已写入: %s (IMAGE_URI=%s)", path, image.uri)
        return path

    def read_record(self, app_name: str) -> dict[str, str]:
        return read_env_file(self.record_path(app_name))

    # ---- 审计历史 ----

    def _load(self) -> list[dict[str, Any]]:
        if not self.history_file.exists():
            return []
        with open(self.history_file, encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, list) else []

    def append_history(self, report: PipelineReport) -> dict[str, Any]:
        entry = report.to_dict()
        entry["timestamp"] = datetime.now(tz=timezone.utc).isoformat()
        for stage in entry["stages"]:
            output = stage.get("output", "")
            if len(output) > MAX_STAGE_OUTPUT:
                stage["output"] = "[... 已截断 ...]\n" + output[-MAX_STAGE_OUTPUT:]
        with self._lock:
            records = self._load()
            records.append(entry)
            atomic_write(
                self.history_file,
                json.dumps(records, indent=2, ensure_ascii=False),
            )
        logger.info("执行历史已记录: run_id=%s, outcome=%s",
                    report.run_id, entry["outcome"])
        return entry

    def query(
        self, *, app_name: str | None = None, outcome: str | None = None,
        limit: int = 20,
    ) -> list[dict[str, Any]]:
        """按应用名 / 结论过滤，按时间倒序返回"""
        records = self._load()
        if app_name:
            records = [r for r in records if r.get("request", {}).get("app_name") == app_name]
        if outcome:
            records = [r for r in records if r.get("outcome") == outcome]
        records.sort(key=lambda x: x.get("timestamp", ""), reverse=True)
        return records[:limit]

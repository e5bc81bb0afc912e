"""集中配置管理

固定目录布局、外部工具路径、超时和凭据引用统一由 Config 提供。
支持从 YAML 文件加载 + 编程式覆盖。

配置里只允许出现凭据「引用」，不允许出现明文密钥：
形如 secret_key / password / token 的键会被拒绝。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

from deployflow.core.exceptions import ConfigError
from deployflow.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

_FORBIDDEN_KEY_MARKERS = ("secret_key", "password", "token", "secret_value")


@dataclass
class Config:
    """引擎全局配置"""

    # 目录
    base_dir: str = "/var/lib/jenkins/secure-store"
    docker_context: str = "app"
    infra_dir: str = "infra/aws"
    records_dir: str = ""
    history_file: str = ""

    # 外部工具
    docker_bin: str = "docker"
    terraform_bin: str = "terraform"

    # 执行
    command_timeout: int = 1800
    run_timeout: int = 3600
    output_max_lines: int = 2000
    max_parallel_runs: int = 4
    prune_images: bool = True

    # 凭据引用（由宿主 CI 的凭据存储解析）
    aws_credential_ref: str = "aws-creds"
    dockerhub_credential_ref: str = "docker-hub"

    # 请求默认值
    default_provider: str = "aws"
    default_region: str = "ap-south-1"
    default_app_name: str = "secure-store"
    default_version: str = "1.0.0"
    default_dockerhub_user: str = ""
    default_secret_ref: str = "app-secret-key"

    # 自定义扩展
    extra: dict = field(default_factory=dict)

    @property
    def context_path(self) -> Path:
        return Path(self.base_dir) / self.docker_context

    @property
    def infra_path(self) -> Path:
        return Path(self.base_dir) / self.infra_dir

    @property
    def records_path(self) -> Path:
        return Path(self.records_dir) if self.records_dir else Path(self.base_dir)

    @property
    def history_path(self) -> Path:
        if self.history_file:
            return Path(self.history_file)
        return self.records_path / "history.json"

    @classmethod
    def from_dict(cls, data: dict) -> Config:
        inline = sorted(
            k for k in data
            if any(marker in k.lower() for marker in _FORBIDDEN_KEY_MARKERS)
        )
        if inline:
            raise ConfigError(
                f"配置中不允许出现明文密钥字段，请改用凭据引用: {inline}"
            )
        known = {f for f in cls.__dataclass_fields__}
        matched = {k: v for k, v in data.items() if k in known and k != "extra"}
        extra = {k: v for k, v in data.items() if k not in known}
        cfg = cls(**matched)
        cfg.extra = extra
        return cfg

    @classmethod
    def from_file(cls, path: str = "configs/deployflow.yml") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        data = load_yaml(path)
        if not data:
            return cls()
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，首次 import 时不加载文件；由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = "configs/deployflow.yml") -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path)
    logger.info("配置已加载: %s", path)
    return _current


def set_config(cfg: Config | None) -> None:
    """替换全局配置（None 表示恢复默认，用于测试）"""
    global _current  # noqa: PLW0603
    _current = cfg

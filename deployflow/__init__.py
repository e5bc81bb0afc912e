"""deployflow — 构建 → 发布 → 部署 编排引擎"""

__version__ = "0.3.0"

"""部署工作区互斥

terraform 工作区状态不支持并发修改：同一 (app_name, workspace) 的两次运行
必须串行执行部署阶段，不同键之间互不影响。

用法:
    locks = WorkspaceLocks()
    with locks.hold("demo", "/srv/infra/aws", owner=run_id):
        engine.plan(...)
        engine.apply(...)
"""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from deployflow.core.cancellation import CancelToken

logger = logging.getLogger(__name__)

LockKey = tuple[str, str]


@dataclass
class LockStatus:
    """锁占用快照"""

    held: dict[LockKey, str] = field(default_factory=dict)  # key -> owner
    waiting: dict[LockKey, int] = field(default_factory=dict)
    timestamp: float = 0.0


class WorkspaceLocks:
    """按 (app_name, workspace) 分配的互斥锁集合"""

    def __init__(self, poll_interval: float = 0.2) -> None:
        self._guard = threading.Lock()
        self._locks: dict[LockKey, threading.Lock] = {}
        self._owners: dict[LockKey, str] = {}
        self._waiting: dict[LockKey, int] = {}
        self._poll_interval = poll_interval

    @staticmethod
    def key(app_name: str, workspace: str) -> LockKey:
        return (app_name, os.path.normpath(os.path.abspath(workspace)))

    def _lock_for(self, key: LockKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def acquire(
        self, app_name: str, workspace: str, *,
        owner: str = "", cancel: CancelToken | None = None,
    ) -> LockKey:
        """阻塞获取锁；等待期间令牌被取消则抛 Cancelled"""
        key = self.key(app_name, workspace)
        lock = self._lock_for(key)
        with self._guard:
            self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            if not lock.acquire(blocking=False):
                logger.info(
                    "工作区被占用，等待: %s (持有者=%s)",
                    key, self._owners.get(key, "?"),
                )
                while not lock.acquire(timeout=self._poll_interval):
                    if cancel is not None:
                        cancel.check()
        finally:
            with self._guard:
                self._waiting[key] -= 1
                if not self._waiting[key]:
                    del self._waiting[key]
        with self._guard:
            self._owners[key] = owner
        logger.info("工作区锁已获取: %s (owner=%s)", key, owner)
        return key

    def release(self, key: LockKey) -> None:
        with self._guard:
            lock = self._locks.get(key)
            owner = self._owners.pop(key, "")
        if lock is None:
            return
        lock.release()
        logger.info("工作区锁已释放: %s (owner=%s)", key, owner)

    @contextmanager
    def hold(
        self, app_name: str, workspace: str, *,
        owner: str = "", cancel: CancelToken | None = None,
    ) -> Iterator[LockKey]:
        key = self.acquire(app_name, workspace, owner=owner, cancel=cancel)
        try:
            yield key
        finally:
            self.release(key)

    def status(self) -> LockStatus:
        with self._guard:
            return LockStatus(
                held=dict(self._owners),
                waiting=dict(self._waiting),
                timestamp=time.time(),
            )

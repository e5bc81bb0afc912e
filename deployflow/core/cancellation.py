"""运行级取消令牌

一个 CancelToken 对应一次流水线运行：外部中止调用 cancel()，
或到达 deadline（运行超时）后自动视为已取消。
命令执行器轮询令牌，触发后终止正在运行的外部进程。
"""

from __future__ import annotations

import threading
import time

from deployflow.core.exceptions import Cancelled


class CancelToken:
    """线程安全的取消令牌"""

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._reason = ""
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self, reason: str = "外部中止") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("运行超时")
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def remaining(self) -> float | None:
        """距离 deadline 的剩余秒数，无 deadline 返回 None"""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        """已取消则抛 Cancelled"""
        if self.cancelled:
            raise Cancelled(f"运行已取消: {self._reason}")

    def wait(self, seconds: float) -> bool:
        """最多等待 seconds 秒，期间被取消则提前返回 True"""
        return self._event.wait(seconds) or self.cancelled

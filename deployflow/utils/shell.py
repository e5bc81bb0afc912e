"""外部命令执行 — 统一子进程调用

通过 CommandExecutor 协议抽象子进程执行，流水线各阶段只依赖协议，
测试时注入假实现即可，无需 patch subprocess。

LocalExecutor 的行为:
  - 非零退出码作为数据返回，由调用方决定是否致命
  - stdout/stderr 逐行写日志，同时写入有界环形缓冲区（超出时保留尾部并标记截断）
  - 超时抛 ProcessTimeout，无法启动抛 ProcessLaunchError
  - 取消令牌触发时终止进程并抛 Cancelled
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections import deque
from typing import IO, Iterable, Protocol, Sequence

from deployflow.core.cancellation import CancelToken
from deployflow.core.exceptions import Cancelled, ProcessLaunchError, ProcessTimeout
from deployflow.core.models import CommandResult
from deployflow.utils.masking import mask_secrets

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 2000
_POLL_INTERVAL = 0.2
_KILL_GRACE = 5.0


# =========================================================================
# 有界输出缓冲
# =========================================================================

class OutputBuffer:
    """环形行缓冲：只保留最近 max_lines 行"""

    def __init__(self, max_lines: int = DEFAULT_MAX_LINES) -> None:
        self._lines: deque[str] = deque(maxlen=max(1, max_lines))
        self._total = 0
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)
            self._total += 1

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._total - len(self._lines)

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def text(self) -> str:
        with self._lock:
            body = "\n".join(self._lines)
            dropped = self._total - len(self._lines)
        if dropped:
            return f"[... 输出已截断，省略前 {dropped} 行 ...]\n{body}"
        return body


# =========================================================================
# 命令执行器协议
# =========================================================================

class CommandExecutor(Protocol):
    """命令执行器协议

    实现此协议即可替换底层执行方式（本地进程、远程代理、测试替身等）。
    """

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: dict[str, str] | None = None,
        cwd: str = ".",
        timeout: float | None = None,
        input_text: str | None = None,
        cancel: CancelToken | None = None,
        secrets: Iterable[str] = (),
    ) -> CommandResult:
        """执行命令并返回结果"""
        ...


# =========================================================================
# 默认实现: 本地进程执行器
# =========================================================================

class LocalExecutor:
    """本地子进程执行器（默认实现）"""

    def __init__(self, max_lines: int = DEFAULT_MAX_LINES) -> None:
        self.max_lines = max_lines

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: dict[str, str] | None = None,
        cwd: str = ".",
        timeout: float | None = None,
        input_text: str | None = None,
        cancel: CancelToken | None = None,
        secrets: Iterable[str] = (),
    ) -> CommandResult:
        secrets = tuple(secrets)
        argv = [command, *args]
        display = mask_secrets(" ".join(shlex.quote(a) for a in argv), secrets)
        logger.info("  执行: %s (cwd=%s)", display, cwd)
        if cancel is not None:
            cancel.check()

        start = time.monotonic()
        try:
            proc = subprocess.Popen(  # noqa: S603
                argv, cwd=cwd, env={**os.environ, **(env or {})},
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                text=True, bufsize=1,
            )
        except OSError as e:
            raise ProcessLaunchError(f"无法启动 {command}: {e}") from e

        out_buf = OutputBuffer(self.max_lines)
        err_buf = OutputBuffer(self.max_lines)
        readers = [
            threading.Thread(
                target=_pump, args=(proc.stdout, out_buf, secrets, command), daemon=True,
            ),
            threading.Thread(
                target=_pump, args=(proc.stderr, err_buf, secrets, command), daemon=True,
            ),
        ]
        for t in readers:
            t.start()

        if input_text is not None and proc.stdin is not None:
            try:
                proc.stdin.write(input_text)
                proc.stdin.close()
            except BrokenPipeError:
                logger.debug("%s 提前关闭了 stdin", command)

        try:
            self._wait(proc, start, timeout, cancel, command)
        except (ProcessTimeout, Cancelled) as e:
            _join(readers)
            e.output = _combine(out_buf, err_buf)
            raise

        _join(readers)
        duration = time.monotonic() - start
        result = CommandResult(
            exit_code=proc.returncode,
            stdout=out_buf.text(), stderr=err_buf.text(),
            duration=duration,
            truncated=out_buf.truncated or err_buf.truncated,
        )
        logger.info("  %s 结束: rc=%d (%.1fs)", command, result.exit_code, duration)
        return result

    @staticmethod
    def _wait(
        proc: subprocess.Popen[str], start: float, timeout: float | None,
        cancel: CancelToken | None, command: str,
    ) -> None:
        while True:
            try:
                proc.wait(timeout=_POLL_INTERVAL)
                return
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.cancelled:
                _terminate(proc)
                raise Cancelled(f"{command} 已终止: {cancel.reason}")
            if timeout is not None and time.monotonic() - start > timeout:
                _terminate(proc)
                raise ProcessTimeout(f"{command} 执行超时 ({timeout}s)")


def _pump(
    stream: IO[str] | None, buf: OutputBuffer,
    secrets: tuple[str, ...], label: str,
) -> None:
    if stream is None:
        return
    with stream:
        for raw in stream:
            line = mask_secrets(raw.rstrip("\n"), secrets)
            buf.append(line)
            logger.info("  [%s] %s", label, line)


def _terminate(proc: subprocess.Popen[str]) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=_KILL_GRACE)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def _join(threads: list[threading.Thread]) -> None:
    for t in threads:
        t.join(timeout=_KILL_GRACE)


def _combine(out_buf: OutputBuffer, err_buf: OutputBuffer) -> str:
    return "\n".join(p for p in (out_buf.text(), err_buf.text()) if p)


# =========================================================================
# 运行级命令入口
# =========================================================================

class CommandRunner:
    """绑定执行器、默认超时和本次运行的取消令牌，各阶段组件共用"""

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.executor = executor or get_executor()
        self.timeout = timeout
        self.cancel = cancel

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        env: dict[str, str] | None = None,
        workdir: str = ".",
        timeout: float | None = None,
        input_text: str | None = None,
        secrets: Iterable[str] = (),
    ) -> CommandResult:
        return self.executor.execute(
            command, args,
            env=env, cwd=workdir,
            timeout=timeout or self.timeout,
            input_text=input_text,
            cancel=self.cancel,
            secrets=secrets,
        )


# =========================================================================
# 全局默认执行器（可替换）
# =========================================================================

_default_executor: CommandExecutor = LocalExecutor()


def get_executor() -> CommandExecutor:
    """获取全局默认命令执行器"""
    return _default_executor


def set_executor(executor: CommandExecutor) -> None:
    """替换全局默认命令执行器（用于测试或远程执行场景）"""
    global _default_executor  # noqa: PLW0603
    _default_executor = executor

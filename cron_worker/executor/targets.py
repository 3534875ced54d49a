"""
Executors for the three job target types.

Each executor runs one attempt of a job and either returns the job's
output or raises. Failures that carry a retry verdict raise
``JobExecutionError`` so the runner does not have to guess.
"""

import asyncio
import importlib
import inspect
import os
import shlex
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import aiohttp
import structlog

from cron_worker.locking.leases import Lease
from cron_worker.scheduler.jobs import CallableTarget, HttpTarget, JobTarget, ShellTarget
from cron_worker.utils.error_handler import CircuitBreaker, CircuitOpenError
from shared.tracing import trace_attempt

logger = structlog.get_logger(__name__)

STDERR_TAIL_CHARS = 2000


@dataclass
class JobContext:
    """What a job attempt knows about itself."""

    job_name: str
    run_key: str
    attempt: int
    scheduled_at: Optional[datetime] = None
    lease: Optional[Lease] = None


class JobExecutionError(Exception):
    """A job attempt failed with a known retry verdict."""

    def __init__(
        self,
        message: str,
        retryable: bool,
        exit_code: Optional[int] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.exit_code = exit_code
        self.status = status


class TargetExecutor:
    """Runs one attempt of a job target."""

    async def execute(self, context: JobContext) -> Any:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class CallableExecutor(TargetExecutor):
    """Calls ``package.module:function`` with the job context."""

    def __init__(self, target: CallableTarget):
        self.target = target
        self._func: Optional[Callable[..., Any]] = None

    def resolve(self) -> Callable[..., Any]:
        if self._func is None:
            module_name, _, attr = self.target.ref.partition(":")
            try:
                module = importlib.import_module(module_name)
                func = getattr(module, attr)
            except (ImportError, AttributeError) as exc:
                raise JobExecutionError(
                    f"Cannot resolve job callable {self.target.ref!r}: {exc}", retryable=False
                ) from exc
            if not callable(func):
                raise JobExecutionError(f"{self.target.ref!r} is not callable", retryable=False)
            self._func = func
        return self._func

    @trace_attempt("cron.attempt.callable")
    async def execute(self, context: JobContext) -> Any:
        func = self.resolve()
        if inspect.iscoroutinefunction(func):
            return await func(context, **self.target.kwargs)
        # Sync jobs run in a worker thread; a timeout abandons the thread
        return await asyncio.to_thread(func, context, **self.target.kwargs)


class ShellExecutor(TargetExecutor):
    """Runs an external command without a shell."""

    def __init__(self, target: ShellTarget):
        self.target = target

    @property
    def argv(self) -> list:
        if isinstance(self.target.command, str):
            return shlex.split(self.target.command)
        return list(self.target.command)

    def _environment(self, context: JobContext) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.target.env)
        env["CRON_JOB_NAME"] = context.job_name
        env["CRON_RUN_KEY"] = context.run_key
        env["CRON_ATTEMPT"] = str(context.attempt)
        if context.scheduled_at is not None:
            env["CRON_SCHEDULED_AT"] = context.scheduled_at.isoformat()
        return env

    @trace_attempt("cron.attempt.shell")
    async def execute(self, context: JobContext) -> str:
        argv = self.argv
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(context),
                cwd=self.target.cwd,
            )
        except FileNotFoundError as exc:
            raise JobExecutionError(f"Command not found: {argv[0]}", retryable=False) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # Timeout or shutdown: never leave the child running
            if process.returncode is None:
                process.kill()
                await process.wait()
            logger.warning("shell_job_killed", job=context.job_name, pid=process.pid)
            raise

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-STDERR_TAIL_CHARS:].strip()
            raise JobExecutionError(
                f"Command exited with status {process.returncode}: {tail}",
                retryable=True,
                exit_code=process.returncode,
            )

        return stdout.decode("utf-8", errors="replace")


class HttpExecutor(TargetExecutor):
    """Calls an HTTP endpoint with the run key as ``Idempotency-Key``.

    Circuit breakers are shared per host across all HTTP jobs of a worker.
    """

    _breakers: Dict[str, CircuitBreaker] = {}

    def __init__(self, target: HttpTarget, session: Optional[aiohttp.ClientSession] = None):
        self.target = target
        self._session = session
        self._owns_session = session is None

    @classmethod
    def breaker_for(cls, url: str) -> CircuitBreaker:
        host = urlsplit(url).netloc
        if host not in cls._breakers:
            cls._breakers[host] = CircuitBreaker(failure_threshold=5, timeout_seconds=60)
        return cls._breakers[host]

    def _status_ok(self, status: int) -> bool:
        if self.target.expected_status:
            return status in self.target.expected_status
        return 200 <= status < 300

    @trace_attempt("cron.attempt.http")
    async def execute(self, context: JobContext) -> Any:
        breaker = self.breaker_for(self.target.url)
        if not breaker.is_call_permitted():
            raise CircuitOpenError(f"Circuit open for {urlsplit(self.target.url).netloc}")

        if self._session is None:
            self._session = aiohttp.ClientSession()

        headers = {
            "Idempotency-Key": context.run_key,
            "X-Cron-Job": context.job_name,
            "X-Cron-Attempt": str(context.attempt),
            **self.target.headers,
        }

        try:
            async with self._session.request(
                self.target.method,
                self.target.url,
                json=self.target.payload,
                headers=headers,
            ) as response:
                body = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError):
            breaker.record_failure()
            raise

        if not self._status_ok(status):
            retryable = status in (408, 429) or status >= 500
            if retryable:
                breaker.record_failure()
            raise JobExecutionError(
                f"{self.target.method} {self.target.url} returned {status}",
                retryable=retryable,
                status=status,
            )

        breaker.record_success()
        return body

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


def build_executor(target: JobTarget) -> TargetExecutor:
    """Create the executor for a target definition."""
    if isinstance(target, CallableTarget):
        return CallableExecutor(target)
    if isinstance(target, ShellTarget):
        return ShellExecutor(target)
    if isinstance(target, HttpTarget):
        return HttpExecutor(target)
    raise TypeError(f"Unsupported job target: {type(target).__name__}")

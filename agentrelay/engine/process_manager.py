"""Provider process lifecycle.

One child process per channel. For every run the manager starts:

- a supervisor task that reads stdout chunks through the line framer and
  the provider parser into the run's event queue, drains stderr, waits
  for exit and appends the final ``RunEnded``;
- a consumer task that hands queued events, strictly in order, to the
  event handler (rendering, registry updates, approvals).

The stdout reader never awaits chat I/O: the queue is unbounded, so a
slow chat surface cannot back-pressure the pipe.

Killing is signal-based (SIGTERM) and happens for exactly three reasons:
a newer prompt superseding the run, an explicit stop, or the overall
timeout. A turn that reports completion but leaves the CLI running is
also terminated after a short grace period.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from collections.abc import Awaitable, Callable
from typing import Any

from .config import RelayConfig
from .errors import DirectoryNotFound, ProcessSpawnError, ProcessTimeout
from .events import ProviderWarning, RunEnded, RunEvent, TurnCompleted
from .framing import LineFramer, iter_lines
from .models import (
    ChannelContext,
    MessageHandle,
    ProcessState,
    RunRequest,
    ToolCallRecord,
)
from .providers.base import EventParser, Provider
from .providers.registry import ProviderRegistry
from .session import ChannelSession, ChannelSessionRegistry

logger = logging.getLogger(__name__)
stream_logger = logging.getLogger("agentrelay.stream")

# Signature: async def handler(run, event) -> None
RunEventHandler = Callable[["ProcessRun", RunEvent], Awaitable[None]]

_STDERR_NOISE = ("INFO", "DEBUG")
_KILL_REASONS = (
    ProcessState.TIMED_OUT,
    ProcessState.SUPERSEDED,
    ProcessState.STOPPED,
)


class ProcessRun:
    """A single provider process and the state of its stream."""

    def __init__(
        self,
        channel_id: str,
        request: RunRequest,
        provider: Provider,
        parser: EventParser,
        proc: asyncio.subprocess.Process,
    ) -> None:
        self.channel_id = channel_id
        self.request = request
        self.provider = provider
        self.parser = parser
        self.proc = proc
        self.events: asyncio.Queue[RunEvent] = asyncio.Queue()
        self.framer = LineFramer()
        self.tool_calls: dict[str, ToolCallRecord] = {}
        self.status_message: MessageHandle | None = None
        self.started_at = time.monotonic()
        self.timeout_handle: asyncio.TimerHandle | None = None
        # Why the process was signalled, if it was.
        self.kill_reason: ProcessState | None = None
        self.turn_completed = False
        self.stderr_lines: list[str] = []
        self.exit_code: int | None = None
        self.outcome: ProcessState | None = None
        self.done: asyncio.Future[ProcessState] = (
            asyncio.get_running_loop().create_future()
        )
        self._supervisor: asyncio.Task | None = None
        self._consumer: asyncio.Task | None = None
        self._side_tasks: set[asyncio.Task] = set()

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def alive(self) -> bool:
        return self.proc.returncode is None

    @property
    def accepts_stdin(self) -> bool:
        stdin = self.proc.stdin
        return stdin is not None and not stdin.is_closing()

    def signal(self) -> bool:
        """Send SIGTERM. Returns False if the process is already gone."""
        if not self.alive:
            return False
        try:
            self.proc.terminate()
        except ProcessLookupError:
            return False
        logger.info("Sent SIGTERM to pid=%d (channel %s)", self.pid, self.channel_id)
        return True

    async def write_stdin(self, data: bytes) -> bool:
        """Write *data* to the process stdin. Returns False if stdin is gone."""
        if not self.alive or not self.accepts_stdin:
            return False
        try:
            self.proc.stdin.write(data)
            await self.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
            logger.warning(
                "stdin write failed for channel %s: %s", self.channel_id, exc
            )
            return False
        return True

    def close_stdin(self) -> None:
        if self.accepts_stdin:
            self.proc.stdin.close()

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Own a side task (e.g. an approval wait); cancelled when the run ends."""
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)
        return task

    def cancel_side_tasks(self) -> None:
        for task in list(self._side_tasks):
            task.cancel()

    def emit(self, event: RunEvent) -> None:
        self.events.put_nowait(event)

    async def wait(self) -> ProcessState:
        """Wait for exit and for every queued event to be handled."""
        outcome = await asyncio.shield(self.done)
        if self._consumer is not None:
            await asyncio.shield(self._consumer)
        return outcome


class ProcessManager:
    """Starts, supervises and kills provider processes, one per channel."""

    def __init__(
        self,
        registry: ChannelSessionRegistry,
        providers: ProviderRegistry,
        config: RelayConfig,
        event_handler: RunEventHandler | None = None,
    ) -> None:
        self._registry = registry
        self._providers = providers
        self._config = config
        self._event_handler = event_handler

    def set_event_handler(self, handler: RunEventHandler) -> None:
        self._event_handler = handler

    # ── Reservation ──

    def reserve(
        self,
        channel_id: str,
        continuation_id: str | None = None,
        status_message: MessageHandle | None = None,
        context: ChannelContext | None = None,
    ) -> ChannelSession:
        """Claim the channel for a new run.

        A running process is killed first (SUPERSEDED). The placeholder
        installed here has no process, so concurrent checks see the
        channel as busy before the spawn completes.
        """
        session = self._registry.get_or_create(channel_id)
        if session.state == ProcessState.RUNNING and session.run is not None:
            run = session.run
            if run.kill_reason is None:
                run.kill_reason = ProcessState.SUPERSEDED
                run.signal()
            session.transition(ProcessState.SUPERSEDED)
            session.clear_run()
            logger.info("Channel %s: superseding pid=%d", channel_id, run.pid)
        elif session.state not in (
            ProcessState.IDLE, ProcessState.RESERVED, ProcessState.SUPERSEDED,
        ):
            # Terminal state left by an exit that is still unwinding
            session.transition(ProcessState.IDLE)
        session.transition(ProcessState.RESERVED)
        session.reservation += 1
        if continuation_id is not None:
            session.continuation_id = continuation_id
        if status_message is not None:
            session.status_message = status_message
        if context is not None:
            session.context = context
        return session

    def release(self, channel_id: str) -> None:
        """Drop a reservation that will not be spawned."""
        session = self._registry.get(channel_id)
        if session is not None and session.state == ProcessState.RESERVED:
            session.transition(ProcessState.IDLE)

    # ── Spawn ──

    async def spawn(self, request: RunRequest, provider_name: str) -> ProcessRun:
        """Start the provider process for a reserved channel.

        Returns as soon as the process exists. Raises DirectoryNotFound,
        ProviderNotAvailableError or ProcessSpawnError; the channel is
        back to IDLE and no process is left in every case.
        """
        channel_id = request.channel_id
        session = self._registry.get(channel_id)
        if session is None or session.state != ProcessState.RESERVED:
            raise ValueError(f"Channel {channel_id} is not reserved")
        reservation = session.reservation

        if not os.path.isdir(request.working_dir):
            session.transition(ProcessState.IDLE)
            raise DirectoryNotFound(channel_id, request.working_dir)

        try:
            provider = self._providers.get_or_raise(provider_name)
        except Exception:
            session.transition(ProcessState.IDLE)
            raise

        try:
            # Relay mode writes the per-run MCP config here.
            cmd = provider.build_command(request)
            parser = provider.create_parser(request)
        except Exception as exc:
            provider.release(request)
            session.transition(ProcessState.IDLE)
            raise ProcessSpawnError(channel_id, provider.name, str(exc)) from exc
        stdin = (
            asyncio.subprocess.PIPE
            if provider.accepts_stdin_results(request)
            else asyncio.subprocess.DEVNULL
        )
        logger.info(
            "Channel %s: starting %s in %s (mode=%s resume=%s)",
            channel_id, provider.name, request.working_dir,
            request.mode.value, bool(request.continuation_id),
        )
        logger.debug("Channel %s: command: %s", channel_id, shlex.join(cmd))
        try:
            # argv list, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.working_dir,
                env=provider.build_env(request),
                start_new_session=True,
            )
        except OSError as exc:
            provider.release(request)
            if session.state == ProcessState.RESERVED and session.reservation == reservation:
                session.transition(ProcessState.IDLE)
            raise ProcessSpawnError(channel_id, cmd[0], str(exc)) from exc

        run = ProcessRun(channel_id, request, provider, parser, proc)
        if session.reservation != reservation or session.state != ProcessState.RESERVED:
            # A newer prompt claimed the channel while we were starting.
            logger.info(
                "Channel %s: pid=%d superseded during startup", channel_id, proc.pid
            )
            run.kill_reason = ProcessState.SUPERSEDED
            run.signal()
        else:
            session.working_dir = request.working_dir
            session.run = run
            run.status_message = session.status_message
            session.transition(ProcessState.RUNNING)
            timeout = request.timeout_seconds or self._config.process_timeout_seconds
            if timeout and timeout > 0:
                run.timeout_handle = asyncio.get_running_loop().call_later(
                    timeout, self._on_timeout, run, timeout,
                )
        logger.info("Channel %s: %s started pid=%d", channel_id, provider.name, proc.pid)

        run._consumer = asyncio.create_task(
            self._consume(run), name=f"relay-consume-{channel_id}",
        )
        run._supervisor = asyncio.create_task(
            self._supervise(session, run), name=f"relay-supervise-{channel_id}",
        )
        return run

    # ── Kill ──

    def kill(
        self,
        channel_id: str,
        reason: ProcessState = ProcessState.STOPPED,
    ) -> bool:
        """Signal the channel's running process.

        Only valid from RUNNING. Does not touch the registry; the exit
        path records the outcome and clears the run.
        """
        session = self._registry.get(channel_id)
        if session is None or session.state != ProcessState.RUNNING:
            return False
        run = session.run
        if run is None or run.kill_reason is not None:
            return False
        run.kill_reason = reason
        return run.signal()

    def _on_timeout(self, run: ProcessRun, timeout: float) -> None:
        run.timeout_handle = None
        if not run.alive or run.kill_reason is not None:
            return
        logger.warning(
            "%s; terminating pid=%d", ProcessTimeout(run.channel_id, timeout), run.pid,
        )
        run.kill_reason = ProcessState.TIMED_OUT
        run.emit(ProviderWarning(
            text=f"The agent took too long to respond ({_describe_duration(timeout)})",
            terminal=True,
        ))
        run.signal()

    # ── Supervision ──

    async def _read_stdout(self, run: ProcessRun) -> None:
        async for line in iter_lines(run.proc.stdout, run.framer):
            stream_logger.debug("[%s] %s", run.channel_id, line)
            for event in run.parser.parse_line(line):
                run.emit(event)
                if isinstance(event, TurnCompleted) and not run.turn_completed:
                    run.turn_completed = True
                    run.track(asyncio.create_task(self._finish_after_turn(run)))

    async def _read_stderr(self, run: ProcessRun) -> None:
        async for line in iter_lines(run.proc.stderr):
            logger.info("Channel %s stderr: %s", run.channel_id, line[:500])
            if not any(marker in line for marker in _STDERR_NOISE):
                run.stderr_lines.append(line)

    async def _finish_after_turn(self, run: ProcessRun) -> None:
        """The turn is over: close stdin and end a lingering CLI."""
        run.close_stdin()
        await asyncio.sleep(self._config.exit_grace_seconds)
        if run.alive:
            logger.info(
                "Channel %s: pid=%d still alive after turn completed, terminating",
                run.channel_id, run.pid,
            )
            run.signal()

    async def _supervise(self, session: ChannelSession, run: ProcessRun) -> None:
        exit_code: int | None = None
        try:
            results = await asyncio.gather(
                self._read_stdout(run),
                self._read_stderr(run),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        "Channel %s: stream reader failed: %s",
                        run.channel_id, result, exc_info=result,
                    )
                    if run.alive and run.kill_reason is None:
                        run.signal()
            exit_code = await run.proc.wait()
        finally:
            self._on_exit(session, run, exit_code)

    def _on_exit(
        self,
        session: ChannelSession,
        run: ProcessRun,
        exit_code: int | None,
    ) -> None:
        if run.timeout_handle is not None:
            run.timeout_handle.cancel()
            run.timeout_handle = None
        run.cancel_side_tasks()
        run.exit_code = exit_code

        if run.kill_reason in _KILL_REASONS:
            outcome = run.kill_reason
        elif run.turn_completed or exit_code == 0:
            outcome = ProcessState.COMPLETED
        else:
            outcome = ProcessState.FAILED
        run.outcome = outcome

        detail = ""
        if run.stderr_lines and outcome in (ProcessState.COMPLETED, ProcessState.FAILED):
            detail = "\n".join(run.stderr_lines)[-1500:]
            if self._config.stderr_warnings:
                run.emit(ProviderWarning(text=detail))
        run.emit(RunEnded(outcome=outcome, exit_code=exit_code, detail=detail))

        try:
            run.provider.release(run.request)
        except OSError:
            logger.exception("Channel %s: provider cleanup failed", run.channel_id)

        if session.run is run:
            session.transition(outcome)
            session.transition(ProcessState.IDLE)
            session.clear_run()
        logger.info(
            "Channel %s: pid=%d exited code=%s outcome=%s after %.1fs",
            run.channel_id, run.pid, exit_code, outcome.value,
            time.monotonic() - run.started_at,
        )
        if not run.done.done():
            run.done.set_result(outcome)

    async def _consume(self, run: ProcessRun) -> None:
        """Apply the run's events in order, one at a time."""
        while True:
            event = await run.events.get()
            if self._event_handler is not None:
                try:
                    await self._event_handler(run, event)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(
                        "Channel %s: handler failed for %s",
                        run.channel_id, event.event_type,
                    )
            if isinstance(event, RunEnded):
                return

    # ── Shutdown ──

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every running process and wait for them to exit."""
        runs = [s.run for s in self._registry.active() if s.run is not None]
        for run in runs:
            self.kill(run.channel_id, ProcessState.STOPPED)
        if not runs:
            return
        _, pending = await asyncio.wait(
            [asyncio.ensure_future(run.wait()) for run in runs], timeout=timeout,
        )
        for run in runs:
            if run.alive:
                logger.warning("Force-killing pid=%d (channel %s)", run.pid, run.channel_id)
                try:
                    run.proc.kill()
                except ProcessLookupError:
                    pass
        for task in pending:
            task.cancel()

    def describe(self, channel_id: str) -> dict[str, Any]:
        session = self._registry.get(channel_id)
        if session is None:
            return {"channel_id": channel_id, "state": ProcessState.IDLE.value}
        run = session.run
        return {
            "channel_id": channel_id,
            "state": session.state.value,
            "continuation_id": session.continuation_id,
            "working_dir": session.working_dir,
            "pid": run.pid if run is not None else None,
            "provider": run.provider.name if run is not None else None,
            "pending_tool_calls": sum(
                1 for rec in session.tool_calls.values() if not rec.completed
            ),
        }


def _describe_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"

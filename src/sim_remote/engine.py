"""Engine capability interface and built-in engines.

The dispatcher only needs three things from a simulation engine:
- run(overrides): apply parameter overrides and start executing
- wait_for_state_change(): block until the engine reaches a new observable state
- get_errors(): faults accumulated since the last run (None or empty when clean)

Engines may also offer cancel() (asked for on session teardown) and
close() (called when the owning session is released). How the engine
executes internally (threads, subprocess, step loop) is its own business.
"""

from __future__ import annotations

import importlib
import logging
import subprocess
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from .protocol.responses import Fault

logger = logging.getLogger(__name__)


@runtime_checkable
class Engine(Protocol):
    """Minimal interface a simulation engine must provide."""

    def run(self, overrides: Sequence[str]) -> None:
        """Apply overrides and execute (may return early or block)."""
        ...

    def wait_for_state_change(self) -> None:
        """Block until execution reaches an observable new state."""
        ...

    def get_errors(self) -> Sequence[Any] | None:
        """Faults recorded since the last run."""
        ...


EngineFactory = Callable[[], Engine]


def request_cancel(engine: Engine) -> bool:
    """Ask the engine to abandon in-progress work, if it supports that."""
    cancel = getattr(engine, "cancel", None)
    if not callable(cancel):
        return False
    cancel()
    return True


def release_engine(engine: Engine) -> None:
    """Release an engine's resources, if it holds any."""
    close = getattr(engine, "close", None)
    if callable(close):
        close()


def load_engine_factory(path: str) -> EngineFactory:
    """Import an engine factory from a "package.module:attribute" path.

    Raises:
        ValueError: If the path is not in module:attribute form
        ImportError: If the module cannot be imported
        AttributeError: If the module has no such attribute
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Engine factory must look like 'module:attribute', got {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    if not callable(factory):
        raise TypeError(f"Engine factory {path!r} is not callable")
    return factory


class ProcessEngine:
    """Runs an external simulation executable, one process per run.

    Overrides become command-line arguments, each preceded by
    `override_flag` when one is set:

        ProcessEngine(["Models", "sim.apsimx"], override_flag="--apply")
        run(["[Clock].Start = 2001-01-01"])
        → Models sim.apsimx --apply "[Clock].Start = 2001-01-01"

    A non-zero exit status is a fault; each non-blank stderr line is
    reported first, then the exit status itself.
    """

    def __init__(
        self,
        command: Sequence[str],
        override_flag: str | None = None,
        working_directory: str | Path | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("ProcessEngine needs a command to run")
        self.command = list(command)
        self.override_flag = override_flag
        self.working_directory = working_directory
        self.env = env

        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._errors: list[Fault] = []
        self._cancelled = False

    @property
    def name(self) -> str:
        return Path(self.command[0]).name

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None and self._process.poll() is None

    def build_argv(self, overrides: Sequence[str]) -> list[str]:
        argv = list(self.command)
        for override in overrides:
            if self.override_flag:
                argv.append(self.override_flag)
            argv.append(override)
        return argv

    def run(self, overrides: Sequence[str]) -> None:
        argv = self.build_argv(overrides)
        with self._lock:
            if self._process is not None:
                raise RuntimeError(f"{self.name} is already running")
            self._errors = []
            self._cancelled = False
            logger.debug(f"Starting engine process: {argv}")
            self._process = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                cwd=self.working_directory,
                env=self.env,
            )

    def wait_for_state_change(self) -> None:
        with self._lock:
            process = self._process
        if process is None:
            return

        try:
            stdout, stderr = process.communicate()
        except BaseException:
            with self._lock:
                self._process = None
            raise

        if stdout:
            logger.debug(f"{self.name} output:\n{stdout.rstrip()}")

        errors: list[Fault] = []
        if process.returncode != 0:
            errors = [
                Fault(message=line.strip(), location=self.name)
                for line in (stderr or "").splitlines()
                if line.strip()
            ]
            reason = "was cancelled" if self._cancelled else "exited"
            errors.append(
                Fault(message=f"{self.name} {reason} with status {process.returncode}")
            )

        with self._lock:
            self._errors = errors
            self._process = None

    def get_errors(self) -> list[Fault]:
        with self._lock:
            return list(self._errors)

    def cancel(self) -> None:
        with self._lock:
            process = self._process
            if process is None or process.poll() is not None:
                return
            self._cancelled = True
        logger.info(f"Terminating {self.name} (pid {process.pid})")
        process.terminate()

    def close(self) -> None:
        with self._lock:
            process = self._process
        if process is None:
            return
        self.cancel()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.name} did not exit after terminate, killing it")
            process.kill()
            process.wait()

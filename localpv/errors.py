"""Error taxonomy for the local PV preparation agent."""

from __future__ import annotations

from typing import Sequence


class LocalPvError(RuntimeError):
    """Base class for every error raised by the agent."""


class ConfigurationError(LocalPvError):
    """A required environment value or option is missing or invalid."""


class ValidationError(LocalPvError):
    """Node metadata came back in a shape we cannot interpret."""


class SafetyAbortError(LocalPvError):
    """Refusing to touch a device that looks like it is already in use."""

    def __init__(self, message: str, *, device: str, detail: str = "") -> None:
        super().__init__(message)
        self.device = device
        self.detail = detail


class CommandTimeoutError(LocalPvError, TimeoutError):
    def __init__(self, cmd: Sequence[str], timeout: float) -> None:
        super().__init__(f"timed out after {timeout:g}s: {' '.join(cmd)}")
        self.cmd = list(cmd)
        self.timeout = timeout


class CommandFailureError(LocalPvError):
    def __init__(self, cmd: Sequence[str], rc: int, out: str = "", err: str = "") -> None:
        msg = (err or out or "").strip() or f"exit status {rc}"
        super().__init__(f"{' '.join(cmd)} failed: {msg}")
        self.cmd = list(cmd)
        self.rc = rc
        self.out = out
        self.err = err

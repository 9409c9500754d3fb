"""Decide whether a loopback OAuth callback can work in this environment.

A browser redirect to ``http://localhost:8888/callback`` only reaches this
process when the browser runs on the same machine. Over SSH, inside remote
containers / Codespaces, on headless Linux, or across the WSL2 boundary the
user has to paste the redirect URL back by hand instead.

All checks are pure functions of an :class:`EnvironmentSnapshot`, so tests
can describe an environment without touching ``os.environ``.
"""

import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional

PROC_VERSION_PATH = "/proc/version"

REMOTE_SESSION_VARS = ("SSH_CLIENT", "SSH_TTY", "SSH_CONNECTION")
REMOTE_CONTAINER_VARS = ("REMOTE_CONTAINERS", "CODESPACES")
DISPLAY_VARS = ("DISPLAY", "WAYLAND_DISPLAY")


class OAuthFlow(Enum):
    LOCAL = "local"
    MANUAL = "manual"


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


@dataclass(frozen=True)
class EnvironmentSnapshot:
    """Environment variables, platform tag and an optional file reader."""

    env: Mapping[str, str] = field(default_factory=dict)
    platform: str = sys.platform
    read_file: Optional[Callable[[str], str]] = None

    @classmethod
    def current(cls) -> "EnvironmentSnapshot":
        return cls(env=dict(os.environ), platform=sys.platform, read_file=_read_text)

    @property
    def is_linux(self) -> bool:
        return self.platform.startswith("linux")

    def has_var(self, name: str) -> bool:
        return bool(self.env.get(name))

    def proc_version(self) -> str:
        """Lower-cased /proc/version, or "" when it cannot be read."""
        if self.read_file is None:
            return ""
        try:
            return (self.read_file(PROC_VERSION_PATH) or "").lower()
        except OSError:
            return ""


def _snapshot(snapshot: Optional[EnvironmentSnapshot]) -> EnvironmentSnapshot:
    return snapshot if snapshot is not None else EnvironmentSnapshot.current()


def is_wsl(snapshot: Optional[EnvironmentSnapshot] = None) -> bool:
    snap = _snapshot(snapshot)
    if not snap.is_linux:
        return False
    release = snap.proc_version()
    return "microsoft" in release or "wsl" in release


def is_wsl2(snapshot: Optional[EnvironmentSnapshot] = None) -> bool:
    snap = _snapshot(snapshot)
    if not is_wsl(snap):
        return False
    version = snap.proc_version()
    return "wsl2" in version or "microsoft-standard" in version


def is_remote_environment(snapshot: Optional[EnvironmentSnapshot] = None) -> bool:
    """True when a localhost callback would not reach this process."""

    snap = _snapshot(snapshot)

    if any(snap.has_var(name) for name in REMOTE_SESSION_VARS):
        return True

    if any(snap.has_var(name) for name in REMOTE_CONTAINER_VARS):
        return True

    # Headless Linux. WSL is excluded since it can hand URLs to the Windows browser.
    if snap.is_linux and not any(snap.has_var(name) for name in DISPLAY_VARS) and not is_wsl(snap):
        return True

    return False


def should_use_manual_oauth_flow(snapshot: Optional[EnvironmentSnapshot] = None) -> bool:
    snap = _snapshot(snapshot)
    return is_wsl2(snap) or is_remote_environment(snap)


def select_oauth_flow(snapshot: Optional[EnvironmentSnapshot] = None) -> OAuthFlow:
    return OAuthFlow.MANUAL if should_use_manual_oauth_flow(snapshot) else OAuthFlow.LOCAL

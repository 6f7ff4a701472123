"""Idle-shutdown daemon.

Runs on the VM under systemd. Once per tick it counts interactive SSH
sessions, tracks the last moment a developer was connected, and stops the
VM through :mod:`devbox.shutdown` once nobody has been connected for the
configured timeout.

The idle clock starts when the last session ends, not at the last
keystroke. The last-activity timestamp is persisted so a daemon restart
keeps counting from where it left off.
"""

from __future__ import annotations

import argparse
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path

from loguru import logger

from devbox import shell
from devbox.clock import Clock, SystemClock, Ticker
from devbox.constants import (
    ACTIVITY_MARKER,
    DEFAULT_IDLE_TIMEOUT_MINUTES,
    HEARTBEAT_EVERY_TICKS,
    IDLE_LOG,
    IDLE_TICK_SECONDS,
    SHUTDOWN_GRACE_SECONDS,
)
from devbox.logging import LogConfig, setup_logging
from devbox.models import ActivityState
from devbox.shell import Runner
from devbox.shutdown import ShutdownCascade, default_cascade

log = logger.bind(component="idle")

SSHD_SESSION_PATTERN = "sshd:.*@pts"


def sanitize_count(raw: object) -> int:
    """Coerce an externally derived count to a non-negative int.

    Empty, non-numeric and negative readings all become 0.
    """
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return max(raw, 0)
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return 0
    return max(value, 0)


class SessionProbe:
    """Layered count of active developer sessions.

    The primary signal is terminal sessions reported by ``who``. Only when it
    reads zero are ``sshd`` session processes counted, since those also
    include tunnel-only connections that never attach a terminal.
    """

    def __init__(self, runner: Runner = shell.run) -> None:
        self._runner = runner

    def terminal_sessions(self) -> int:
        result = self._runner(["who"], timeout=10)
        if not result.success:
            return 0
        return sum(1 for line in result.stdout.splitlines() if "pts/" in line)

    def sshd_sessions(self) -> int:
        # pgrep exits 1 with "0" on stdout when nothing matches
        result = self._runner(["pgrep", "-c", "-f", SSHD_SESSION_PATTERN], timeout=10)
        return sanitize_count(result.stdout)

    def count(self) -> int:
        primary = self.terminal_sessions()
        if primary > 0:
            return primary
        return self.sshd_sessions()

    __call__ = count


class ActivityMarker:
    """Last-activity UNIX timestamp persisted to a file."""

    def __init__(self, path: Path | str = ACTIVITY_MARKER) -> None:
        self.path = Path(path)

    def read(self) -> float | None:
        try:
            raw = self.path.read_text().strip()
        except OSError:
            return None
        try:
            value = float(raw)
        except ValueError:
            log.warning("Ignoring malformed activity marker {path}: {raw!r}", path=self.path, raw=raw)
            return None
        return value if value >= 0 else None

    def write(self, timestamp: float) -> None:
        try:
            self.path.write_text(f"{int(timestamp)}\n")
        except OSError as e:
            log.warning("Could not persist activity marker {path}: {err}", path=self.path, err=e)


class Decision(StrEnum):
    CONTINUE = "continue"
    STOP = "stop"


class IdleMonitor:
    """State machine over ``(session count, last activity)``.

    Args:
        timeout_minutes: Idle duration with zero sessions that triggers shutdown.
        sessions: Returns the current session count. Raw readings are sanitized.
        marker: Persistence for the last-activity timestamp.
        cascade: Shutdown strategies to run on timeout.
        clock: Time source; also used for the post-shutdown grace pause.
    """

    def __init__(
        self,
        timeout_minutes: int,
        sessions: Callable[[], object],
        marker: ActivityMarker,
        cascade: ShutdownCascade,
        clock: Clock,
        *,
        tick_interval: float = IDLE_TICK_SECONDS,
        heartbeat_every: int = HEARTBEAT_EVERY_TICKS,
        grace: float = SHUTDOWN_GRACE_SECONDS,
    ) -> None:
        self.timeout_seconds = timeout_minutes * 60
        self._sessions = sessions
        self._marker = marker
        self._cascade = cascade
        self._clock = clock
        self._tick_interval = tick_interval
        self._heartbeat_every = heartbeat_every
        self._grace = grace
        self._ticks = 0

        persisted = marker.read()
        if persisted is None:
            persisted = clock.now()
            marker.write(persisted)
            log.info("No activity marker, idle clock starts now")
        self.state = ActivityState(last_activity=persisted)

    def _touch(self, now: float) -> None:
        self.state.last_activity = now
        self._marker.write(now)

    def idle_seconds(self, now: float) -> float:
        # A marker from the future (clock skew, restored disk) reads as idle 0
        return max(0.0, now - self.state.last_activity)

    def tick(self) -> Decision:
        now = self._clock.now()
        try:
            count = sanitize_count(self._sessions())
        except Exception as e:
            log.warning("Session probe failed, treating as 0: {err}", err=e)
            count = 0

        previous = self.state.last_session_count
        if previous == 0 and count > 0:
            log.info("Session detected ({n} active)", n=count)
            self._touch(now)
        elif previous > 0 and count == 0:
            log.info("All sessions ended, idle clock starts now")
            self._touch(now)
        elif count > 0:
            self._touch(now)
        self.state.last_session_count = count

        self._ticks += 1
        idle = self.idle_seconds(now) if count == 0 else 0.0

        if self._ticks % self._heartbeat_every == 0:
            log.info(
                "Heartbeat: sessions={n} idle={idle:.0f}s timeout={timeout}s",
                n=count, idle=idle, timeout=self.timeout_seconds,
            )

        if count > 0 or idle < self.timeout_seconds:
            return Decision.CONTINUE

        log.warning(
            "Idle for {idle:.0f}s (timeout {timeout}s), stopping VM",
            idle=idle, timeout=self.timeout_seconds,
        )
        if not self._cascade.run():
            return Decision.CONTINUE

        self._clock.sleep(self._grace)
        return Decision.STOP

    def run(self) -> int:
        """Tick until shutdown succeeds. Returns the number of ticks."""
        log.info(
            "Idle monitor started: timeout={timeout}s tick={tick}s",
            timeout=self.timeout_seconds, tick=self._tick_interval,
        )
        return Ticker(self._tick_interval, self._clock).run(
            lambda: self.tick() is Decision.CONTINUE,
        )


def cli() -> None:
    parser = argparse.ArgumentParser(description="devbox idle shutdown monitor")
    parser.add_argument(
        "--timeout-minutes", type=int, default=DEFAULT_IDLE_TIMEOUT_MINUTES,
        help="Stop the VM after this many minutes without SSH sessions",
    )
    parser.add_argument("--tick-seconds", type=float, default=IDLE_TICK_SECONDS)
    parser.add_argument("--marker", type=str, default=ACTIVITY_MARKER)
    parser.add_argument(
        "--log-file", type=str, default=IDLE_LOG,
        help="Append-only decision log",
    )
    args = parser.parse_args()

    setup_logging(LogConfig(level="INFO", file=args.log_file))

    monitor = IdleMonitor(
        timeout_minutes=args.timeout_minutes,
        sessions=SessionProbe(),
        marker=ActivityMarker(args.marker),
        cascade=default_cascade(),
        clock=SystemClock(),
        tick_interval=args.tick_seconds,
    )
    monitor.run()


if __name__ == "__main__":
    cli()

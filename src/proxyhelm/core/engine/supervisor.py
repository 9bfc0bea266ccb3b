"""Per-attempt handshake directory for the elevated supervisor.

The elevated side only ever sees a directory owned by the invoking user. The
supervisor script writes pid, exit code and log files into it and watches for
a stop marker, so stopping the core never needs a second authorization.
"""

from __future__ import annotations

import contextlib
import shlex
import shutil
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

import psutil
import structlog

logger = structlog.get_logger(__name__)

ATTEMPT_PREFIX = "attempt-"

_SUPERVISOR_TEMPLATE = """\
#!/bin/sh
DIR={dir}
CORE={core}
CONFIG={config}
WORKDIR={workdir}

echo $$ > "$DIR/supervisor.pid"

{kill_block}
cd "$WORKDIR" || {{ echo "cannot enter $WORKDIR"; exit 1; }}
rm -f "$WORKDIR/cache.db"

"$CORE" run -c "$CONFIG" </dev/null >>"$DIR/core.log" 2>&1 &
CHILD=$!
echo "$CHILD" > "$DIR/core.pid.tmp" && mv "$DIR/core.pid.tmp" "$DIR/core.pid"
chmod 644 "$DIR/core.pid" "$DIR/supervisor.pid" "$DIR/core.log" 2>/dev/null

# The watcher polls for the stop marker; this shell blocks in wait so the
# core is reaped as soon as it exits.
(
    while [ ! -e "$DIR/stop" ]; do
        kill -0 "$CHILD" 2>/dev/null || exit 0
        sleep {poll}
    done
    kill -TERM "$CHILD" 2>/dev/null
    i=0
    while kill -0 "$CHILD" 2>/dev/null && [ "$i" -lt {grace_ticks} ]; do
        sleep {poll}
        i=$((i + 1))
    done
    kill -KILL "$CHILD" 2>/dev/null
) &
WATCHER=$!

wait "$CHILD"
echo $? > "$DIR/exit_code"
kill "$WATCHER" 2>/dev/null
"""

_LAUNCHER_TEMPLATE = """\
#!/bin/sh
nohup /bin/sh {supervisor} >{diag} 2>&1 &
exit 0
"""


def _kill_block(pids: list[int]) -> str:
    if not pids:
        return ""
    listed = " ".join(str(p) for p in pids)
    return (
        f'for pid in {listed}; do kill -TERM "$pid" 2>/dev/null; done\n'
        "sleep 0.5\n"
        f'for pid in {listed}; do kill -KILL "$pid" 2>/dev/null; done\n'
    )


def process_alive(pid: int) -> bool:
    """Whether ``pid`` runs and is not a zombie; unknown counts as alive."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def _read_pid(path: Path) -> int | None:
    try:
        text = path.read_text().strip()
    except (FileNotFoundError, PermissionError):
        return None
    return int(text) if text.isdigit() else None


def _tail(path: Path, lines: int) -> str:
    try:
        with path.open(errors="replace") as f:
            return "".join(deque(f, maxlen=lines)).rstrip()
    except (FileNotFoundError, PermissionError):
        return ""


@dataclass(frozen=True)
class AttemptFiles:
    """Paths of one launch attempt's handshake directory."""

    root: Path

    @classmethod
    def create(cls, runtime_dir: Path) -> AttemptFiles:
        runtime_dir.mkdir(parents=True, exist_ok=True)
        root = runtime_dir / f"{ATTEMPT_PREFIX}{uuid4().hex[:12]}"
        root.mkdir(mode=0o755)
        return cls(root)

    @property
    def launcher(self) -> Path:
        return self.root / "launch.sh"

    @property
    def supervisor(self) -> Path:
        return self.root / "supervisor.sh"

    @property
    def core_pid_file(self) -> Path:
        return self.root / "core.pid"

    @property
    def supervisor_pid_file(self) -> Path:
        return self.root / "supervisor.pid"

    @property
    def stop_marker(self) -> Path:
        return self.root / "stop"

    @property
    def exit_code_file(self) -> Path:
        return self.root / "exit_code"

    @property
    def core_log(self) -> Path:
        return self.root / "core.log"

    @property
    def diag_log(self) -> Path:
        return self.root / "diag.log"

    def write_scripts(
        self,
        core_path: Path,
        config_path: Path,
        *,
        kill_pids: list[int] | None = None,
        poll_interval: float = 0.2,
        stop_grace: float = 3.0,
    ) -> None:
        """Render the launcher and supervisor scripts."""
        grace_ticks = max(1, int(stop_grace / poll_interval))
        self.supervisor.write_text(
            _SUPERVISOR_TEMPLATE.format(
                dir=shlex.quote(str(self.root)),
                core=shlex.quote(str(core_path)),
                config=shlex.quote(str(config_path)),
                workdir=shlex.quote(str(config_path.parent)),
                kill_block=_kill_block(kill_pids or []),
                grace_ticks=grace_ticks,
                poll=f"{poll_interval:g}",
            )
        )
        self.launcher.write_text(
            _LAUNCHER_TEMPLATE.format(
                supervisor=shlex.quote(str(self.supervisor)),
                diag=shlex.quote(str(self.diag_log)),
            )
        )
        self.supervisor.chmod(0o755)
        self.launcher.chmod(0o755)

    def core_pid(self) -> int | None:
        return _read_pid(self.core_pid_file)

    def supervisor_pid(self) -> int | None:
        return _read_pid(self.supervisor_pid_file)

    def exit_code(self) -> int | None:
        try:
            return int(self.exit_code_file.read_text().strip())
        except (FileNotFoundError, PermissionError, ValueError):
            return None

    def request_stop(self) -> None:
        self.stop_marker.touch()

    def read_log(self, lines: int = 30) -> str:
        return _tail(self.core_log, lines)

    def output_tail(self, lines: int = 30) -> str:
        """Diagnostic and core output, for error reports."""
        parts = []
        diag = _tail(self.diag_log, lines)
        if diag:
            parts.append(f"=== Diagnostic ===\n{diag}")
        runtime = _tail(self.core_log, lines)
        if runtime:
            parts.append(f"=== Runtime ===\n{runtime}")
        return "\n".join(parts)

    def is_active(self) -> bool:
        """Whether the supervisor of this attempt still runs."""
        pid = self.supervisor_pid()
        return pid is not None and process_alive(pid)

    def remove(self) -> None:
        def on_error(func, path, exc) -> None:
            logger.warning("Could not remove handshake file", path=str(path), error=str(exc))

        if self.root.exists():
            shutil.rmtree(self.root, onexc=on_error)


def cleanup_stale_attempts(runtime_dir: Path) -> int:
    """Remove handshake directories whose supervisor is gone; returns the count."""
    if not runtime_dir.is_dir():
        return 0
    removed = 0
    for entry in runtime_dir.glob(f"{ATTEMPT_PREFIX}*"):
        if not entry.is_dir():
            continue
        files = AttemptFiles(entry)
        if files.is_active():
            continue
        files.remove()
        removed += 1
    if removed:
        logger.info("Removed stale handshake directories", count=removed, runtime_dir=str(runtime_dir))
    return removed


def remove_stale_cache(config_path: Path) -> None:
    """Delete the core's cache database next to the config; the supervisor retries as root."""
    cache = config_path.parent / "cache.db"
    with contextlib.suppress(FileNotFoundError):
        try:
            cache.unlink()
            logger.debug("Removed stale cache", path=str(cache))
        except PermissionError:
            logger.debug("Stale cache owned by root, supervisor will remove it", path=str(cache))

"""
tmux session runtime.

Agents run as detached tmux sessions. The manager only ever inspects the last
N lines of a pane. Every call carries a timeout. Listing and spawning sessions
raise TmuxError on failure; the rest log and report failure in their result.
"""

import logging
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TMUX_TIMEOUT_SECONDS = 5

SESSION_PREFIX = "hive-"
MANAGER_SESSION = "hive-manager"


class TmuxError(Exception):
    """A tmux command that must succeed did not."""
    pass


@dataclass
class TmuxSession:
    name: str
    windows: int
    created: str
    attached: bool


def _tmux(args: list[str], input_text: str | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["tmux", *args],
        capture_output=True,
        text=True,
        input=input_text,
        timeout=TMUX_TIMEOUT_SECONDS,
    )


def is_session_running(name: str) -> bool:
    try:
        return _tmux(["has-session", "-t", name]).returncode == 0
    except (FileNotFoundError, subprocess.TimeoutExpired, subprocess.SubprocessError) as e:
        logger.warning(f"tmux has-session failed for {name}: {e}")
        return False


_NO_SERVER_MARKERS = ("no server running", "error connecting to", "no sessions")


def _is_no_server(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _NO_SERVER_MARKERS)


def list_sessions() -> list[TmuxSession]:
    """All tmux sessions on the default server.

    No running server means no sessions. Any other failure raises TmuxError,
    since an empty list would read as "every agent is gone".
    """
    try:
        result = _tmux([
            "list-sessions", "-F",
            "#{session_name}|#{session_windows}|#{session_created}|#{session_attached}",
        ])
    except (FileNotFoundError, subprocess.TimeoutExpired, subprocess.SubprocessError) as e:
        raise TmuxError(f"tmux list-sessions failed: {e}") from e
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        if _is_no_server(stderr):
            return []
        raise TmuxError(f"tmux list-sessions exited {result.returncode}: {stderr}")

    sessions = []
    for line in result.stdout.strip().splitlines():
        parts = line.split("|")
        if len(parts) != 4:
            continue
        name, windows, created, attached = parts
        sessions.append(TmuxSession(
            name=name,
            windows=int(windows) if windows.isdigit() else 0,
            created=created,
            attached=attached not in ("", "0"),
        ))
    return sessions


def list_hive_sessions() -> list[str]:
    """Names of live agent sessions (hive-* except the manager)."""
    return [
        s.name for s in list_sessions()
        if s.name.startswith(SESSION_PREFIX) and s.name != MANAGER_SESSION
    ]


def spawn_session(name: str, workdir: str, command: str | None = None) -> None:
    """Create a detached session in `workdir` and start `command` in it."""
    try:
        result = _tmux(["new-session", "-d", "-s", name, "-c", workdir])
        if result.returncode != 0:
            raise TmuxError(f"Failed to create session {name}: {result.stderr.strip()}")
        if command:
            result = _tmux(["send-keys", "-t", name, command, "Enter"])
            if result.returncode != 0:
                raise TmuxError(f"Failed to start command in {name}: {result.stderr.strip()}")
    except (FileNotFoundError, subprocess.TimeoutExpired, subprocess.SubprocessError) as e:
        raise TmuxError(f"Failed to spawn session {name}: {e}") from e


def kill_session(name: str) -> None:
    """Kill a session; a session that is already gone is not an error."""
    try:
        _tmux(["kill-session", "-t", name])
    except (FileNotFoundError, subprocess.TimeoutExpired, subprocess.SubprocessError) as e:
        logger.warning(f"tmux kill-session failed for {name}: {e}")


def capture_pane(name: str, lines: int = 50) -> str:
    """Last `lines` lines of the session's pane, or "" on failure."""
    try:
        result = _tmux(["capture-pane", "-t", name, "-p", "-S", f"-{lines}"])
    except (FileNotFoundError, subprocess.TimeoutExpired, subprocess.SubprocessError) as e:
        logger.warning(f"tmux capture-pane failed for {name}: {e}")
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout


def send_text(name: str, text: str) -> bool:
    """Type text into a session and submit it.

    Multi-line text goes through a paste buffer so embedded newlines are not
    submitted line by line.
    """
    try:
        if "\n" in text:
            result = _tmux(["load-buffer", "-"], input_text=text)
            if result.returncode != 0:
                logger.warning(f"tmux load-buffer failed for {name}: {result.stderr.strip()}")
                return False
            result = _tmux(["paste-buffer", "-t", name])
            if result.returncode != 0:
                logger.warning(f"tmux paste-buffer failed for {name}: {result.stderr.strip()}")
                return False
            result = _tmux(["send-keys", "-t", name, "C-m"])
        else:
            result = _tmux(["send-keys", "-t", name, text, "Enter"])
    except (FileNotFoundError, subprocess.TimeoutExpired, subprocess.SubprocessError) as e:
        logger.warning(f"Failed to send text to {name}: {e}")
        return False
    return result.returncode == 0


def send_keys(name: str, *keys: str) -> bool:
    try:
        return _tmux(["send-keys", "-t", name, *keys]).returncode == 0
    except (FileNotFoundError, subprocess.TimeoutExpired, subprocess.SubprocessError) as e:
        logger.warning(f"Failed to send keys to {name}: {e}")
        return False


def send_enter(name: str) -> bool:
    return send_keys(name, "Enter")


def generate_session_name(agent_type: str, team_name: str | None = None, index: int | None = None) -> str:
    """hive-{type}[-{team}][-{index}] with the index omitted for the first agent."""
    name = f"{SESSION_PREFIX}{agent_type}"
    if team_name:
        name += f"-{team_name}"
    if index is not None and index > 1:
        name += f"-{index}"
    return name


class TmuxRuntime:
    """Session runtime used by the scheduler and manager.

    Tests pass any object with the same methods.
    """

    def list_live_sessions(self) -> list[str]:
        return list_hive_sessions()

    def is_running(self, name: str) -> bool:
        return is_session_running(name)

    def spawn(self, name: str, workdir: str, command: str | None = None) -> None:
        spawn_session(name, workdir, command)

    def capture_output(self, name: str, lines: int = 50) -> str:
        return capture_pane(name, lines)

    def send_text(self, name: str, text: str) -> bool:
        return send_text(name, text)

    def send_keys(self, name: str, *keys: str) -> bool:
        return send_keys(name, *keys)

    def send_enter(self, name: str) -> bool:
        return send_enter(name)

    def kill(self, name: str) -> None:
        kill_session(name)


def start_manager_session(root: str, command: str) -> bool:
    """Run the manager daemon inside its own tmux session."""
    if is_session_running(MANAGER_SESSION):
        return False
    spawn_session(MANAGER_SESSION, root, command)
    return True


def stop_manager_session() -> bool:
    if not is_session_running(MANAGER_SESSION):
        return False
    kill_session(MANAGER_SESSION)
    return True

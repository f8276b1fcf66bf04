"""Shared fixtures: a real SQLite workspace and an in-memory session runtime."""

import pytest

from hive.db.client import connect
from hive.db.queries import agents as agent_queries
from hive.db.queries import teams as team_queries
from hive.lib.config import HiveConfig, HivePaths
from hive.manager import monitoring, spin_down
from hive.agents import completion


class FakeRuntime:
    """Session runtime double that records everything sent to it."""

    def __init__(self, outputs: dict[str, str] | None = None):
        self.outputs = dict(outputs or {})
        self.sent: list[tuple[str, str]] = []
        self.keys: list[tuple[str, tuple]] = []
        self.enters: list[str] = []
        self.spawned: list[tuple[str, str, str | None]] = []
        self.killed: list[str] = []

    def list_live_sessions(self) -> list[str]:
        return list(self.outputs)

    def is_running(self, name: str) -> bool:
        return name in self.outputs

    def spawn(self, name: str, workdir: str, command: str | None = None) -> None:
        self.spawned.append((name, workdir, command))
        self.outputs.setdefault(name, "")

    def capture_output(self, name: str, lines: int = 50) -> str:
        return self.outputs.get(name, "")

    def send_text(self, name: str, text: str) -> bool:
        self.sent.append((name, text))
        return True

    def send_keys(self, name: str, *keys: str) -> bool:
        self.keys.append((name, keys))
        return True

    def send_enter(self, name: str) -> bool:
        self.enters.append(name)
        return True

    def kill(self, name: str) -> None:
        self.killed.append(name)
        self.outputs.pop(name, None)

    def texts_to(self, name: str) -> list[str]:
        return [text for session, text in self.sent if session == name]


@pytest.fixture
def root(tmp_path):
    HivePaths(tmp_path).hive_dir.mkdir()
    return tmp_path


@pytest.fixture
def conn(root):
    connection = connect(HivePaths(root).db_path)
    yield connection
    connection.close()


@pytest.fixture
def config():
    return HiveConfig()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def team(conn):
    team_id = team_queries.create_team(conn, "alpha", "https://github.com/acme/alpha.git", "repos/alpha")
    conn.commit()
    return team_queries.get_team(conn, team_id)


@pytest.fixture
def make_agent(conn, team):
    def _make(agent_type="junior", session=None, status="idle", story_id=None, cli_tool="claude"):
        agent_id = agent_queries.create_agent(conn, agent_type, team_id=team["id"], cli_tool=cli_tool,
                                              tmux_session=session)
        agent_queries.update_agent(conn, agent_id, status=status, current_story_id=story_id)
        conn.commit()
        return agent_queries.get_agent(conn, agent_id)
    return _make


@pytest.fixture(autouse=True)
def clean_trackers():
    monitoring.reset_trackers()
    completion.clear_cache()
    yield
    monitoring.reset_trackers()
    completion.clear_cache()


@pytest.fixture(autouse=True)
def instant_spin_down(monkeypatch):
    monkeypatch.setattr(spin_down, "MERGED_SPIN_DOWN_DELAY_SECONDS", 0)
    monkeypatch.setattr(spin_down, "IDLE_SPIN_DOWN_DELAY_SECONDS", 0)

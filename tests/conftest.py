import json
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Make claude_waybar importable when running from a plain checkout
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import claude_waybar  # noqa: E402
from claude_waybar import CredentialSource, StateStore  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def write_json(path, data):
    with open(path, "w") as f:
        if isinstance(data, str):
            f.write(data)
        else:
            json.dump(data, f)
    return str(path)


@pytest.fixture(autouse=True)
def _isolate_home(tmp_path, monkeypatch):
    """Never touch the real ~/.claude, ~/.cache or config during tests."""
    monkeypatch.setattr(claude_waybar, "LOG_FILE", str(tmp_path / "claude_waybar.log"))
    monkeypatch.setattr(claude_waybar, "CONFIG_FILE", str(tmp_path / "config.json"))
    monkeypatch.setattr(claude_waybar, "STATE_FILE", str(tmp_path / "cache" / "state.json"))
    monkeypatch.setattr(claude_waybar, "OPENCODE_AUTH_FILE", str(tmp_path / "opencode.json"))
    monkeypatch.setenv("CLAUDE_CONFIG_DIR", str(tmp_path / "claude"))


@pytest.fixture
def claude_file(tmp_path):
    def _write(data):
        return write_json(tmp_path / "claude-credentials.json", data)
    return _write


@pytest.fixture
def opencode_file(tmp_path):
    def _write(data):
        return write_json(tmp_path / "opencode-auth.json", data)
    return _write


def claude_source(path) -> CredentialSource:
    return CredentialSource("claude", path, claude_waybar._parse_claude)


def opencode_source(path) -> CredentialSource:
    return CredentialSource("opencode", path, claude_waybar._parse_opencode)


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "cache" / "state.json"))


class RecordingNotifier:
    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []

    def __call__(self, title, body, urgency):
        self.calls.append((title, body, urgency))


@pytest.fixture
def notifier():
    return RecordingNotifier()


def future(**kw) -> datetime:
    return datetime.now(timezone.utc) + timedelta(**kw)

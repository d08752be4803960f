import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from responses_turn.config import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer credentials and overrides out of the tests."""

    for name in (
        "OPENAI_API_KEY",
        "XAI_API_KEY",
        "RESPONSES_SERVICE",
        "RESPONSES_DEFAULT_MODEL",
        "TOOL_HOP_LIMIT",
        "ENABLE_FUNCTION_CALLING",
        "CHECK_REMOTE_TOOL_AVAILABILITY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        xai_api_key="xai-test",
        tool_preferences_path=tmp_path / "tool_preferences.json",
        remote_servers_path=tmp_path / "remote_tool_servers.json",
    )

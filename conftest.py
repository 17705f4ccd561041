# Ensure the src/ directory is on sys.path so tests can import the local 'agent_client' package
import os
import sys

import pytest

SRC_DIR = os.path.join(os.path.dirname(__file__), "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from agent_client.settings import AgentConfig, SessionOptions  # noqa: E402

FAKE_AGENT = os.path.join(os.path.dirname(__file__), "tests", "fake_agent.py")


@pytest.fixture
def agent_config(tmp_path):
    """Factory for configs that launch the scripted agent with a scenario."""

    def make(scenario: str = "echo", **overrides) -> AgentConfig:
        fields = dict(
            id="fake",
            display_name="Fake Agent",
            command=sys.executable,
            args=(FAKE_AGENT, scenario),
            working_directory=str(tmp_path),
        )
        fields.update(overrides)
        return AgentConfig(**fields)

    return make


@pytest.fixture
def fast_options():
    return SessionOptions(cancel_grace_period=0.3, stop_grace_period=0.5, handshake_timeout=5.0)

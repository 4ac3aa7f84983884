"""
Tests for the callbridge command-line interface.
"""

import json

import pytest
from typer.testing import CliRunner

from callbridge.cli import app

runner = CliRunner()


@pytest.fixture
def env(tmp_path):
    config_file = tmp_path / "callbridge.json"
    config_file.write_text(json.dumps({
        "store": {"backend": "file", "file_path": str(tmp_path / "store.json")},
        "logging": {"level": "ERROR"},
    }))
    return {"CALLBRIDGE_CONFIG_FILE": str(config_file), "LOG_LEVEL": "ERROR"}


def invoke(env, *args):
    return runner.invoke(app, list(args), env=env)


class TestPushCommand:
    """Simulated pushes."""

    def test_push_rings(self, env):
        result = invoke(env, "push", "--caller-key", "abc123", "--call-id", "call-1", "--name", "Alice")
        assert result.exit_code == 0
        assert "Alice" in result.output
        assert "Push handled" in result.output

    def test_non_native_push_not_handled(self, env):
        result = invoke(env, "push", "--caller-key", "abc123", "--no-native")
        assert result.exit_code == 0
        assert "not handled" in result.output

    def test_answer_then_drain_mailbox(self, env):
        result = invoke(env, "push", "--caller-key", "abc123", "--call-id", "call-1",
                        "--offer", "sdp-offer", "--answer")
        assert result.exit_code == 0
        assert "Call answered" in result.output

        result = invoke(env, "pending", "accept")
        assert result.exit_code == 0
        assert '"call_id": "call-1"' in result.output
        assert '"offer_data": "sdp-offer"' in result.output

        result = invoke(env, "pending", "accept")
        assert "No pending accept" in result.output

    def test_reject(self, env):
        result = invoke(env, "push", "--caller-key", "abc123", "--call-id", "call-2", "--reject")
        assert result.exit_code == 0
        assert "Call rejected" in result.output
        assert '"action": "reject"' in invoke(env, "pending", "reject").output

    def test_answer_with_padded_call_id(self, env):
        result = invoke(env, "push", "--caller-key", "abc123", "--call-id", " call-3 ", "--answer")
        assert result.exit_code == 0
        assert "Call answered" in result.output
        assert '"call_id": "call-3"' in invoke(env, "pending", "accept").output

    def test_answer_and_reject_are_exclusive(self, env):
        result = invoke(env, "push", "--caller-key", "abc123", "--answer", "--reject")
        assert result.exit_code == 2

    def test_answer_without_ringing_connection(self, env):
        result = invoke(env, "push", "--caller-key", "abc123", "--no-native", "--answer")
        assert result.exit_code == 1


class TestStoreCommands:
    """Status, guard release and offer caching."""

    def test_guard_blocks_until_cleared(self, env):
        invoke(env, "push", "--caller-key", "abc123", "--call-id", "call-1")
        status = invoke(env, "status")
        assert status.exit_code == 0
        assert "Active call: call-1" in status.output

        result = invoke(env, "clear-active")
        assert result.exit_code == 0
        assert "Active call: none" in invoke(env, "status").output

    def test_offer(self, env):
        result = invoke(env, "offer", "--caller-key", "abc123", "--payload", "sdp")
        assert result.exit_code == 0
        assert "cached_offer_json" in invoke(env, "status").output


class TestConfigCommands:
    """Configuration sub-commands."""

    def test_show(self, env):
        result = invoke(env, "config", "show", "--json")
        assert result.exit_code == 0
        assert '"backend": "file"' in result.output

    def test_validate(self, env):
        result = invoke(env, "config", "validate")
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_validate_invalid_file(self, env, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"admission": {"ttl_ms": 0}}))
        result = invoke(env, "config", "validate", "--file", str(bad))
        assert result.exit_code == 1
        assert "admission.ttl_ms" in result.output

    def test_init(self, env, tmp_path):
        target = tmp_path / "out" / "callbridge.json"
        result = invoke(env, "config", "init", "--path", str(target), "--force")
        assert result.exit_code == 0
        assert json.loads(target.read_text())["store"]["backend"] == "file"

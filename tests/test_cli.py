"""
Tests for the CLI interface.
"""
import json
import os
import tempfile

import pytest
import yaml
from typer.testing import CliRunner

from tokentop.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from tokentop.core.clock import now_ms
from tokentop.storage.models import ProviderSnapshot, UsageEvent
from tokentop.storage.repository import UsageStore

runner = CliRunner()


@pytest.fixture
def workspace():
    """Temp dir with a database path and an offline config file."""
    with tempfile.TemporaryDirectory() as temp_dir:
        config_path = os.path.join(temp_dir, "config.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump({"pricing": {"live": False}}, f)
        yield {
            "dir": temp_dir,
            "db": os.path.join(temp_dir, "usage.db"),
            "config": config_path,
        }


@pytest.fixture
def seeded(workspace):
    """Workspace whose database holds a few recent events."""
    now = now_ms()
    with UsageStore(workspace["db"]).initialize() as store:
        store.record_usage_events([
            UsageEvent(timestamp=now - 60_000, provider_id="anthropic", model_id="m1",
                       input_tokens=1000, output_tokens=500, cost_usd=0.5,
                       agent_id="a1", session_id="s1"),
            UsageEvent(timestamp=now - 30_000, provider_id="openai", model_id="gpt-4o",
                       input_tokens=2000, output_tokens=100, cost_usd=1.25),
        ])
        store.insert_provider_snapshot(ProviderSnapshot(
            timestamp=now, provider="openai-api", used_percent=42.0, cost_usd=1.25,
        ))
    return workspace


def _invoke(ws, *args):
    return runner.invoke(app, ["--db", ws["db"], "--config", ws["config"], *args])


class TestCLI:
    """Test CLI commands."""

    def test_no_command(self, workspace):
        result = _invoke(workspace)
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init(self, workspace):
        result = _invoke(workspace, "init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(workspace["db"])

    def test_invalid_config_fails(self, workspace):
        with open(workspace["config"], "w", encoding="utf-8") as f:
            yaml.dump({"bogus": 1}, f)
        result = _invoke(workspace, "summary")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "invalid config" in result.output

    def test_summary_empty(self, workspace):
        result = _invoke(workspace, "summary")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage data found" in result.output

    def test_summary(self, seeded):
        result = _invoke(seeded, "summary", "--hours", "1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "3.0K" in result.output
        assert "$1.75" in result.output

    def test_by_provider(self, seeded):
        result = _invoke(seeded, "by-provider")
        assert result.exit_code == EXIT_CODE_PASS
        assert "openai" in result.output
        assert "anthropic" in result.output

    def test_by_model(self, seeded):
        result = _invoke(seeded, "by-model")
        assert result.exit_code == EXIT_CODE_PASS
        assert "gpt-4o" in result.output

    def test_series(self, seeded):
        result = _invoke(seeded, "series", "--hours", "1", "--bucket", "60")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage per 60 min" in result.output

    def test_burn_rate(self, seeded):
        result = _invoke(seeded, "burn-rate", "--minutes", "10")
        assert result.exit_code == EXIT_CODE_PASS
        assert "2 requests" in result.output
        assert "tokens/min" in result.output

    def test_burn_rate_rejects_zero_window(self, workspace):
        result = _invoke(workspace, "burn-rate", "--minutes", "0")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_snapshots(self, seeded):
        result = _invoke(seeded, "snapshots", "openai-api")
        assert result.exit_code == EXIT_CODE_PASS
        assert "42.0" in result.output

    def test_snapshots_empty(self, workspace):
        result = _invoke(workspace, "snapshots", "nobody")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No snapshots" in result.output

    def test_price_fallback(self, workspace):
        result = _invoke(
            workspace, "price", "anthropic", "claude-3-5-haiku-20241022",
            "--input", "1000000", "--output", "1000000",
        )
        assert result.exit_code == EXIT_CODE_PASS
        assert "fallback" in result.output
        assert "$4.80" in result.output

    def test_price_unknown_model(self, workspace):
        result = _invoke(workspace, "price", "anthropic", "mystery-model", "--offline")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "no pricing known" in result.output

    def test_refresh_from_rows_file(self, workspace):
        now = now_ms()
        rows_path = os.path.join(workspace["dir"], "rows.jsonl")
        with open(rows_path, "w", encoding="utf-8") as f:
            for offset, tokens in ((2000, 100), (1000, 200)):
                f.write(json.dumps({
                    "timestamp": now - offset,
                    "agentId": "a1",
                    "sessionId": "s1",
                    "providerId": "anthropic",
                    "modelId": "claude-3-5-haiku-20241022",
                    "tokens": {"input": tokens, "output": 10},
                }) + "\n")

        result = _invoke(workspace, "refresh", "--rows", rows_path, "--offline")
        assert result.exit_code == EXIT_CODE_PASS
        assert "s1" in result.output
        assert "active" in result.output

        sessions = _invoke(workspace, "sessions")
        assert "a1" in sessions.output

    def test_refresh_bad_rows_file(self, workspace):
        rows_path = os.path.join(workspace["dir"], "rows.json")
        with open(rows_path, "w", encoding="utf-8") as f:
            f.write("[not json")
        result = _invoke(workspace, "refresh", "--rows", rows_path)
        assert result.exit_code == EXIT_CODE_FAIL

    def test_sessions_empty(self, workspace):
        result = _invoke(workspace, "sessions")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No sessions recorded" in result.output

"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from ai_chart_analyst.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from ai_chart_analyst.config.settings import Settings
from ai_chart_analyst.core.pricing import calculate_token_cost
from ai_chart_analyst.core.token_counter import TokenUsage
from ai_chart_analyst.sdk.openrouter_client import Completion
from ai_chart_analyst.storage.db import RealtimeDatabase
from ai_chart_analyst.storage.repository import TokenLedger

runner = CliRunner()

ANALYSIS = """Symbol: EURUSD
Timeframe: H4
📊 **MARKET SUMMARY**
- **Current Price:** 1.0850
- **Support Levels:** 1.0800
- **Resistance Levels:** 1.0900
- **Market Structure:** Bullish
📈 **TECHNICAL ANALYSIS**
- **Price Movement:** Higher highs.
💡 **TRADING SIGNAL**
- **Action:** BUY
Confidence Level: 80%
"""


@pytest.fixture
def workspace():
    """Temporary directory holding the database, charts and inputs."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir)


def invoke(workspace, *args):
    return runner.invoke(app, ["--db", os.path.join(workspace, "test.db"), *args])


class TestCLI:
    """Test CLI commands."""

    def test_init(self, workspace):
        """Test the database is initialized."""
        result = invoke(workspace, "init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(os.path.join(workspace, "test.db"))

    def test_cost(self, workspace):
        """Test pricing of actual usage."""
        result = invoke(workspace, "cost", "openai/gpt-4o-mini", "--input", "1000", "--output", "0")
        assert result.exit_code == EXIT_CODE_PASS
        assert "openai/gpt-4o-mini: 4 tokens" in result.output

    def test_cost_unknown_model(self, workspace):
        """Test unknown models are priced as the default and flagged."""
        result = invoke(workspace, "cost", "nobody/knows", "-i", "1000", "-o", "2000")
        assert result.exit_code == EXIT_CODE_PASS
        assert "24 tokens" in result.output
        assert "Unknown model" in result.output

    def test_cost_negative(self, workspace):
        """Test negative counts fail."""
        result = invoke(workspace, "cost", "openai/gpt-4o-mini", "--input=-1", "--output=0")
        assert result.exit_code == EXIT_CODE_FAIL

    def test_estimate(self, workspace):
        """Test pre-flight estimates for analysis and chat."""
        result = invoke(workspace, "estimate", "openai/gpt-4o-mini")
        assert "analysis on openai/gpt-4o-mini: 24 tokens" in result.output
        result = invoke(workspace, "estimate", "openai/gpt-4o-mini", "--chat")
        assert "chat on openai/gpt-4o-mini: 12 tokens" in result.output

    def test_estimate_with_config(self, workspace):
        """Test configured estimates are used."""
        config_path = os.path.join(workspace, "config.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("estimates:\n  analysis:\n    input_tokens: 1000\n    output_tokens: 0\n")
        result = runner.invoke(app, ["--config", config_path, "estimate", "openai/gpt-4o-mini"])
        assert "analysis on openai/gpt-4o-mini: 4 tokens" in result.output

    def test_bad_config(self, workspace):
        """Test a missing config file fails."""
        result = runner.invoke(app, ["--config", os.path.join(workspace, "missing.yaml"), "estimate"])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error" in result.output

    def test_models(self, workspace):
        """Test the model list is shown."""
        result = invoke(workspace, "models")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Models" in result.output

    def test_models_with_config(self, workspace):
        """Test configured estimates price the model list."""
        config_path = os.path.join(workspace, "config.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("estimates:\n  analysis:\n    input_tokens: 1000\n    output_tokens: 0\n")
        with patch('ai_chart_analyst.cli.main.calculate_token_cost', wraps=calculate_token_cost) as cost:
            result = runner.invoke(app, ["--config", config_path, "models"])
        assert result.exit_code == EXIT_CODE_PASS
        analysis = [c for c in cost.call_args_list if c.kwargs["is_analysis"]]
        assert analysis
        assert all(c.kwargs["estimate"] == TokenUsage(1000, 0) for c in analysis)

    def test_parse(self, workspace):
        """Test parsing a saved response."""
        path = os.path.join(workspace, "analysis.txt")
        with open(path, "w", encoding="utf-8") as f:
            f.write(ANALYSIS)
        result = invoke(workspace, "parse", path)
        assert result.exit_code == EXIT_CODE_PASS
        assert "EURUSD" in result.output
        assert "4h" in result.output
        assert "BUY" in result.output
        assert "80%" in result.output

    def test_correlate(self, workspace):
        """Test correlating two saved responses."""
        paths = []
        for name in ("h4.txt", "d1.txt"):
            path = os.path.join(workspace, name)
            with open(path, "w", encoding="utf-8") as f:
                f.write(ANALYSIS)
            paths.append(path)
        result = invoke(workspace, "correlate", *paths)
        assert result.exit_code == EXIT_CODE_PASS
        assert "Trend alignment: Bullish" in result.output
        assert "Confidence: 100%" in result.output


class TestLedgerCommands:
    """Test balance, grant and usage commands."""

    def test_balance_unknown_user(self, workspace):
        """Test an unknown user fails."""
        result = invoke(workspace, "balance", "ghost")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "User ghost not found" in result.output

    def test_grant_and_balance(self, workspace):
        """Test granted tokens show up in the balance."""
        result = invoke(workspace, "grant", "u1", "500")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Credited 500 tokens to u1" in result.output

        result = invoke(workspace, "balance", "u1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "u1: 500 tokens" in result.output

    def test_grant_rejects_non_positive(self, workspace):
        """Test grants must be positive."""
        assert invoke(workspace, "grant", "u1", "0").exit_code == EXIT_CODE_FAIL

    def test_usage(self, workspace):
        """Test the usage summary lists features and records."""
        ledger = TokenLedger(RealtimeDatabase(os.path.join(workspace, "test.db")))
        ledger.ensure_user("u1", 100)
        ledger.record_token_usage("u1", 24, "analysis", "openai/gpt-4o-mini", 1000, 2000)

        result = invoke(workspace, "usage", "u1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Token usage for u1" in result.output
        assert "analysis: 24" in result.output
        assert "ea-generator: 0" in result.output

    def test_usage_unknown_user(self, workspace):
        """Test usage of an unknown user fails."""
        assert invoke(workspace, "usage", "ghost").exit_code == EXIT_CODE_FAIL


class TestAnalyzeCommand:
    """Test the billed analyze command."""

    def write_chart(self, workspace, name="chart.png"):
        path = os.path.join(workspace, name)
        with open(path, "wb") as f:
            f.write(b"\x89PNG\r\n\x1a\nfake-chart")
        return path

    def test_requires_api_key(self, workspace):
        """Test analysis needs the OpenRouter key."""
        with patch('ai_chart_analyst.cli.main.load_settings', return_value=Settings()):
            result = invoke(workspace, "analyze", "u1", self.write_chart(workspace))
        assert result.exit_code == EXIT_CODE_FAIL
        assert "OPENROUTER_API_KEY" in result.output

    @patch('ai_chart_analyst.cli.main.OpenRouterClient')
    def test_analyze_single_chart(self, mock_client_class, workspace):
        """Test a chart is analyzed, billed and saved."""
        mock_client_class.return_value.complete.return_value = Completion(
            content=ANALYSIS, usage=TokenUsage(1000, 2000), id="gen-1", model="openai/gpt-4o-mini"
        )
        ledger = TokenLedger(RealtimeDatabase(os.path.join(workspace, "test.db")))
        ledger.ensure_user("u1", 100)
        settings = Settings(openrouter_api_key="sk-or", blob_dir=os.path.join(workspace, "charts"))

        with patch('ai_chart_analyst.cli.main.load_settings', return_value=settings):
            result = invoke(workspace, "analyze", "u1", self.write_chart(workspace))

        assert result.exit_code == EXIT_CODE_PASS
        assert "MARKET SUMMARY" in result.output
        assert "Charged 24 tokens" in result.output
        assert ledger.get_balance("u1").tokens == 76
        assert len(ledger.db.get("users/u1/history")) == 1

    @patch('ai_chart_analyst.cli.main.OpenRouterClient')
    def test_analyze_insufficient_tokens(self, mock_client_class, workspace):
        """Test a short balance fails before the vendor is called."""
        ledger = TokenLedger(RealtimeDatabase(os.path.join(workspace, "test.db")))
        ledger.ensure_user("u1", 5)
        settings = Settings(openrouter_api_key="sk-or", blob_dir=os.path.join(workspace, "charts"))

        with patch('ai_chart_analyst.cli.main.load_settings', return_value=settings):
            result = invoke(workspace, "analyze", "u1", self.write_chart(workspace))

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Insufficient tokens" in result.output
        mock_client_class.return_value.complete.assert_not_called()

    @patch('ai_chart_analyst.cli.main.OpenRouterClient')
    def test_missing_chart_file(self, mock_client_class, workspace):
        """Test an unreadable chart fails cleanly before anything is billed."""
        settings = Settings(openrouter_api_key="sk-or", blob_dir=os.path.join(workspace, "charts"))

        with patch('ai_chart_analyst.cli.main.load_settings', return_value=settings):
            result = invoke(workspace, "analyze", "u1", os.path.join(workspace, "missing.png"))

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Cannot read" in result.output
        mock_client_class.return_value.complete.assert_not_called()

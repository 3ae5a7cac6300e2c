"""
CLI interface for AI Chart Analyst.

Provides command-line access to pricing, parsing, the token ledger and
billed chart analysis.
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_chart_analyst.config.loader import AppConfig, load_app_config
from ai_chart_analyst.config.settings import ConfigurationError, load_settings
from ai_chart_analyst.core.correlation import analyze_correlation
from ai_chart_analyst.core.formatters import format_timeframe
from ai_chart_analyst.core.guardrails import Feature, InsufficientTokens
from ai_chart_analyst.core.parser import TemplateMismatch, extract_confidence_level, parse_analysis
from ai_chart_analyst.core.pricing import (
    AVAILABLE_MODELS,
    DEFAULT_MODEL,
    calculate_cost,
    calculate_token_cost,
    calculate_token_value_in_usd,
)
from ai_chart_analyst.sdk.analyst import ChartAnalyst
from ai_chart_analyst.sdk.openrouter_client import OpenRouterClient, VendorError
from ai_chart_analyst.storage.blobs import ChartStore
from ai_chart_analyst.storage.db import RealtimeDatabase
from ai_chart_analyst.storage.history import AnalysisHistory
from ai_chart_analyst.storage.repository import TokenLedger, UserNotFound

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

# Options shared by every command, set by the callback
_state = {"db_path": None, "config": None}


def _app_config() -> AppConfig:
    if _state["config"] is None:
        return AppConfig()
    return load_app_config(_state["config"])


def _db_path() -> str:
    return _state["db_path"] or load_settings().db_path


def _ledger(config: AppConfig) -> TokenLedger:
    return TokenLedger(RealtimeDatabase(_db_path()), config.pricing_table())


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="Database file (default: $CHART_ANALYST_DB)"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML application config"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs")
):
    """AI Chart Analyst CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True
    )
    _state["db_path"] = db
    _state["config"] = config
    if ctx.invoked_subcommand is None:
        console.print("AI Chart Analyst - Use --help to see available commands")


@app.command()
def init():
    """Initialize the AI Chart Analyst database."""
    try:
        RealtimeDatabase(_db_path())
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def cost(
    model: str = typer.Argument(..., help="Model id"),
    input_tokens: int = typer.Option(..., "--input", "-i", help="Prompt tokens"),
    output_tokens: int = typer.Option(..., "--output", "-o", help="Completion tokens")
):
    """Price actual token usage in app tokens."""
    try:
        table = _app_config().pricing_table()
        tokens = calculate_cost(model, input_tokens, output_tokens, table)
    except (ValueError, FileNotFoundError) as e:
        _fail(str(e))
    console.print(f"{model}: [bold]{tokens}[/] tokens (${calculate_token_value_in_usd(tokens, table):.4f})")
    if not table.supports(model):
        console.print(f"[yellow]Unknown model, priced as {table.default_model}[/]")


@app.command()
def estimate(
    model: str = typer.Argument(DEFAULT_MODEL, help="Model id"),
    chat: bool = typer.Option(False, "--chat", help="Estimate a chat turn instead of an analysis")
):
    """Show the pre-flight estimate of an operation."""
    try:
        config = _app_config()
    except (ValueError, FileNotFoundError) as e:
        _fail(str(e))
    feature = Feature.CHAT if chat else Feature.ANALYSIS
    tokens = calculate_token_cost(
        model, is_analysis=not chat, table=config.pricing_table(), estimate=config.estimate_for(feature)
    )
    console.print(f"{feature.value} on {model}: [bold]{tokens}[/] tokens")


@app.command()
def models():
    """List selectable models and their analysis cost."""
    try:
        config = _app_config()
    except (ValueError, FileNotFoundError) as e:
        _fail(str(e))
    table = config.pricing_table()
    output = Table(title="Models")
    output.add_column("Model")
    output.add_column("Name")
    output.add_column("Tier")
    output.add_column("Analysis", justify="right")
    output.add_column("Chat", justify="right")
    for info in AVAILABLE_MODELS:
        output.add_row(
            info.id,
            info.name,
            "premium" if info.premium else "free",
            str(calculate_token_cost(
                info.id, is_analysis=True, table=table, estimate=config.estimate_for(Feature.ANALYSIS)
            )),
            str(calculate_token_cost(
                info.id, is_analysis=False, table=table, estimate=config.estimate_for(Feature.CHAT)
            ))
        )
    console.print(output)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        _fail(f"Cannot read {path}: {e}")


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        _fail(f"Cannot read {path}: {e}")


@app.command()
def parse(path: Path = typer.Argument(..., help="File holding an analysis response")):
    """Extract structured fields from an analysis response."""
    text = _read_text(path)
    parsed = parse_analysis(text)
    output = Table(show_header=False)
    output.add_column("Field")
    output.add_column("Value")
    output.add_row("Symbol", parsed.symbol or "N/A")
    output.add_row("Timeframe", format_timeframe(parsed.timeframe) or "N/A")
    output.add_row("Current Price", parsed.current_price or "N/A")
    output.add_row("Trend", parsed.trend or "N/A")
    output.add_row("Signal", parsed.signal or "N/A")
    output.add_row("Support", ", ".join(parsed.support) or "N/A")
    output.add_row("Resistance", ", ".join(parsed.resistance) or "N/A")
    output.add_row("Confidence", f"{extract_confidence_level(text)}%")
    console.print(output)


@app.command()
def correlate(paths: List[Path] = typer.Argument(..., help="Analysis responses, one per timeframe")):
    """Correlate analyses of several timeframes."""
    result = analyze_correlation([_read_text(p) for p in paths])
    console.print(result.summary, markup=False)
    console.print(f"\n[bold]Trend alignment:[/] {result.trend_alignment}")
    console.print(f"[bold]Signal:[/] {result.signals.primary} ({result.signals.confirmation})")
    console.print(f"[bold]Confidence:[/] {result.signals.confidence}%")


@app.command()
def balance(user_id: str = typer.Argument(..., help="User id")):
    """Show a user's token balance."""
    try:
        user_balance = _ledger(_app_config()).get_balance(user_id)
    except UserNotFound as e:
        _fail(str(e))
    console.print(f"{user_id}: [bold]{user_balance.tokens}[/] tokens")
    console.print(f"Total used: {user_balance.total_tokens_used}")


@app.command()
def grant(
    user_id: str = typer.Argument(..., help="User id"),
    amount: int = typer.Argument(..., help="Tokens to credit")
):
    """Credit tokens to a user outside of Stripe."""
    if amount <= 0:
        _fail("amount must be > 0")
    ledger = _ledger(_app_config())
    ledger.credit_tokens(user_id, amount, f"grant-{ledger.db.new_key()}", "manual")
    console.print(f"[green]✓[/] Credited {amount} tokens to {user_id}, balance {ledger.get_balance(user_id).tokens}")


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="User id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Records to show")
):
    """Show a user's token usage summary and history."""
    ledger = _ledger(_app_config())
    summary = ledger.get_token_usage_summary(user_id)
    if summary is None:
        _fail(f"User {user_id} not found")

    console.print(f"\n[bold]Token usage for {user_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Total used: {summary.total_tokens_used}")
    for feature, tokens in summary.feature_breakdown.items():
        console.print(f"  {feature}: {tokens}")

    records = ledger.get_token_usage_history(user_id, limit)
    if not records:
        console.print("\n[dim]No usage recorded yet.[/]")
        return
    output = Table()
    output.add_column("Feature")
    output.add_column("Model")
    output.add_column("Tokens", justify="right")
    output.add_column("In/Out", justify="right")
    for record in records:
        output.add_row(
            record.feature, record.model, str(record.tokens_used),
            f"{record.input_tokens}/{record.output_tokens}"
        )
    console.print(output)


@app.command()
def analyze(
    user_id: str = typer.Argument(..., help="User to bill"),
    images: List[Path] = typer.Argument(..., help="Chart images; two or more are correlated"),
    model: str = typer.Option(DEFAULT_MODEL, "--model", "-m", help="Model id")
):
    """Analyze chart images and bill the user."""
    try:
        settings = load_settings()
        config = _app_config()
        client = OpenRouterClient(
            settings.require_openrouter_api_key(),
            app_url=settings.site_url or "http://localhost",
            app_title=settings.app_title,
            timeout=config.vendor.timeout,
            max_retries=config.vendor.max_retries,
            initial_delay=config.vendor.initial_delay,
            max_delay=config.vendor.max_delay
        )
    except (ConfigurationError, ValueError, FileNotFoundError) as e:
        _fail(str(e))

    ledger = _ledger(config)
    analyst = ChartAnalyst(client, ledger, estimates=config.estimates)
    chart_bytes = [_read_bytes(p) for p in images]

    try:
        if len(chart_bytes) == 1:
            results = [analyst.analyze_image(user_id, chart_bytes[0], model)]
            correlation = None
        else:
            comprehensive = analyst.analyze_charts(user_id, chart_bytes, model)
            results = comprehensive.analyses
            correlation = comprehensive.correlation
    except (InsufficientTokens, UserNotFound, TemplateMismatch, VendorError) as e:
        _fail(str(e))

    charts = ChartStore(settings.blob_dir)
    saved = [(data, r.content) for data, r in zip(chart_bytes, results) if r.ok]
    keys = [charts.upload_chart(user_id, data) for data, _ in saved]
    record = AnalysisHistory(ledger.db, charts).save_analysis(
        user_id, model, [content for _, content in saved], keys
    )

    for path, result in zip(images, results):
        console.print(f"\n[bold]{path.name}[/bold]")
        if result.ok:
            console.print(result.content, markup=False)
        else:
            console.print("Failed:", result.error, style="yellow", markup=False)
    if correlation is not None:
        console.print("\n[bold]Correlation[/bold]")
        console.print(correlation.summary, markup=False)
        console.print(f"Confidence: {correlation.signals.confidence}%")

    charged = sum(r.settlement.tokens_charged for r in results if r.settlement)
    console.print(f"\n[green]✓[/] Charged {charged} tokens, saved as {record.id}")


if __name__ == "__main__":
    app()

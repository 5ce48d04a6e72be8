"""
QuantFusion Command Line Interface

Commands:
- analyze: Full pipeline run with the LLM recommendation
- indicators: Technical indicator set
- sentiment: Sentiment snapshot
- fusion: Quant/sentiment fusion analysis
- batch: Analyze several symbols
- status: Configuration and data status
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from loguru import logger

from quantfusion.core.config import QuantFusionConfig
from quantfusion.core.engine import QuantFusionEngine
from quantfusion.core.exceptions import SymbolNotFoundError

app = typer.Typer(
    name="quantfusion",
    help="QuantFusion - quantitative and sentiment fusion recommendations",
    add_completion=False,
)
console = Console()

DataDirOption = typer.Option(None, "--data-dir", "-d", help="Directory of <SYMBOL>.csv bar files")
JsonOption = typer.Option(False, "--json", help="Print raw JSON instead of tables")
LogLevelOption = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR")


def setup_logging(level: str = "INFO", log_dir: str = "logs") -> None:
    """Configure logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )
    logger.add(
        str(Path(log_dir) / "quantfusion_{time}.log"),
        rotation="1 day",
        retention="7 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} | {message}",
    )


def _load_config(data_dir: Optional[Path], log_level: Optional[str]) -> QuantFusionConfig:
    config = QuantFusionConfig.load()
    if data_dir:
        config.data.data_dir = str(data_dir)
    setup_logging((log_level or config.system.log_level).upper(), config.system.log_dir)
    return config


def _run(config: QuantFusionConfig, work: Callable[[QuantFusionEngine], Awaitable[Any]]) -> Any:
    async def runner():
        engine = QuantFusionEngine(config)
        try:
            return await work(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except SymbolNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _print_json(data: dict) -> None:
    console.print_json(json.dumps(data, default=str))


def _score_style(score: float) -> str:
    if score > 0.1:
        return "green"
    if score < -0.1:
        return "red"
    return "yellow"


@app.command()
def analyze(
    symbol: str = typer.Argument(..., help="Instrument symbol"),
    user_id: Optional[int] = typer.Option(None, help="Requesting user id"),
    data_dir: Optional[Path] = DataDirOption,
    as_json: bool = JsonOption,
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Run the full pipeline and print the final recommendation."""
    config = _load_config(data_dir, log_level)
    analysis = _run(config, lambda engine: engine.analyze(symbol, user_id))

    if as_json:
        _print_json(analysis.to_dict())
        return

    style = _score_style(analysis.final_score)
    header = (
        f"[bold {style}]{analysis.recommendation}[/bold {style}]  "
        f"score {analysis.final_score:+.3f}  confidence {analysis.confidence:.0%}"
    )
    if analysis.is_fallback:
        header += "  [yellow](fallback)[/yellow]"
    console.print(Panel(header, title=f"{symbol} analysis", style="cyan"))

    table = Table(show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Time Horizon", analysis.time_horizon)
    table.add_row("Risk Level", analysis.risk_level)
    table.add_row("Position Size", f"{analysis.position_size_recommendation.size_percent:.1f}%")
    targets = analysis.price_targets
    table.add_row("Near-term Target", f"{targets.near_term:,.2f}")
    table.add_row("Stop Loss", f"{targets.stop_loss:,.2f}")
    table.add_row("Attempts", str(analysis.metadata.get("attempts", 0)))
    table.add_row("Quality", f"{analysis.metadata.get('quality_level')} ({analysis.metadata.get('quality_score')})")
    console.print(table)

    console.print(f"\n{analysis.explainability_text}")
    for sentence in analysis.evidence_sentences:
        console.print(f"  • {sentence}")


@app.command()
def indicators(
    symbol: str = typer.Argument(..., help="Instrument symbol"),
    period: Optional[int] = typer.Option(None, help="Lookback in bars"),
    data_dir: Optional[Path] = DataDirOption,
    as_json: bool = JsonOption,
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Compute the technical indicator set."""
    config = _load_config(data_dir, log_level)
    quant = _run(config, lambda engine: engine.indicators(symbol, period))

    if as_json:
        _print_json(quant.to_dict())
        return

    table = Table(title=f"{symbol} indicators ({quant.bars} bars, {quant.status})")
    table.add_column("Indicator", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Trend", f"{quant.trend.direction} (strength {quant.trend.trend_strength:+.2f})")
    table.add_row("ADX", f"{quant.trend.adx:.1f}")
    table.add_row("RSI", f"{quant.momentum.rsi:.1f}")
    table.add_row("MACD Histogram", f"{quant.trend.macd.histogram:.4f}")
    table.add_row("Volatility Regime", quant.volatility.volatility_regime)
    table.add_row("ATR", f"{quant.volatility.atr:.4f}")
    table.add_row("Volume Ratio", f"{quant.volume.volume_ratio:.2f}")
    table.add_row("Composite Score", f"{quant.composite.score:+.3f}")
    table.add_row("Confidence", f"{quant.composite.confidence:.2f}")
    console.print(table)


@app.command()
def sentiment(
    symbol: str = typer.Argument(..., help="Instrument symbol"),
    data_dir: Optional[Path] = DataDirOption,
    as_json: bool = JsonOption,
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Aggregate news, social and analyst sentiment."""
    config = _load_config(data_dir, log_level)
    snapshot = _run(config, lambda engine: engine.sentiment(symbol))

    if as_json:
        _print_json(snapshot.to_dict())
        return

    table = Table(title=f"{symbol} sentiment ({snapshot.status})")
    table.add_column("Source", style="cyan")
    table.add_column("Score")
    table.add_column("Inputs")
    table.add_row("News", f"{snapshot.news_sentiment.score:+.3f}", str(snapshot.sources.news_count))
    table.add_row("Social", f"{snapshot.social_sentiment.score:+.3f}", str(snapshot.sources.social_mentions))
    table.add_row("Analysts", f"{snapshot.analyst_sentiment.score:+.3f}", str(snapshot.sources.analyst_ratings))
    style = _score_style(snapshot.overall_score)
    table.add_row("[bold]Overall[/bold]", f"[{style}]{snapshot.overall_score:+.3f}[/{style}]", "")
    console.print(table)
    console.print(f"Confidence: {snapshot.confidence:.2f}  Trend: {snapshot.trend.direction}")


@app.command()
def fusion(
    symbol: str = typer.Argument(..., help="Instrument symbol"),
    data_dir: Optional[Path] = DataDirOption,
    as_json: bool = JsonOption,
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Fuse indicators and sentiment into a recommendation."""
    config = _load_config(data_dir, log_level)
    result = _run(config, lambda engine: engine.fusion(symbol))

    if as_json:
        _print_json(result.to_dict())
        return

    style = _score_style(result.fusion_score)
    console.print(Panel(
        f"[bold {style}]{result.recommendation.action.value}[/bold {style}]  "
        f"score {result.fusion_score:+.3f}  confidence {result.confidence:.0%}  alpha {result.alpha}",
        title=f"{symbol} fusion",
        style="cyan",
    ))

    table = Table(title="Top Drivers")
    table.add_column("Driver", style="cyan")
    table.add_column("Category")
    table.add_column("Value")
    table.add_column("Impact")
    for driver in result.top_drivers:
        table.add_row(driver.name, driver.category, f"{driver.value:+.3f}", f"{driver.weighted_impact:.3f}")
    console.print(table)

    console.print(f"Risk: {result.risk_assessment.risk_level.value}  "
                  f"Position: {result.position_sizing.recommended_size_percent:.1f}%  "
                  f"Horizon: {result.time_horizon.horizon}")
    if result.regime:
        console.print(f"Regime: {result.regime.strength_label} {result.regime.label} ({result.regime.phase})")


@app.command()
def batch(
    symbols: str = typer.Argument(..., help="Comma-separated symbols"),
    user_id: Optional[int] = typer.Option(None, help="Requesting user id"),
    data_dir: Optional[Path] = DataDirOption,
    as_json: bool = JsonOption,
    log_level: Optional[str] = LogLevelOption,
) -> None:
    """Analyze several symbols one after another."""
    config = _load_config(data_dir, log_level)
    names = [s.strip() for s in symbols.split(",") if s.strip()]
    results = _run(config, lambda engine: engine.analyze_batch(names, user_id))

    if as_json:
        _print_json({
            "successful": {s: a.to_dict() for s, a in results["successful"].items()},
            "failed": results["failed"],
            "summary": results["summary"],
        })
        return

    table = Table(title="Batch Analysis")
    table.add_column("Symbol", style="cyan")
    table.add_column("Recommendation")
    table.add_column("Score")
    table.add_column("Confidence")
    for symbol, analysis in results["successful"].items():
        style = _score_style(analysis.final_score)
        table.add_row(
            symbol,
            f"[{style}]{analysis.recommendation}[/{style}]",
            f"{analysis.final_score:+.3f}",
            f"{analysis.confidence:.2f}",
        )
    for symbol, error in results["failed"].items():
        table.add_row(symbol, "[red]FAILED[/red]", error, "")
    console.print(table)

    summary = results["summary"]
    console.print(f"{summary['successful']}/{summary['total']} succeeded")


@app.command()
def status(data_dir: Optional[Path] = DataDirOption) -> None:
    """Check configuration and data status."""
    config = QuantFusionConfig.load()
    if data_dir:
        config.data.data_dir = str(data_dir)

    table = Table(title="Configuration Status")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("LLM Provider", config.llm.llm_provider)
    table.add_row("LLM Model", config.llm.llm_model)
    table.add_row("Max Retries", str(config.llm.max_retries))
    table.add_row("Parallel Fetch", str(config.fusion.parallel_fetch))
    table.add_row("Data Directory", config.data.data_dir)
    table.add_row("Analysis Store", config.system.analysis_store_path)
    console.print(table)

    console.print("\n[bold]Validation:[/bold]")
    errors = config.validate_for_llm()
    if not errors:
        console.print("[green]✓ Reasoner configured[/green]")
    else:
        for err in errors:
            console.print(f"[yellow]⚠ {err}[/yellow]")

    console.print("\n[bold]Bar files:[/bold]")
    files = sorted(Path(config.data.data_dir).glob("*.csv")) if Path(config.data.data_dir).exists() else []
    if files:
        for f in files:
            console.print(f"[green]✓ {f.stem}[/green]")
    else:
        console.print("[yellow]No bar files found[/yellow]")


@app.command()
def version() -> None:
    """Show QuantFusion version."""
    from quantfusion import __version__
    console.print(f"QuantFusion v{__version__}")


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()

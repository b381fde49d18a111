"""CLI entry point for the render performance analyzer."""

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from render_analyzer.analyzer import analyze_trace, create_default_analyzer
from render_analyzer.capabilities import ADAPTER_CAPABILITIES, adapter_capabilities, parse_capabilities
from render_analyzer.config import AnalysisConfig, load_config
from render_analyzer.errors import RenderAnalyzerError

app = typer.Typer(
    help="Render Analyzer - Detect rendering bottlenecks in browser performance traces",
    no_args_is_help=True
)
console = Console()

SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "warning": "yellow",
    "info": "blue",
}


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Render Analyzer - Detect rendering bottlenecks in browser performance traces."""
    if ctx.invoked_subcommand is None:
        # Show help if no subcommand is provided
        pass


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True
    )


def _print_detections(result: dict, top_n: int) -> None:
    detections = sorted(result["detections"], key=lambda detection: -detection["metrics"]["impact_score"])
    if not detections:
        console.print("[green]No rendering bottlenecks detected[/green]")
        return

    table = Table(title=f"Top {min(top_n, len(detections))} of {len(detections)} detections")
    table.add_column("#", justify="right")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Impact", justify="right")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Count", justify="right")
    table.add_column("Speedup", justify="right")
    table.add_column("Description")

    for rank, detection in enumerate(detections[:top_n], start=1):
        metrics = detection["metrics"]
        severity = detection["severity"]
        table.add_row(
            str(rank),
            detection["type"],
            f"[{SEVERITY_STYLES.get(severity, 'white')}]{severity}[/]",
            str(metrics["impact_score"]),
            f"{metrics['duration_ms']:.2f}",
            str(metrics["occurrences"]),
            f"{metrics['estimated_speedup_pct']}%",
            detection["description"],
        )
    console.print(table)


def _print_warnings(result: dict) -> None:
    for warning in result["warnings"]:
        console.print(f"[yellow]Warning ({warning['code']}):[/yellow] {warning['message']}")
        for suggestion in warning["suggestions"]:
            console.print(f"  [dim]- {suggestion}[/dim]")


@app.command()
def analyze(
    trace: Path = typer.Option(..., "--trace", help="Path to Chrome JSON, Perfetto trace or snapshot JSON file"),
    out: Path = typer.Option("analysis.json", "--out", help="Output JSON file path"),
    fps: Optional[float] = typer.Option(None, "--fps", help="Target frame rate (default 60 or config value)"),
    adapter: Optional[str] = typer.Option(None, "--adapter", help="Adapter that captured the trace (chromium-cdp, webkit-native)"),
    capability: Optional[List[str]] = typer.Option(None, "--capability", help="Available capability; repeat for several"),
    config: Optional[Path] = typer.Option(None, "--config", help="JSON config file with an 'analysis' section"),
    name: Optional[str] = typer.Option(None, "--name", help="Run name recorded in the summary"),
    trace_format: str = typer.Option("auto", "--format", help="Trace format: auto, json, perfetto or snapshot"),
    top_n: int = typer.Option(10, "--top-n", help="Number of detections to show"),
    workers: Optional[int] = typer.Option(None, "--workers", help="Run detectors on this many threads"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
):
    """Analyze a trace and generate analysis.json."""
    _configure_logging(verbose)

    # Validate trace file exists
    if not trace.exists():
        console.print(f"[red]Error:[/red] Trace file not found: {trace}")
        raise typer.Exit(code=1)

    if not trace.is_file():
        console.print(f"[red]Error:[/red] Path is not a file: {trace}")
        raise typer.Exit(code=1)

    try:
        analysis_config = load_config(config) if config is not None else AnalysisConfig()
        analysis_config = analysis_config.with_overrides(fps_target=fps, max_workers=workers)
        if analysis_config.fps_target <= 0:
            raise ValueError(f"--fps must be positive, got {analysis_config.fps_target}")

        capabilities = None
        if capability:
            capabilities = parse_capabilities(capability)
        elif adapter is not None:
            capabilities = adapter_capabilities(adapter)
    except (RenderAnalyzerError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[blue]Analyzing trace:[/blue] {trace}")
    console.print(f"[blue]Output file:[/blue] {out}")
    console.print(f"[blue]FPS target:[/blue] {analysis_config.fps_target}")
    if capability:
        console.print("[blue]Adapter:[/blue] custom capabilities")
    elif adapter is not None:
        console.print(f"[blue]Adapter:[/blue] {adapter}")
    elif trace_format == "snapshot":
        console.print("[blue]Adapter:[/blue] inferred from snapshot")
    else:
        console.print("[blue]Adapter:[/blue] chromium-cdp (assumed)")
    if capabilities is not None:
        console.print(f"[blue]Capabilities:[/blue] {', '.join(sorted(c.value for c in capabilities))}")

    # Run analysis
    try:
        result = analyze_trace(
            trace_path=str(trace),
            capabilities=capabilities,
            name=name,
            config=analysis_config,
            trace_format=trace_format
        )
    except (RenderAnalyzerError, ValueError) as e:
        console.print(f"[red]Error during analysis:[/red] {e}")
        raise typer.Exit(code=1)

    # Write output
    with open(out, "w") as f:
        json.dump(result, f, indent=2)

    frames = result["summary"]["frames"]
    console.print(
        f"[blue]Frames:[/blue] {frames['total']} total, {frames['dropped']} dropped, "
        f"{frames['avg_fps']} avg FPS"
    )
    _print_detections(result, top_n)
    _print_warnings(result)
    console.print(f"[green]✓[/green] Analysis complete: {out}")


@app.command()
def detectors():
    """List the built-in detectors and the capabilities they require."""
    table = Table(title="Detectors")
    table.add_column("Priority", justify="right")
    table.add_column("Name")
    table.add_column("Requires")
    for detector in create_default_analyzer().get_detectors():
        table.add_row(
            str(detector.priority),
            detector.name,
            ", ".join(sorted(capability.value for capability in detector.required_capabilities)),
        )
    console.print(table)

    for adapter_name, capabilities in ADAPTER_CAPABILITIES.items():
        console.print(f"[blue]{adapter_name}:[/blue] {', '.join(sorted(c.value for c in capabilities))}")


if __name__ == "__main__":
    app()

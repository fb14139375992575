"""
CLI interface for the prompt pipeline.

Runs prompt batches and inspects the job and usage ledgers.
"""

import sys
import uuid
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from prompt_pipeline.config.loader import (
    PipelineConfig,
    default_pipeline_config,
    load_pipeline_config,
)
from prompt_pipeline.core.errors import PipelineError, SecurityVerificationFailed
from prompt_pipeline.core.executor import GenerationExecutor, ToolRegistry
from prompt_pipeline.core.jobs import JobStore
from prompt_pipeline.core.orchestrator import (
    PipelineOrchestrator,
    PipelineRun,
    PromptDescriptor,
    PromptStatus,
    StaticCreditGate,
)
from prompt_pipeline.core.quota import ActorIdentity, QuotaLedger
from prompt_pipeline.core.usage import UsageAccountant
from prompt_pipeline.logging_config import configure_logging
from prompt_pipeline.sdk import GoogleSearchTool, OpenAIModelService
from prompt_pipeline.storage.repository import fetch_usage_records, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_NO_CREDITS = 2

_BATCH_KEYS = {"label", "prompt", "depends_on", "generate_new_prompts"}


def load_batch(path: str) -> List[PromptDescriptor]:
    """Load a prompt batch from YAML.

    The file holds a list of prompts, or a mapping with a ``prompts`` list.
    Each prompt has ``label`` and ``prompt`` and optionally ``depends_on``
    (an index or list of indices of earlier prompts).

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the batch is malformed
    """
    batch_path = Path(path)
    if not batch_path.exists():
        raise FileNotFoundError(f"Batch file not found: {path}")

    with open(batch_path, 'r', encoding='utf-8') as f:
        raw = yaml.safe_load(f)

    if isinstance(raw, dict):
        raw = raw.get("prompts")
    if not isinstance(raw, list):
        raise ValueError("Batch must be a list of prompts")

    prompts = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"Prompt {index} must be a dictionary")
        unknown_keys = set(item.keys()) - _BATCH_KEYS
        if unknown_keys:
            raise ValueError(f"Unknown keys in prompt {index}: {unknown_keys}")
        for key in ("label", "prompt"):
            if not isinstance(item.get(key), str):
                raise ValueError(f"Missing required '{key}' in prompt {index}")

        depends_on = item.get("depends_on")
        if depends_on is None:
            depends_on = []
        elif isinstance(depends_on, int) and not isinstance(depends_on, bool):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(
            isinstance(d, int) and not isinstance(d, bool) for d in depends_on
        ):
            raise ValueError(f"'depends_on' in prompt {index} must be an index or list of indices")

        prompts.append(PromptDescriptor(
            prompt=item["prompt"],
            label=item["label"],
            depends_on=depends_on,
            generate_new_prompts=bool(item.get("generate_new_prompts", False))
        ))
    return prompts


def _load_config(config_path: Optional[str], db_path: Optional[str]) -> PipelineConfig:
    config = load_pipeline_config(config_path) if config_path else default_pipeline_config()
    if db_path:
        config = PipelineConfig(
            db_path=db_path,
            generation=config.generation,
            quotas=config.quotas,
            required_credits=config.required_credits,
            search=config.search
        )
    return config


def build_orchestrator(config: PipelineConfig, available_credits: int) -> PipelineOrchestrator:
    """Wire the pipeline components from configuration."""
    generation = config.generation

    tools = ToolRegistry()
    if config.search.enabled and config.search.credentials_available():
        tools.register(GoogleSearchTool.from_env(
            config.search.api_key_env,
            config.search.cx_env,
            max_results=config.search.max_results
        ))

    executor = GenerationExecutor(
        OpenAIModelService(api_key=generation.api_key(), base_url=generation.base_url),
        tool_registry=tools,
        max_tool_rounds=generation.max_tool_rounds,
        timeout_seconds=generation.timeout_seconds
    )

    return PipelineOrchestrator(
        job_store=JobStore(config.db_path),
        quota_ledger=QuotaLedger(config.db_path),
        executor=executor,
        accountant=UsageAccountant(config.db_path),
        credit_gate=StaticCreditGate(available_credits),
        quota_policies=config.quota_policies(),
        model_config=generation.model_config(),
        required_credits=config.required_credits
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _storage_error(error: PipelineError) -> None:
    if "no such table" in str(error).lower():
        console.print("\n[bold yellow]No pipeline data found[/]")
        console.print("Run `prompt-pipeline init` to initialize the database\n")
        sys.exit(EXIT_CODE_FAIL)
    _fail(str(error))


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Prompt Pipeline CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Prompt Pipeline - Use --help to see available commands")


@app.command()
def init(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Pipeline config YAML"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path")
):
    """Initialize the pipeline database."""
    try:
        config = _load_config(config_path, db_path)
        initialize_schema(config.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _print_progress(run: PipelineRun) -> None:
    outcome = run.outcomes[run.executed_count - 1]
    style = "green" if outcome.status == PromptStatus.COMPLETED else "yellow"
    console.print(
        f"[{style}][{run.executed_count}/{run.total_count}][/] "
        f"{outcome.label}: {outcome.status.value}",
        highlight=False
    )


@app.command()
def run(
    batch_file: str = typer.Argument(..., help="YAML file listing the prompts to run"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Pipeline config YAML"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    user_id: Optional[str] = typer.Option(None, "--user-id", "-u", help="Authenticated user id"),
    ip: Optional[str] = typer.Option(None, "--ip", help="Client IP for anonymous quota"),
    user_agent: Optional[str] = typer.Option(None, "--user-agent", help="Client user agent"),
    session_id: Optional[str] = typer.Option(None, "--session-id", "-s", help="Session id for the jobs"),
    credits: int = typer.Option(1, "--credits", help="Credits available to this batch"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write marked-up output to a file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
):
    """
    Run a batch of prompts in order.

    Prompts whose dependencies failed are skipped. Exits 2 when the batch
    was rejected for lack of credits and 1 when any prompt did not complete.
    """
    configure_logging(verbose)

    try:
        config = _load_config(config_path, db_path)
        prompts = load_batch(batch_file)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))

    if not config.generation.api_key():
        _fail(f"Set {config.generation.api_key_env} to call the model service")

    try:
        initialize_schema(config.db_path)
        orchestrator = build_orchestrator(config, credits)
    except Exception as e:
        _fail(str(e))

    actor = ActorIdentity(user_id=user_id, ip=ip, user_agent=user_agent)
    session_id = session_id or str(uuid.uuid4())

    try:
        with orchestrator:
            result = orchestrator.run(prompts, actor, session_id, on_progress=_print_progress)
    except SecurityVerificationFailed as e:
        console.print(f"[red]Security verification failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    except PipelineError as e:
        _fail(str(e))

    if not result.has_credits:
        console.print("[bold yellow]Insufficient credits[/] - batch was not started")
        sys.exit(EXIT_CODE_NO_CREDITS)

    _display_run(result, session_id)

    if output:
        Path(output).write_text(result.combined_output_with_markers(), encoding="utf-8")
        console.print(f"[green]✓[/] Output written to {output}")
    else:
        console.print(result.combined_output_legacy(), markup=False, highlight=False)

    incomplete = [o for o in result.outcomes if o.status != PromptStatus.COMPLETED]
    sys.exit(EXIT_CODE_FAIL if incomplete else EXIT_CODE_PASS)


def _display_run(result: PipelineRun, session_id: str) -> None:
    table = Table(title=f"Session {session_id}")
    table.add_column("#", justify="right")
    table.add_column("Label")
    table.add_column("Status")
    table.add_column("Request ID")
    table.add_column("Error")

    for outcome in result.outcomes:
        table.add_row(
            str(outcome.index),
            outcome.label,
            outcome.status.value,
            outcome.request_id or "-",
            str(outcome.error) if outcome.error else ""
        )
    console.print(table)


@app.command()
def status(
    request_id: str = typer.Argument(..., help="Request id of the job"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Pipeline config YAML"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path")
):
    """Show the status of a job and its recorded usage."""
    try:
        config = _load_config(config_path, db_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))

    try:
        job = JobStore(config.db_path).get(request_id)
    except PipelineError as e:
        _storage_error(e)

    if job is None:
        _fail(f"Job {request_id} not found")

    console.print(f"\n[bold]Job {job.request_id}[/bold]")
    console.print(f"Status: {job.status.value}")
    if job.label:
        console.print(f"Label: {job.label}")
    if job.model_used:
        console.print(f"Model: {job.model_used}")
    if job.processing_duration_ms is not None:
        console.print(f"Processing time: {job.processing_duration_ms} ms")
    if job.error_message:
        console.print(f"[red]Error ({job.error_kind}):[/] {job.error_message}")

    records = fetch_usage_records(request_id=request_id, db_path=config.db_path)
    if records:
        record = records[0]
        console.print(
            f"Tokens: {record.input_tokens} in / {record.output_tokens} out, "
            f"estimated cost {_format_cost(record.total_cost_estimate)}"
        )
    sys.exit(EXIT_CODE_PASS)


def _format_cost(amount: float) -> str:
    """Format a cost estimate with six decimal places."""
    return f"${amount:,.6f}"


@app.command()
def usage(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Pipeline config YAML"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    user_id: Optional[str] = typer.Option(None, "--user-id", "-u", help="Filter by actor id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show")
):
    """List recent usage records, newest first."""
    try:
        config = _load_config(config_path, db_path)
        records = fetch_usage_records(user_id=user_id, limit=limit, db_path=config.db_path)
    except Exception as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No usage data found[/]")
            console.print("Run `prompt-pipeline init` to initialize the database\n")
            sys.exit(EXIT_CODE_PASS)
        _fail(str(e))

    if not records:
        console.print("\n[dim]No usage recorded yet.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Usage")
    table.add_column("Request ID")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Cost", justify="right")

    for record in records:
        table.add_row(
            record.request_id,
            record.model_used,
            str(record.input_tokens),
            str(record.output_tokens),
            _format_cost(record.total_cost_estimate)
        )
    console.print(table)

    total = round(sum(r.total_cost_estimate for r in records), 6)
    console.print(f"Total estimated cost: {_format_cost(total)}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()

from __future__ import annotations

import asyncio
import json
import signal
import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger
from prometheus_client import start_http_server
from pydantic import ValidationError as PydanticValidationError

from .config import EngineSettings, get_settings
from .coordinator import CredentialPool, CsvResultSink, Orchestrator, ResumeLedger, RunReport
from .coordinator.orchestrator import RunStatus
from .coordinator.progress import ProgressEvent
from .errors import RunAborted
from .keys import CredentialStore, KeysFileError
from .providers import HttpJsonProvider
from .sources import (
    CsvRecordSource,
    SourceError,
    looks_like_email,
    looks_like_linkedin_url,
    open_source,
)

app = typer.Typer(help="Credential-rotating batch enrichment CLI")

EXIT_INTERRUPTED = 3


class InputCheck(str, Enum):
    none = "none"
    linkedin = "linkedin"
    email = "email"


_VALIDATORS = {
    InputCheck.none: None,
    InputCheck.linkedin: looks_like_linkedin_url,
    InputCheck.email: looks_like_email,
}


def _with_overrides(settings: EngineSettings, **overrides) -> EngineSettings:
    update = {k: v for k, v in overrides.items() if v is not None}
    if not update:
        return settings
    try:
        return EngineSettings.model_validate({**settings.model_dump(), **update})
    except PydanticValidationError as e:
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"])
            logger.error(f"Invalid option {field}: {err['msg']}")
        sys.exit(2)


async def _print_status(event: ProgressEvent) -> None:
    typer.echo(json.dumps(event.to_status_line()))


async def _run(
    settings: EngineSettings,
    input_path: Path,
    key_column: str,
    url: str,
    body_field: str,
    fields: List[str],
    auth_header: str,
    verify_url: Optional[str],
    check: InputCheck,
    json_status: bool,
) -> RunReport:
    store = CredentialStore(
        settings.keys_path, settings.resolved_used_keys_path, credit_cap=settings.credit_cap
    )
    pool = CredentialPool(
        store.credentials(),
        backoff=settings.to_backoff_policy(),
        ban_threshold=settings.rate_limit_ban_threshold,
    )
    source = open_source(input_path, key_column, validator=_VALIDATORS[check])
    key_name = source.key_field if isinstance(source, CsvRecordSource) else source.field_name
    sink = CsvResultSink(
        settings.output_path,
        key_column=key_name,
        field_columns=fields,
        resume=settings.resume,
        fsync=settings.fsync,
    )

    async with HttpJsonProvider(
        url,
        body_field=body_field,
        output_fields=fields,
        auth_header=auth_header,
        verify_url=verify_url,
        timeout=settings.call_timeout_s or 30.0,
    ) as provider:
        orchestrator = Orchestrator.from_settings(
            settings,
            source=source,
            provider=provider,
            pool=pool,
            sink=sink,
            credential_store=store,
        )
        if json_status:
            orchestrator.progress.subscribe(_print_status)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, orchestrator.cancel, f"received {sig.name}")
            except NotImplementedError:
                pass  # Windows event loops
        return await orchestrator.run()


@app.command("run")
def run(
    input_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV or TXT input"),
    url: str = typer.Option(..., "--url", envvar="ENRICH_PROVIDER_URL", help="Provider endpoint"),
    key_column: str = typer.Option("key", "--key-column", help="Column holding the record key"),
    body_field: str = typer.Option("key", "--body-field", help="JSON field carrying the key"),
    fields: Optional[List[str]] = typer.Option(
        None, "--field", help="Response field to copy into the output (repeatable)"
    ),
    auth_header: str = typer.Option("x-api-key", "--auth-header"),
    verify_url: Optional[str] = typer.Option(None, "--verify-url", help="Key precheck endpoint"),
    output: Optional[Path] = typer.Option(None, "--output", "-o"),
    keys: Optional[Path] = typer.Option(None, "--keys", help="keys.json path"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries"),
    rps: Optional[float] = typer.Option(None, "--rps", help="Global requests per second"),
    credit_cap: Optional[int] = typer.Option(None, "--credit-cap"),
    resume: Optional[bool] = typer.Option(None, "--resume/--no-resume"),
    precheck: Optional[bool] = typer.Option(None, "--precheck/--no-precheck"),
    stop_flag: Optional[Path] = typer.Option(None, "--stop-flag", help="Soft-stop flag file"),
    check: InputCheck = typer.Option(InputCheck.none, "--check", help="Input key validation"),
    json_status: bool = typer.Option(False, "--json-status", help="Emit JSON status lines"),
    metrics_port: Optional[int] = typer.Option(
        None, "--metrics-port", help="Serve Prometheus metrics on this port"
    ),
):
    """Enrich every record of INPUT_PATH, appending one row per record to the output CSV."""
    settings = _with_overrides(
        get_settings(),
        output_path=output,
        keys_path=keys,
        concurrency=concurrency,
        batch_size=batch_size,
        max_retries=max_retries,
        requests_per_second=rps,
        credit_cap=credit_cap,
        resume=resume,
        precheck_keys=precheck,
        stop_flag_file=stop_flag,
    )
    if metrics_port:
        start_http_server(metrics_port)
        logger.info(f"Prometheus metrics on :{metrics_port}/metrics")
    try:
        report = asyncio.run(
            _run(
                settings,
                input_path,
                key_column,
                url,
                body_field,
                fields or [],
                auth_header,
                verify_url,
                check,
                json_status,
            )
        )
    except (KeysFileError, SourceError) as e:
        logger.error(str(e))
        sys.exit(2)
    except RunAborted as e:
        logger.error(f"Run aborted: {e.report.error}")
        typer.echo(json.dumps({"type": "result", **_report_dict(e.report)}))
        sys.exit(2 if isinstance(e.__cause__, SourceError) else 1)

    typer.echo(json.dumps({"type": "result", **_report_dict(report)}))
    if report.status is RunStatus.INTERRUPTED:
        logger.warning(f"Run interrupted ({report.reason}); rerun to resume")
        sys.exit(EXIT_INTERRUPTED)
    logger.success(
        f"Run complete: {report.metrics.succeeded} succeeded, "
        f"{report.metrics.failed} failed, {report.metrics.skipped} skipped"
    )


def _report_dict(report: RunReport) -> dict:
    return {
        "run_id": report.run_id,
        "status": report.status.value,
        "metrics": report.metrics.to_dict(),
        "credential_usage": report.credential_usage,
        "reason": report.reason,
        "error": report.error,
    }


@app.command("keys")
def keys_status(
    keys: Optional[Path] = typer.Option(None, "--keys", help="keys.json path"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Show per-key usage and status from used_keys.json."""
    settings = _with_overrides(get_settings(), keys_path=keys)
    store = CredentialStore(
        settings.keys_path, settings.resolved_used_keys_path, credit_cap=settings.credit_cap
    )
    try:
        names = [name for name, _ in store.load_keys()]
    except KeysFileError as e:
        logger.error(str(e))
        sys.exit(2)

    usage = store.load_usage()
    rows = []
    for name in names:
        u = usage.get(name)
        rows.append(
            {
                "key": name,
                "status": u.status.value if u else "ACTIVE",
                "used_credits": u.used_credits if u else 0,
                "remaining_credits": u.remaining_credits if u else None,
                "reason": u.reason if u else "",
            }
        )

    if as_json:
        typer.echo(json.dumps(rows, indent=2))
        return
    for r in rows:
        remaining = "-" if r["remaining_credits"] is None else r["remaining_credits"]
        line = f"{r['key']:<12} {r['status']:<10} used={r['used_credits']:<6} remaining={remaining}"
        typer.echo(f"{line} {r['reason']}".rstrip())


@app.command("ledger")
def ledger_status(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Results CSV"),
    ledger_path: Optional[Path] = typer.Option(None, "--ledger"),
):
    """Count keys already completed for an output file."""
    settings = _with_overrides(get_settings(), output_path=output, ledger_path=ledger_path)
    ledger = ResumeLedger(settings.resolved_ledger_path)
    n = ledger.load()
    typer.echo(json.dumps({"ledger": str(ledger.path), "completed": n}))


if __name__ == "__main__":
    app()

#!filepath: bspml/cli.py
import json
import time
import uuid
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich import print
from rich.console import Console
from rich.table import Table

from bspml.config import AppConfig
from bspml.runtime import LocalRuntime, default_store_root
from bspml.scheduler import JobDescriptor, JobStatus, JobStore
from bspml.storage import LocalStorage
from bspml.utils.errors import BSPError, NotFoundError, OperationTimeoutError, ValidationError, exit_code_for
from bspml.utils.logger import logs

app = typer.Typer(help="bspml - BSP job scheduler CLI")
console = Console()

_state: dict = {}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config (default: packaged base.yml)"),
):
    cfg = AppConfig.load(str(config) if config else None)
    logs.configure(cfg.log)
    _state["cfg"] = cfg


def _cfg() -> AppConfig:
    return _state.get("cfg") or AppConfig.load()


def _store() -> JobStore:
    return JobStore(default_store_root(_cfg()))


def _fail(e: BSPError) -> None:
    print(f"[red]{e}[/red]")
    raise typer.Exit(exit_code_for(e))


def _read_descriptor(path: Path) -> dict:
    if not path.exists():
        raise NotFoundError(f"descriptor file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        raw = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError(f"cannot parse {path.name}: {e}") from e
    if not isinstance(raw, dict):
        raise ValidationError(f"{path.name} does not hold a mapping")
    # validate before anything is queued
    return JobDescriptor.parse(raw).model_dump(mode="json", exclude_none=True)


def _show(st: JobStatus) -> None:
    table = Table(title=f"job {st.job_id}", show_header=False)
    table.add_row("kind", st.descriptor.kind)
    table.add_row("state", st.state.value)
    table.add_row("progress", f"{st.progress:.1%}")
    table.add_row("iteration", str(st.current_iteration))
    table.add_row("workers", ",".join(map(str, st.worker_ids)) or "-")
    if st.loss is not None:
        table.add_row("loss", f"{st.loss:.6g}")
    if st.checkpoint_key:
        table.add_row("checkpoint", f"{st.checkpoint_key} (iter {st.checkpoint_iteration})")
    if st.message:
        table.add_row("message", st.message)
    if st.error:
        table.add_row("error", f"[red]{st.error}[/red]")
    if st.result:
        table.add_row("result", json.dumps(st.result, default=str))
    console.print(table)


def _wait_store(store: JobStore, job_id: str, timeout: Optional[float]) -> JobStatus:
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        # absent until the scheduler drains the submit request
        if store.exists(job_id):
            st = store.load(job_id)
            if st.state.terminal:
                return st
        if deadline is not None and time.monotonic() > deadline:
            raise OperationTimeoutError(f"job {job_id} not finished after {timeout}s", job_id=job_id)
        time.sleep(0.2)


# ---------------------------------------------------------
# commands
# ---------------------------------------------------------
@app.command()
def serve(workers: Optional[int] = typer.Option(None, help="number of local workers")):
    """
    Run the scheduler and local workers until Ctrl-C
    """
    runtime = LocalRuntime(_cfg(), num_workers=workers)
    print(f"[green]Serving with {len(runtime.workers)} workers, store={runtime.store.root}[/green]")
    with runtime:
        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            print("[yellow]shutting down[/yellow]")


@app.command()
def submit(
    descriptor_file: Path,
    wait: bool = typer.Option(False, "--wait", help="block until the job is terminal"),
    local: bool = typer.Option(False, "--local", help="run in-process instead of via a serving scheduler"),
    timeout: Optional[float] = typer.Option(None, help="seconds to wait"),
):
    """
    Submit a job descriptor (YAML or JSON)
    """
    try:
        descriptor = _read_descriptor(descriptor_file)
        if local:
            with LocalRuntime(_cfg()) as runtime:
                job_id = runtime.scheduler.submit(descriptor)
                print(job_id)
                st = runtime.scheduler.wait(job_id, timeout)
            _show(st)
            raise typer.Exit(0 if st.state.value == "completed" else 1)

        store = _store()
        job_id = uuid.uuid4().hex[:12]
        store.request("submit", job_id, descriptor)
        print(job_id)
        if wait:
            st = _wait_store(store, job_id, timeout)
            _show(st)
            raise typer.Exit(0 if st.state.value == "completed" else 1)
    except BSPError as e:
        _fail(e)


@app.command()
def status(job_id: str):
    """
    Show one job
    """
    try:
        _show(_store().load(job_id))
    except BSPError as e:
        _fail(e)


def _control(action: str, job_id: str) -> None:
    try:
        store = _store()
        st = store.load(job_id)
        if st.state.terminal:
            print(f"[yellow]job {job_id} already {st.state.value}[/yellow]")
            raise typer.Exit(exit_code_for(ValidationError()))
        store.request(action, job_id)
        print(f"[green]{action} requested for {job_id}[/green]")
    except BSPError as e:
        _fail(e)


@app.command()
def cancel(job_id: str):
    """Cancel a job"""
    _control("cancel", job_id)


@app.command()
def pause(job_id: str):
    """Pause a running job"""
    _control("pause", job_id)


@app.command()
def resume(job_id: str):
    """Resume a paused job"""
    _control("resume", job_id)


@app.command(name="jobs")
def list_jobs():
    """
    List known jobs
    """
    table = Table(title="jobs")
    for col in ("job_id", "kind", "state", "progress", "workers"):
        table.add_column(col)
    for st in _store().list():
        table.add_row(
            st.job_id, st.descriptor.kind, st.state.value, f"{st.progress:.0%}",
            ",".join(map(str, st.worker_ids)) or "-",
        )
    console.print(table)


@app.command()
def workers():
    """
    Worker registry snapshot
    """
    table = Table(title="workers")
    for col in ("id", "host", "available", "jobs", "cpu%", "mem%", "net%", "heartbeat age"):
        table.add_column(col)
    for w in _store().load_workers():
        table.add_row(
            str(w["worker_id"]), w["host"], "yes" if w["available"] else "[red]no[/red]",
            ",".join(w["assigned_jobs"]) or "-",
            f"{w['cpu']:.1f}", f"{w['mem']:.1f}", f"{w['net']:.1f}", f"{w['heartbeat_age']:.1f}s",
        )
    console.print(table)


@app.command()
def metrics():
    """
    Scheduler metrics snapshot
    """
    table = Table(title="scheduler metrics", show_header=False)
    for key, value in _store().load_metrics().items():
        table.add_row(key, f"{value:.3f}" if isinstance(value, float) else str(value))
    console.print(table)


@app.command(name="import")
def import_table(
    key: str,
    path: Path,
    label: Optional[str] = typer.Option(None, help="label column"),
):
    """
    Import a CSV / Parquet table as a dataset
    """
    try:
        rows, cols = LocalStorage(_cfg().storage).import_table(key, path, label_column=label)
        print(f"[green]{key}: {rows} x {cols}[/green]")
    except BSPError as e:
        _fail(e)


if __name__ == "__main__":
    app()

# python -m bspml.cli submit job.yml --local

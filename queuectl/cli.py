import json
import os
import signal
from dataclasses import dataclass

import click

from .config import BACKENDS, RECOGNIZED_CONFIG_KEYS, Settings, load_settings, validate_config_value
from .db import open_store
from .errors import QueueError
from .locks import FileLockCoordinator, WorkerRegistry
from .models import JOB_STATES
from .repository import Queue
from .utils import configure_logging
from .worker import WorkerManager


@dataclass
class App:
    settings: Settings
    queue: Queue

    @property
    def locks(self) -> FileLockCoordinator:
        return FileLockCoordinator(self.settings.lock_dir)

    @property
    def registry(self) -> WorkerRegistry:
        return WorkerRegistry(self.settings.workers_dir)


def _fail(e):
    click.secho(f"Error: {e}", fg="red", err=True)
    raise SystemExit(1)


@click.group(help="queuectl: background job queue CLI")
@click.option("--home", envvar="QUEUECTL_HOME", default=None,
              help="Directory holding the queue store and lock files [default: ./data]")
@click.option("--backend", envvar="QUEUECTL_BACKEND", type=click.Choice(BACKENDS), default=None,
              help="Persistence backend [default: sqlite]")
@click.option("--queue", "queue_name", envvar="QUEUECTL_QUEUE", default=None,
              help="Queue name [default: default]")
@click.option("-v", "--verbose", count=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, home, backend, queue_name, verbose):
    configure_logging(verbose)
    try:
        settings = load_settings(home=home, backend=backend, queue_name=queue_name)
        ctx.obj = App(settings=settings, queue=Queue(open_store(settings)))
    except (ValueError, QueueError) as e:
        _fail(e)


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job to the queue")
@click.argument("job_json", required=False)
@click.option("--id", "job_id", default=None, help="Job ID (generated if omitted)")
@click.option("--cmd", "command", default=None, help="Command to execute")
@click.option("--max-retries", default=None, type=int, help="Override max retry count")
@click.pass_obj
def enqueue_cmd(app, job_json, job_id, command, max_retries):
    spec = {}
    if job_json:
        try:
            spec = json.loads(job_json)
        except ValueError as e:
            _fail(f"Invalid job JSON: {e}")
        if not isinstance(spec, dict):
            _fail("Job JSON must be an object.")
    if job_id is not None:
        spec["id"] = job_id
    if command is not None:
        spec["command"] = command
    if max_retries is not None:
        spec["max_retries"] = max_retries

    try:
        job = app.queue.enqueue(spec)
    except QueueError as e:
        _fail(e)
    click.secho(f"Enqueued {job.id} -> `{job.command}` (max_retries={job.max_retries})", fg="green")


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--poll-interval", type=float, default=1.0, show_default=True,
              help="Seconds to wait when no job is pending")
@click.option("--grace-period", type=float, default=30.0, show_default=True,
              help="Seconds to wait for running jobs on shutdown")
@click.pass_obj
def worker_start(app, count, poll_interval, grace_period):
    if count < 1:
        _fail("--count must be >= 1")
    manager = WorkerManager(
        app.queue,
        app.locks,
        registry=app.registry,
        poll_interval=poll_interval,
        grace_period=grace_period,
    )
    manager.install_signal_handlers()
    try:
        manager.start_workers(count)
    except QueueError as e:
        _fail(e)
    click.secho(f"Started {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    try:
        manager.wait()
    finally:
        # threads left running past the grace period die with the process
        app.registry.unregister()
    click.secho("Workers stopped.", fg="yellow")


@worker_group.command("stop", help="Ask running worker processes to shut down gracefully")
@click.pass_obj
def worker_stop(app):
    pids = [pid for pid in app.registry.pids() if pid != os.getpid()]
    if not pids:
        click.echo("No running workers.")
        return
    for pid in pids:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        click.secho(f"Sent SIGTERM to worker process {pid}.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice(("all",) + JOB_STATES), default="all", show_default=True)
@click.pass_obj
def list_cmd(app, state):
    jobs = app.queue.list_dlq() if state == "dead" else app.queue.list_jobs(state)
    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id:>20} | {j.state:<10} | attempts={j.attempts}/{j.max_retries} "
            f"| created={j.created_at} | cmd={j.command} | last_error={j.error_message}"
        )


@cli.command("status")
@click.pass_obj
def status_cmd(app):
    status = app.queue.status(active_workers=app.registry.active_count())
    out = status.to_dict()
    out["locks"] = app.locks.held()
    click.echo(json.dumps(out, indent=2))


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
@click.pass_obj
def dlq_list_cmd(app):
    jobs = app.queue.list_dlq()
    if not jobs:
        click.echo("DLQ is empty.")
        return

    for j in jobs:
        click.echo(
            f"{j.id} | attempts={j.attempts}/{j.max_retries} | failed_at={j.updated_at} "
            f"| last_error={j.error_message} | cmd={j.command}"
        )


@dlq_group.command("retry")
@click.argument("job_id")
@click.pass_obj
def dlq_retry_cmd(app, job_id):
    try:
        job = app.queue.retry_from_dlq(job_id)
    except QueueError as e:
        _fail(e)
    click.secho(f"Re-queued DLQ job {job.id}.", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(app):
    click.echo(json.dumps(app.queue.get_config(), indent=2))


@config_group.command(
    "set",
    context_settings={"ignore_unknown_options": True},
    help=f"Set KEY to VALUE (known keys: {', '.join(sorted(RECOGNIZED_CONFIG_KEYS))})",
)
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(app, key, value):
    try:
        value = validate_config_value(key, value)
        app.queue.set_config(key, value)
    except (ValueError, QueueError) as e:
        _fail(e)
    click.secho(f"Config updated: {key}={value}", fg="green")


def main():
    cli()

"""Run payload files through a worker pool."""

import logging
from functools import partial
from pathlib import Path

import click

from jobpool.cli.commands.shared import LOG_LEVELS, setup_logging
from jobpool.infrastructure.config import get_config
from jobpool.infrastructure.errors import JobPoolError
from jobpool.infrastructure.loop import new_loop
from jobpool.infrastructure.payload_store import SqlitePayloadStore, create_payload_store
from jobpool.infrastructure.workers.outcome import Outcome
from jobpool.infrastructure.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


@click.command()
@click.argument(
    "payload_files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--queue", "queue_name", help="Queue the jobs belong to.")
@click.option("--prefork-size", type=int, help="Number of idle workers to keep warm.")
@click.option(
    "--output-results/--quiet",
    default=None,
    help="Forward worker output to this terminal.",
)
@click.option(
    "--async/--sync",
    "async_mode",
    default=None,
    help="In async mode, worker output is not kept for failure reports.",
)
@click.option("--command", "command", help="Worker command line.")
@click.option("--module", "worker_module", help="Python module to run as worker.")
@click.option(
    "--db-path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="SQLite database used to hand payloads to the workers.",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    help="Kill all workers after this many seconds.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Set the logging level.",
)
@click.option("--console-logging", is_flag=True, help="Also log to the console.")
@click.pass_context
def run(
    ctx,
    payload_files,
    queue_name,
    prefork_size,
    output_results,
    async_mode,
    command,
    worker_module,
    db_path,
    timeout,
    log_level,
    console_logging,
):
    """Dispatch each payload file to its own worker process.

    Every file's content is handed to a worker as one job. The command waits
    until all workers have exited and exits with status 1 if any job failed.

    Examples:
        jobpool run --queue=mail --module=my_app.worker job1.bin job2.bin
        jobpool run --queue=mail --command="php flow job:execute" --sync job.bin
    """
    cfg = get_config()
    setup_logging(
        log_level or cfg.logging.log_level,
        console_logging=console_logging or cfg.logging.console_logging,
    )

    overrides = {
        "queue_name": queue_name,
        "prefork_size": prefork_size,
        "output_results": output_results,
        "async_mode": async_mode,
        "command": command,
        "worker_module": worker_module,
    }
    settings = cfg.pool.model_copy(
        update={key: value for key, value in overrides.items() if value is not None}
    )
    store_config = cfg.payload_store
    if db_path is not None:
        store_config = store_config.model_copy(update={"backend": "sqlite", "db_path": str(db_path)})

    payload_store = create_payload_store(store_config)
    loop = new_loop()
    results: dict[int, Outcome] = {}
    timed_out = False
    pool: WorkerPool | None = None

    def record_outcome(index: int, outcome: Outcome) -> None:
        results[index] = outcome
        if len(results) == len(payload_files):
            loop.stop()

    def on_timeout() -> None:
        nonlocal timed_out
        timed_out = True
        logger.warning(f"Timeout after {timeout}s, killing workers")
        assert pool is not None
        pool.shutdown(sweep_payloads=True)
        loop.stop()

    try:
        pool = WorkerPool.create(
            queue_name=settings.queue_name,
            output_results=settings.output_results,
            async_mode=settings.async_mode,
            prefork_size=settings.prefork_size,
            command=settings.command,
            loop=loop,
            payload_store=payload_store,
            invocation=settings.worker_invocation(),
            poll_interval=settings.poll_interval,
        )
        for index, path in enumerate(payload_files):
            handle = pool.dispatch(path.read_bytes())
            handle.on_outcome(partial(record_outcome, index))
    except JobPoolError as e:
        if pool is not None:
            pool.shutdown()
        loop.close()
        if isinstance(payload_store, SqlitePayloadStore):
            payload_store.close()
        raise click.ClickException(str(e)) from e

    try:
        if timeout is not None:
            loop.call_later(timeout, on_timeout)
        pool.run_loop()
    finally:
        pool.shutdown()
        loop.close()
        if isinstance(payload_store, SqlitePayloadStore):
            payload_store.close()

    failed = 0
    for index, path in enumerate(payload_files):
        outcome = results.get(index)
        if outcome is None:
            failed += 1
            click.echo(f"TIMEOUT {path}")
        elif outcome.ok:
            click.echo(f"OK      {path}")
        else:
            failed += 1
            click.echo(f"FAILED  {path} (exit code {outcome.exit_code})")
            diagnostic = outcome.read_diagnostic().decode("utf-8", errors="replace").rstrip()
            for line in diagnostic.splitlines():
                click.echo(f"        {line}")

    succeeded = len(payload_files) - failed
    click.echo(f"\n{succeeded} succeeded, {failed} failed" + (" (timed out)" if timed_out else ""))
    if failed:
        ctx.exit(1)

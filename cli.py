# cli.py
import json
import logging
import threading
import time

import click

from broker import HttpBroker
from config import StreamConfig, WorkerConfig
from errors import ExecQError
from models import JOB_STATES
from storage import Storage


@click.group()
@click.option("--db", "db_path", default="queue.db", envvar="EXECQ_DB", show_default=True, help="SQLite database path")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    """execq - signal execution queue"""
    logging.basicConfig(level=log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    db = Storage(db_path)
    ctx.obj = db
    ctx.call_on_close(db.close)


# ---------------- Enqueue ----------------
@cli.command()
@click.option("--id", "job_id", default=None, help="Job ID (generated if omitted)")
@click.option("--signal", "signal_json", default=None, help="Embedded signal payload as JSON")
@click.option("--signal-id", default=None, help="ID of a stored signal")
@click.pass_obj
def enqueue(db, job_id, signal_json, signal_id):
    """Add a new execution job to the queue"""
    signal = None
    if signal_json is not None:
        try:
            signal = json.loads(signal_json)
        except ValueError as e:
            click.echo(f"❌ Invalid --signal JSON: {e}")
            return

    try:
        job = db.enqueue_job(signal=signal, signal_id=signal_id, job_id=job_id)
    except ExecQError as e:
        click.echo(f"❌ Failed to enqueue job: {e}")
        return
    click.echo(f"✅ Job {job.id} enqueued.")


@cli.command("add-signal")
@click.option("--id", "signal_id", default=None, help="Signal ID (generated if omitted)")
@click.argument("payload")
@click.pass_obj
def add_signal(db, signal_id, payload):
    """Store a signal payload that jobs can reference by ID"""
    try:
        data = json.loads(payload)
    except ValueError as e:
        click.echo(f"❌ Invalid payload JSON: {e}")
        return
    signal_id = db.add_signal(data, signal_id=signal_id)
    click.echo(f"✅ Signal {signal_id} stored.")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", default=None, type=click.Choice(JOB_STATES), help="Filter jobs by status")
@click.option("--limit", default=None, type=int, help="Maximum number of jobs to show")
@click.pass_obj
def list_jobs(db, status, limit):
    """List jobs in the queue"""
    jobs = db.list_jobs(status=status, limit=limit)
    if not jobs:
        click.echo("No jobs found.")
        return

    for job in jobs:
        source = f"signal_id={job.signal_id}" if job.signal_id else f"signal={json.dumps(job.signal)}"
        error = f" | error={job.last_error}" if job.last_error else ""
        click.echo(f"{job.id} | {source} | status={job.status} | attempt={job.attempt} | claimed_at={job.claimed_at or '-'}{error}")


# ---------------- Status ----------------
@cli.command()
@click.pass_obj
def status(db):
    """Show summary of job states"""
    counts = db.count_by_status()
    if not counts:
        click.echo("No jobs in the system yet.")
        return

    click.echo("📊 Job Status Summary:")
    for state in JOB_STATES:
        if state in counts:
            click.echo(f"  {state}: {counts[state]}")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def show(db, job_id):
    """Show details of a single job"""
    job = db.get_job(job_id)
    if not job:
        click.echo(f"❌ Job {job_id} not found.")
        return

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Signal ID: {job.signal_id or '-'}")
    click.echo(f"  Signal: {json.dumps(job.signal) if job.signal is not None else '-'}")
    click.echo(f"  Status: {job.status}")
    click.echo(f"  Attempt: {job.attempt}")
    click.echo(f"  Claimed at: {job.claimed_at or '-'}")
    click.echo(f"  Created: {job.created_at}")
    click.echo(f"  Finished: {job.finished_at or '-'}")
    click.echo(f"  Error: {job.last_error or '-'}")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def resubmit(db, job_id):
    """Queue a new job for the signal of a completed or failed job"""
    try:
        job = db.resubmit_job(job_id)
    except ExecQError as e:
        click.echo(f"❌ {e}")
        return
    click.echo(f"♻️ Job {job_id} resubmitted as {job.id}.")


# ---------------- Worker ----------------
@cli.command()
@click.option("--executor-url", required=True, envvar="EXECQ_EXECUTOR_URL", help="Order executor endpoint")
@click.option("--executor-token", default=None, envvar="EXECQ_EXECUTOR_TOKEN", help="Bearer token for the executor")
@click.option("--count", default=1, show_default=True, help="Number of worker pools to start")
@click.option("--batch-limit", default=None, type=int, help="Jobs claimed per cycle (uses config if set)")
@click.option("--max-parallel", default=None, type=int, help="Concurrent executor calls (uses config if set)")
@click.option("--visibility-timeout", default=None, type=float, help="Seconds before a claim is considered stale (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval in seconds (uses config if set)")
@click.option("--max-attempts", default=None, type=int, help="Fail stale jobs after this many claims (uses config if set)")
@click.option("--once", is_flag=True, help="Run a single cycle and print its summary")
@click.pass_obj
def worker(db, executor_url, executor_token, count, batch_limit, max_parallel,
           visibility_timeout, poll_interval, max_attempts, once):
    """Start worker pools that execute queued signals"""
    from worker import WorkerPool

    config = WorkerConfig.from_storage(
        db,
        batch_limit=batch_limit,
        max_parallel=max_parallel,
        visibility_timeout=visibility_timeout,
        poll_interval=poll_interval,
        max_attempts=max_attempts,
    )
    broker = HttpBroker(executor_url, token=executor_token)

    if once:
        result = WorkerPool(db, broker, config=config).run_cycle()
        click.echo(json.dumps(result.to_dict()))
        return

    stop_event = threading.Event()
    pools = []

    for i in range(count):
        pool = WorkerPool(db, broker, config=config, worker_id=f"worker-{i+1}", stop_event=stop_event)
        t = threading.Thread(target=pool.run, name=f"worker-thread-{i+1}", daemon=True)
        pools.append((pool, t))
        click.echo(f"🚀 Starting {pool.worker_id} (batch={config.batch_limit}, parallel={config.max_parallel}, "
                   f"visibility={config.visibility_timeout}s, poll={config.poll_interval}s)")
        t.start()

    click.echo("Press Ctrl+C to stop workers gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping workers ...")
        stop_event.set()
        for _, t in pools:
            t.join(timeout=30.0)
        click.echo("✅ Workers stopped cleanly.")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Recovery tools for stuck jobs"""
    pass


@rescue.command("stale")
@click.option("--older-than-seconds", default=None, type=float, help="Reclaim claims older than N seconds (defaults to visibility_timeout)")
@click.pass_obj
def rescue_stale(db, older_than_seconds):
    """Return stale claimed jobs to pending"""
    if older_than_seconds is None:
        older_than_seconds = WorkerConfig.from_storage(db).visibility_timeout
    count = db.reclaim_stale(older_than_seconds)
    if not count:
        click.echo("No stale claims found.")
        return
    click.echo(f"🔧 Returned {count} job(s) to pending.")


# ---------------- Events ----------------
@cli.command()
@click.option("--limit", default=20, show_default=True, help="Number of events to show")
@click.option("--stage", default=None, help="Filter by stage (batch_done, job_error, requeue_error, fatal)")
@click.pass_obj
def events(db, limit, stage):
    """Show recent pipeline events"""
    rows = db.recent_events(limit=limit, stage=stage)
    if not rows:
        click.echo("No events recorded.")
        return
    for row in rows:
        click.echo(f"{row['created_at']} | {row['fn']} | {row['stage']} | {json.dumps(row['payload'])}")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for workers"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(db, key, value):
    """Set a config key to a value"""
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_obj
def config_get(db, key, default):
    """Get a config key"""
    value = db.get_config(key)
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_obj
def config_list(db):
    """List all config keys"""
    rows = db.list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Streaming ----------------
@cli.command()
@click.option("--kind", required=True, help="Stream kind, e.g. public-linear or private-account")
@click.option("--topic", "topics", multiple=True, help="Topic to subscribe (repeatable)")
@click.option("--network", default="main", type=click.Choice(["main", "test"]), show_default=True)
@click.option("--api-key", default=None, envvar="BYBIT_API_KEY", help="API key for private streams")
@click.option("--api-secret", default=None, envvar="BYBIT_API_SECRET", help="API secret for private streams")
@click.option("--max-active-time", default=None, help="Idle cut-off for private streams, e.g. 60s")
def stream(kind, topics, network, api_key, api_secret, max_active_time):
    """Print live stream messages until Ctrl+C"""
    from streaming import STREAM_KINDS, StreamClient

    if kind not in STREAM_KINDS:
        click.echo(f"❌ Unknown stream kind {kind}. Choose from: {', '.join(STREAM_KINDS)}")
        return

    stream_config = StreamConfig(network=network, api_key=api_key, api_secret=api_secret,
                                 max_active_time=max_active_time)
    try:
        client = StreamClient(
            kind,
            stream_config,
            topics=topics,
            on_message=lambda msg: click.echo(json.dumps(msg)),
            on_error=lambda err: click.echo(f"⚠️ {err}", err=True),
        )
    except ExecQError as e:
        click.echo(f"❌ {e}")
        return

    client.connect()
    click.echo(f"📡 Streaming {kind} ({network}). Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        client.disconnect()
        click.echo("\n✅ Stream closed.")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()

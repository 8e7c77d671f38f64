# stockbridge/cli.py
# Commands (FLASK_APP=stockbridge):
# - flask sync init-db
#   Create the ledger, stock mirror and sync run tables.
# - flask sync run [--interval 300]
#   One bidirectional pass, or a pass every N seconds until SIGINT/SIGTERM.
# - flask sync seed-stock [--overwrite]
#   Pull the store catalog into the stock mirror.
import json
import signal
import threading

import click
from flask.cli import AppGroup

from .config import load_settings
from .db import SessionLocal, init_db
from .errors import ConfigurationError, SyncInProgressError
from .services.stock import seed_stock_mirror
from .services.sync import build_context, run_sync

sync_cli = AppGroup("sync", help="Store/POS stock reconciliation.")


@sync_cli.command("init-db")
def init_db_command():
    init_db()
    click.echo("Tables created.")


@sync_cli.command("run")
@click.option("--interval", type=int, default=0, help="Repeat every N seconds (0 = run once).")
def run_command(interval):
    cancel = threading.Event()
    if interval:
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, lambda *_: cancel.set())

    while True:
        session = SessionLocal()
        try:
            ctx = build_context(load_settings(), session)
            result = run_sync(ctx, cancel_event=cancel)
            click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        except ConfigurationError as e:
            raise click.ClickException(str(e))
        except SyncInProgressError as e:
            click.echo(f"Skipped: {e}", err=True)
        finally:
            session.close()
        if not interval or cancel.wait(interval):
            break


@sync_cli.command("seed-stock")
@click.option("--overwrite", is_flag=True, help="Replace existing mirror quantities.")
def seed_stock_command(overwrite):
    session = SessionLocal()
    try:
        ctx = build_context(load_settings(), session)
        counts = seed_stock_mirror(ctx, overwrite=overwrite)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    finally:
        session.close()
    click.echo(json.dumps(counts))

"""Command line entry point for pgtop."""

import argparse
import logging
import os
import sys
import time

from psycopg.conninfo import conninfo_to_dict, make_conninfo

from pgtop import logging_setup
from pgtop.app import PgTopApp
from pgtop.appstate import AppState
from pgtop.config import REFRESH_RANGE, AppConfig
from pgtop.queries import DatabaseError, PostgresSource
from pgtop.recorder import Recorder, RecordingError, cleanup_old
from pgtop.replay import ReplayLoadError, ReplayLoop
from pgtop.runtime import ReplayOnlyLoop, RuntimeLoop
from pgtop.state import ConnectionInfo
from pgtop.worker import DatabaseWorker

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LENGTH = 120
SSL_MODES = ("disable", "allow", "prefer", "require", "verify-ca", "verify-full")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pgtop", description="Terminal dashboard for a live PostgreSQL server")
    parser.add_argument(
        "-c",
        "--connection",
        default=os.environ.get("PGTOP_CONNECTION"),
        help="libpq connection string or URI (overrides the individual options). Env: PGTOP_CONNECTION",
    )
    parser.add_argument("-H", "--host", default=os.environ.get("PGHOST", "localhost"), help="Server host")
    parser.add_argument("-p", "--port", type=int, default=int(os.environ.get("PGPORT", "5432")), help="Server port")
    parser.add_argument("-d", "--dbname", default=os.environ.get("PGDATABASE", "postgres"), help="Database name")
    parser.add_argument("-U", "--user", default=os.environ.get("PGUSER", "postgres"), help="Database user")
    parser.add_argument("-W", "--password", default=os.environ.get("PGPASSWORD"), help="Password. Env: PGPASSWORD")
    parser.add_argument("--sslmode", choices=SSL_MODES, default=os.environ.get("PGSSLMODE"), help="libpq sslmode")
    parser.add_argument(
        "-r",
        "--refresh",
        type=int,
        default=None,
        help=f"Refresh interval in seconds ({REFRESH_RANGE[0]}-{REFRESH_RANGE[1]}, default: from config)",
    )
    parser.add_argument(
        "--history-length",
        type=int,
        default=DEFAULT_HISTORY_LENGTH,
        help=f"Data points kept for sparklines (default: {DEFAULT_HISTORY_LENGTH})",
    )
    parser.add_argument("--replay", default=None, help="Replay a recorded session instead of connecting")
    parser.add_argument("--no-record", action="store_true", help="Do not record this session")
    parser.add_argument("--log-level", default=None, help="Log level (default: PGTOP_LOG_LEVEL or INFO)")
    return parser


def connection_params(args: argparse.Namespace) -> tuple[str, ConnectionInfo]:
    """The libpq conninfo string plus what the header should show for it."""
    if args.connection:
        conninfo = args.connection
        params = conninfo_to_dict(conninfo)
    else:
        params = {
            "host": args.host,
            "port": args.port,
            "dbname": args.dbname,
            "user": args.user,
            "password": args.password,
            "sslmode": args.sslmode,
        }
        conninfo = make_conninfo(**{k: v for k, v in params.items() if v is not None})
    info = ConnectionInfo(
        host=str(params.get("host") or args.host),
        port=int(params.get("port") or args.port),
        dbname=str(params.get("dbname") or args.dbname),
        user=str(params.get("user") or args.user),
        ssl_mode=params.get("sslmode"),
    )
    return conninfo, info


def run_replay(path: str, config: AppConfig) -> int:
    try:
        replay = ReplayLoop.open(path, config, time.monotonic())
    except ReplayLoadError as e:
        print(f"pgtop: cannot replay {path}: {e}", file=sys.stderr)
        return 1
    PgTopApp(ReplayOnlyLoop(replay)).run()
    return 0


def start_recorder(config: AppConfig, connection: ConnectionInfo, server_info) -> Recorder | None:
    """Expire old recordings and open a new one; recording problems never stop monitoring."""
    dest = config.recordings_path()
    try:
        cleanup_old(config.recording_retention_secs, dest)
        return Recorder.create(
            connection.host, connection.port, connection.dbname, connection.user, server_info, dest
        )
    except (RecordingError, OSError) as e:
        logger.warning("Recording disabled: %s", e)
        return None


def main(argv: list[str] | None = None) -> int:
    """Entry point for pgtop application."""
    args = build_parser().parse_args(argv)
    log_runtime = logging_setup.configure(args.log_level)
    logger.info("logging configured level=%s file=%s", log_runtime.level_name, log_runtime.file_path)

    config = AppConfig.load()
    if args.replay:
        return run_replay(args.replay, config)

    conninfo, connection = connection_params(args)
    try:
        source = PostgresSource(conninfo)
    except DatabaseError as e:
        print(f"pgtop: cannot connect to {connection.host}:{connection.port}: {e.cause}", file=sys.stderr)
        return 1
    try:
        server_info = source.fetch_server_info()
    except DatabaseError as e:
        source.close()
        print(f"pgtop: {e}", file=sys.stderr)
        return 1

    refresh = args.refresh if args.refresh is not None else config.refresh_interval_secs
    refresh = max(REFRESH_RANGE[0], min(REFRESH_RANGE[1], refresh))
    recorder = None if args.no_record else start_recorder(config, connection, server_info)

    worker = DatabaseWorker(source)
    worker.start()
    state = AppState(connection, refresh, max(1, args.history_length), config, server_info)
    runtime = RuntimeLoop(state, worker, recorder)
    try:
        PgTopApp(runtime).run()
    finally:
        worker.stop()
        if recorder is not None:
            recorder.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Partscan CLI — subcommands for inventorying partition functions and scaffolding config.

Part of the Partscan SQL Server inventory tool. Licensed under MIT.
"""

import argparse
import getpass
import logging
import os
import sys
import textwrap
from pathlib import Path

import yaml

from . import __version__
from .engine import (
    DEFAULT_DRIVER,
    ConnectionManager,
    Credential,
    PartitionFunctionRecord,
    SqlConnectionError,
    get_partition_functions,
    resolve_env_vars,
)
from .reports import (
    format_csv,
    format_json,
    format_table,
    generate_csv_report,
    generate_html_report,
    generate_json_report,
    select_columns,
)

PASSWORD_ENV_VAR = "PARTSCAN_PASSWORD"


# ---------------------------------------------------------------------------
# Cross-platform console safety
# ---------------------------------------------------------------------------

def _safe_symbol(symbol: str, fallback: str) -> str:
    """Return the symbol if the console can render it, otherwise a fallback."""
    try:
        symbol.encode(sys.stdout.encoding or "utf-8")
        return symbol
    except (UnicodeEncodeError, LookupError):
        return fallback


ICON_OK = _safe_symbol("✅", "[OK]")
ICON_WARN = _safe_symbol("⚠️", "[!]")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logging(verbose: bool = False) -> logging.Logger:
    # stdout carries the inventory itself, so log lines go to stderr
    logger = logging.getLogger("partscan")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for old in list(logger.handlers):
        logger.removeHandler(old)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-5s %(message)s", "%H:%M:%S")
    )
    logger.addHandler(handler)
    return logger


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

def read_instances(values, stdin=None):
    """Yield instance identifiers; "-" streams them from stdin, one per line."""
    for value in values:
        if value != "-":
            yield value
            continue
        for line in stdin if stdin is not None else sys.stdin:
            line = line.strip()
            if line and not line.startswith("#"):
                yield line


def split_names(values: list[str] | None) -> list[str] | None:
    """Flatten repeated and comma-separated name options."""
    if not values:
        return None
    names = [n.strip() for v in values for n in v.split(",") if n.strip()]
    return names or None


def load_connections(path: str | None, logger: logging.Logger) -> dict:
    if not path:
        return {}
    conn_path = Path(path)
    if not conn_path.exists():
        logger.warning(f"Connections file not found: {conn_path}")
        return {}
    raw = yaml.safe_load(conn_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{conn_path} must map connection names to settings")
    shared = resolve_env_vars(raw)
    logger.info(f"Loaded {len(shared)} shared connection(s)")
    return shared


def resolve_credential(username: str | None, password: str | None) -> Credential | None:
    if not username:
        return None
    if password is None:
        password = os.environ.get(PASSWORD_ENV_VAR)
    if password is None:
        password = getpass.getpass(f"Password for {username}: ")
    return Credential(username=username, password=password)


class _RecordingConnector:
    """Wraps a connector and remembers which instances failed to connect."""

    def __init__(self, connector):
        self.connector = connector
        self.failed: list[str] = []

    def connect(self, instance, credential=None):
        try:
            return self.connector.connect(instance, credential)
        except SqlConnectionError as e:
            self.failed.append(e.instance)
            raise


# ---------------------------------------------------------------------------
# partscan functions
# ---------------------------------------------------------------------------

def collect(args, connector, logger: logging.Logger) -> tuple[list[PartitionFunctionRecord], list[str]]:
    """Run the inventory for the parsed arguments; return (records, failed instances)."""
    recorder = _RecordingConnector(connector)
    instances = read_instances(args.instances)
    options = dict(
        credential=args.credential,
        databases=split_names(args.database),
        exclude_databases=split_names(args.exclude_database),
        partition_functions=split_names(args.partition_function),
        logger=logger,
    )

    records: list[PartitionFunctionRecord] = []
    if args.strict:
        # one instance at a time so a failure stops only that instance
        for instance in instances:
            try:
                records.extend(
                    get_partition_functions([instance], recorder, strict=True, **options)
                )
            except SqlConnectionError as e:
                logger.error(str(e))
    else:
        records.extend(get_partition_functions(instances, recorder, **options))

    return records, recorder.failed


def cmd_functions(args):
    """Inventory partition functions and print or write them."""
    logger = setup_logging(args.verbose)

    try:
        shared_connections = load_connections(args.connections, logger)
    except (ValueError, yaml.YAMLError) as e:
        logger.error(f"Failed to load connections: {e}")
        sys.exit(1)

    conn_mgr = ConnectionManager(shared_connections, driver=args.driver, timeout=args.timeout)

    if not args.instances:
        args.instances = conn_mgr.names
    if not args.instances:
        logger.error("No instances given and no connections defined")
        sys.exit(1)

    args.credential = resolve_credential(args.username, args.password)

    try:
        records, failed = collect(args, conn_mgr, logger)
    finally:
        conn_mgr.close_all()

    rows = select_columns(records, all_columns=args.all_columns)

    if rows:
        if args.format == "json":
            print(format_json(rows))
        elif args.format == "csv":
            print(format_csv(rows), end="")
        else:
            print(format_table(rows))

    logger.info(
        f"Found {len(rows)} partition function(s); {len(failed)} instance(s) unreachable"
    )

    if args.report:
        generate_html_report(rows, Path(args.report), failed)
        logger.info(f"HTML report: {args.report}")

    if args.json_report:
        generate_json_report(rows, Path(args.json_report), failed)
        logger.info(f"JSON report: {args.json_report}")

    if args.csv_report:
        generate_csv_report(rows, Path(args.csv_report))
        logger.info(f"CSV report: {args.csv_report}")

    sys.exit(1 if args.strict and failed else 0)


# ---------------------------------------------------------------------------
# partscan init
# ---------------------------------------------------------------------------

INIT_CONNECTIONS = textwrap.dedent("""\
    # Partscan connections
    # ====================
    # Define the SQL Server instances to inventory here.
    # Use ${ENV_VAR} or ${ENV_VAR:default} for secrets.
    #
    # Scan all of them:
    #   partscan functions -c connections.yaml
    # or pick some by name:
    #   partscan functions -c connections.yaml prod_sales

    prod_sales:
      server: localhost
      trusted_connection: true
      # driver: "ODBC Driver 18 for SQL Server"

    # Example with SQL auth and a named instance:
    # reporting:
    #   server: sql-report.example.com\\REPORTING
    #   username: ${SQL_USER}
    #   password: ${SQL_PASSWORD}
    #   trusted_connection: false
""")

INIT_GITIGNORE = textwrap.dedent("""\
    # Reports
    *.html
    *.json
    *.csv

    # Don't commit connections with real credentials
    # (uncomment if your connections.yaml contains secrets)
    # connections.yaml
""")


def cmd_init(args):
    """Scaffold a connections file for a new inventory workspace."""
    target = Path(args.directory)
    conn_file = target / "connections.yaml"

    if conn_file.exists():
        print(f"{ICON_WARN}  {conn_file} already exists. Aborting.")
        sys.exit(1)

    target.mkdir(parents=True, exist_ok=True)
    conn_file.write_text(INIT_CONNECTIONS, encoding="utf-8")
    print(f"  Created {conn_file}")

    gitignore = target / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(INIT_GITIGNORE, encoding="utf-8")
        print(f"  Created {gitignore}")

    print(f"""
{ICON_OK} Workspace ready at {target.resolve()}

Next steps:
  1. Edit connections.yaml with your server details
  2. Run the inventory:

     partscan functions -c {conn_file}
""")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="partscan",
        description="Partscan — partition-function inventory for SQL Server",
    )
    parser.add_argument("--version", action="version", version=f"partscan {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- partscan functions ---
    fn_parser = subparsers.add_parser("functions", help="List partition functions")
    fn_parser.add_argument(
        "instances", nargs="*",
        help="Instances or connection names; '-' reads them from stdin (default: all connections)",
    )
    fn_parser.add_argument("--connections", "-c", help="Shared connections YAML file")
    fn_parser.add_argument("--username", "-U", help="SQL login (default: integrated auth)")
    fn_parser.add_argument(
        "--password", "-P", help=f"SQL password (default: ${PASSWORD_ENV_VAR} or prompt)"
    )
    fn_parser.add_argument(
        "--database", "-d", action="append", help="Only these databases (repeatable, comma-separated)"
    )
    fn_parser.add_argument(
        "--exclude-database", "-x", action="append", help="Skip these databases"
    )
    fn_parser.add_argument(
        "--partition-function", "-p", action="append", help="Only these partition functions"
    )
    fn_parser.add_argument(
        "--strict", action="store_true",
        help="Treat connection failures as errors (exit 1 if any instance fails)",
    )
    fn_parser.add_argument("--all-columns", action="store_true", help="Show every column")
    fn_parser.add_argument(
        "--format", choices=("table", "json", "csv"), default="table", help="stdout format"
    )
    fn_parser.add_argument("--report", "-r", help="Output HTML report path")
    fn_parser.add_argument("--json-report", "-j", help="Output JSON report path")
    fn_parser.add_argument("--csv-report", help="Output CSV report path")
    fn_parser.add_argument("--driver", default=DEFAULT_DRIVER, help=f"ODBC driver (default: {DEFAULT_DRIVER})")
    fn_parser.add_argument("--timeout", type=int, default=30, help="Login timeout in seconds")
    fn_parser.add_argument("--verbose", "-v", action="store_true")
    fn_parser.set_defaults(func=cmd_functions)

    # --- partscan init ---
    init_parser = subparsers.add_parser("init", help="Scaffold a connections file")
    init_parser.add_argument("directory", nargs="?", default=".", help="Target directory (default: current)")
    init_parser.set_defaults(func=cmd_init)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)

"""
Core inventory engine: instances, sessions, catalog reads and filtering.

Part of the Partscan SQL Server inventory tool. Licensed under MIT.
"""

import datetime
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional, Protocol

import pyodbc

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"
DEFAULT_INSTANCE_NAME = "MSSQLSERVER"

log = logging.getLogger("partscan")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PartscanError(Exception):
    """Base class for errors raised by partscan."""


class SqlConnectionError(PartscanError):
    """A session to an instance could not be established."""

    def __init__(self, instance: str, cause: Optional[Exception] = None):
        self.instance = instance
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failure connecting to {instance}{detail}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------

ENV_VAR_RE = re.compile(r"\$\{(\w+)(?::([^}]*))?\}")


def resolve_env_vars(value: Any) -> Any:
    """
    Recursively resolve ${VAR} and ${VAR:default} placeholders in strings,
    dicts, and lists.

    Examples:
      "${SQL_PASSWORD}"          -> os.environ["SQL_PASSWORD"]  (raises if unset)
      "${SQL_USER:inventory}"    -> os.environ.get("SQL_USER", "inventory")
      "${SQL_HOST}\\${SQL_NAMED:SALES}" -> "sql01\\SALES"
    """
    if isinstance(value, str):
        def replacer(match):
            var_name = match.group(1)
            default = match.group(2)
            env_val = os.environ.get(var_name)
            if env_val is not None:
                return env_val
            if default is not None:
                return default
            raise ValueError(
                f"Environment variable '${{{var_name}}}' is not set and no default provided"
            )
        return ENV_VAR_RE.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InstanceRef:
    """A SQL Server endpoint: host plus optional named instance or port."""

    host: str
    instance_name: Optional[str] = None
    port: Optional[int] = None

    @classmethod
    def parse(cls, value: str) -> "InstanceRef":
        """
        Parse an instance identifier.

        Accepted forms: host, host\\INSTANCE, host,port, host\\INSTANCE,port.
        A leading "tcp:" is ignored.
        """
        text = (value or "").strip()
        if text.lower().startswith("tcp:"):
            text = text[4:]
        if not text:
            raise ValueError("Instance name must not be empty")

        port = None
        if "," in text:
            text, raw_port = text.split(",", 1)
            raw_port = raw_port.strip()
            if not raw_port.isdigit():
                raise ValueError(f"Invalid port '{raw_port}' in instance '{value}'")
            port = int(raw_port)

        instance_name = None
        if "\\" in text:
            text, instance_name = text.split("\\", 1)
            instance_name = instance_name.strip() or None

        host = text.strip()
        if not host:
            raise ValueError(f"Missing host in instance '{value}'")
        return cls(host=host, instance_name=instance_name, port=port)

    @property
    def server(self) -> str:
        """Value for the ODBC SERVER= keyword."""
        server = self.host
        if self.instance_name:
            server += f"\\{self.instance_name}"
        if self.port is not None:
            server += f",{self.port}"
        return server

    def __str__(self) -> str:
        return self.server


@dataclass(frozen=True)
class Credential:
    """SQL authentication credential. No credential means integrated auth."""

    username: str
    password: str = field(default="", repr=False)


@dataclass(frozen=True)
class Database:
    name: str
    is_accessible: bool
    state: str = "ONLINE"


@dataclass(frozen=True)
class PartitionFunction:
    """A partition function as reported by the database catalog."""

    name: str
    create_date: Optional[datetime.datetime]
    number_of_partitions: int
    function_id: Optional[int] = None
    modify_date: Optional[datetime.datetime] = None
    range_type: Optional[str] = None
    parameter_type: Optional[str] = None
    range_values: tuple[str, ...] = ()


@dataclass(frozen=True)
class PartitionFunctionRecord:
    """A partition function annotated with the instance and database it came from."""

    computer_name: str
    instance_name: str
    sql_instance: str
    database: str
    name: str
    create_date: Optional[datetime.datetime]
    number_of_partitions: int
    function_id: Optional[int] = None
    modify_date: Optional[datetime.datetime] = None
    range_type: Optional[str] = None
    parameter_type: Optional[str] = None
    range_values: tuple[str, ...] = ()

    @classmethod
    def from_catalog(
        cls, session: "Session", database: str, function: PartitionFunction
    ) -> "PartitionFunctionRecord":
        return cls(
            computer_name=session.computer_name,
            instance_name=session.instance_name,
            sql_instance=session.sql_instance,
            database=database,
            name=function.name,
            create_date=function.create_date,
            number_of_partitions=function.number_of_partitions,
            function_id=function.function_id,
            modify_date=function.modify_date,
            range_type=function.range_type,
            parameter_type=function.parameter_type,
            range_values=tuple(function.range_values),
        )


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------

class Session(Protocol):
    """Interface for an open session to one instance and its catalog."""

    computer_name: str
    instance_name: str
    sql_instance: str

    def list_databases(self) -> list[Database]:
        """Return every database on the instance."""
        ...

    def is_accessible(self, database: str) -> bool:
        """Return whether the database can be read right now."""
        ...

    def list_partition_functions(self, database: str) -> list[PartitionFunction]:
        """Return the partition functions defined in a database."""
        ...


class Connector(Protocol):
    """Interface for opening sessions; raises SqlConnectionError on failure."""

    def connect(self, instance: str, credential: Optional[Credential] = None) -> Session:
        ...


# ---------------------------------------------------------------------------
# Catalog queries
# ---------------------------------------------------------------------------

SERVER_PROPERTIES_SQL = """
SELECT
    CAST(SERVERPROPERTY('MachineName') AS nvarchar(128)) AS machine_name,
    CAST(SERVERPROPERTY('InstanceName') AS nvarchar(128)) AS instance_name
"""

LIST_DATABASES_SQL = """
SELECT name, state_desc, CAST(HAS_DBACCESS(name) AS int) AS has_access
FROM sys.databases
ORDER BY name
"""

DATABASE_ACCESS_SQL = """
SELECT state_desc, CAST(HAS_DBACCESS(name) AS int) AS has_access
FROM sys.databases
WHERE name = ?
"""

PARTITION_FUNCTIONS_SQL = """
SELECT
    pf.function_id,
    pf.name,
    pf.create_date,
    pf.modify_date,
    pf.fanout,
    pf.boundary_value_on_right,
    t.name AS parameter_type
FROM {db}.sys.partition_functions AS pf
LEFT JOIN {db}.sys.partition_parameters AS pp
    ON pp.function_id = pf.function_id AND pp.parameter_id = 1
LEFT JOIN {db}.sys.types AS t
    ON t.user_type_id = pp.user_type_id
ORDER BY pf.name
"""

PARTITION_RANGE_VALUES_SQL = """
SELECT function_id, CONVERT(nvarchar(4000), value) AS value
FROM {db}.sys.partition_range_values
ORDER BY function_id, boundary_id
"""


def quote_name(name: str) -> str:
    """Bracket-quote an identifier the way QUOTENAME() does."""
    return "[" + name.replace("]", "]]") + "]"


def odbc_quote(value: str) -> str:
    """Brace-quote a connection string value so ';', '{' and '}' stay literal."""
    return "{" + str(value).replace("}", "}}") + "}"


def execute_query(conn: pyodbc.Connection, sql: str, *params) -> tuple[list[dict], list[str]]:
    """Execute SQL and return (rows_as_dicts, column_names)."""
    cursor = conn.cursor()
    cursor.execute(sql, *params)

    if cursor.description is None:
        return [], []

    columns = [col[0] for col in cursor.description]
    rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
    return rows, columns


def _is_online_and_readable(row: dict) -> bool:
    return row.get("state_desc") == "ONLINE" and row.get("has_access") == 1


class SqlSession:
    """A pyodbc connection to one instance, exposing its catalog read-only."""

    def __init__(self, conn: pyodbc.Connection, label: str = ""):
        self.conn = conn
        self.label = label
        # set once a catalog read fails; the connection manager reopens broken sessions
        self.broken = False
        rows, _ = execute_query(conn, SERVER_PROPERTIES_SQL)
        props = rows[0] if rows else {}
        self.computer_name = props.get("machine_name") or label
        named = props.get("instance_name")
        self.instance_name = named or DEFAULT_INSTANCE_NAME
        self.sql_instance = (
            f"{self.computer_name}\\{named}" if named else self.computer_name
        )

    def _query(self, sql: str, *params) -> list[dict]:
        try:
            rows, _ = execute_query(self.conn, sql, *params)
        except pyodbc.Error:
            self.broken = True
            raise
        return rows

    def list_databases(self) -> list[Database]:
        rows = self._query(LIST_DATABASES_SQL)
        return [
            Database(
                name=row["name"],
                is_accessible=_is_online_and_readable(row),
                state=row["state_desc"],
            )
            for row in rows
        ]

    def is_accessible(self, database: str) -> bool:
        rows = self._query(DATABASE_ACCESS_SQL, database)
        return bool(rows) and _is_online_and_readable(rows[0])

    def list_partition_functions(self, database: str) -> list[PartitionFunction]:
        db = quote_name(database)
        rows = self._query(PARTITION_FUNCTIONS_SQL.format(db=db))
        if not rows:
            return []

        boundaries: dict[int, list[str]] = {}
        value_rows = self._query(PARTITION_RANGE_VALUES_SQL.format(db=db))
        for row in value_rows:
            boundaries.setdefault(row["function_id"], []).append(row["value"])

        return [
            PartitionFunction(
                name=row["name"],
                create_date=row["create_date"],
                number_of_partitions=row["fanout"],
                function_id=row["function_id"],
                modify_date=row["modify_date"],
                range_type="RIGHT" if row["boundary_value_on_right"] else "LEFT",
                parameter_type=row["parameter_type"],
                range_values=tuple(boundaries.get(row["function_id"], [])),
            )
            for row in rows
        ]

    def close(self):
        self.conn.close()


# ---------------------------------------------------------------------------
# Connection management
# ---------------------------------------------------------------------------

class ConnectionManager:
    """Opens and caches sessions to named or ad-hoc SQL Server instances."""

    def __init__(
        self,
        shared_connections: dict[str, dict] | None = None,
        driver: str = DEFAULT_DRIVER,
        timeout: int = 30,
    ):
        self._shared = shared_connections or {}
        self.driver = driver
        self.timeout = timeout
        self._cache: dict[str, SqlSession] = {}

    @property
    def names(self) -> list[str]:
        return list(self._shared.keys())

    def resolve(self, name_or_server: str) -> dict:
        """Resolve a connection name, or parse a server string, into a config dict."""
        if name_or_server in self._shared:
            info = dict(self._shared[name_or_server])
            if "server" not in info:
                raise ValueError(f"Connection '{name_or_server}' has no 'server' entry")
            return info
        ref = InstanceRef.parse(name_or_server)
        return {"server": ref.server, "trusted_connection": True}

    def connect(self, instance: str, credential: Optional[Credential] = None) -> SqlSession:
        """Return a session for the instance (cached by connection string)."""
        label = str(instance)
        try:
            conn_info = self.resolve(label)
            if credential is not None:
                conn_info.update(
                    username=credential.username,
                    password=credential.password,
                    trusted_connection=False,
                )
            conn_str = self._build_connection_string(conn_info, self.driver)
            cached = self._cache.get(conn_str)
            if cached is not None and cached.broken:
                log.debug(f"Reopening session to {label} after a failed catalog read")
                self._close_session(self._cache.pop(conn_str))
            if conn_str not in self._cache:
                conn = pyodbc.connect(conn_str, timeout=self.timeout)
                try:
                    self._cache[conn_str] = SqlSession(conn, label)
                except pyodbc.Error:
                    conn.close()
                    raise
            return self._cache[conn_str]
        except (pyodbc.Error, ValueError) as e:
            raise SqlConnectionError(label, e) from e

    @staticmethod
    def _close_session(session: SqlSession):
        try:
            session.close()
        except pyodbc.Error as e:
            log.debug(f"Ignoring error while closing {session.label}: {e}")

    def close_all(self):
        for session in self._cache.values():
            self._close_session(session)
        self._cache.clear()

    @staticmethod
    def _build_connection_string(info: dict, default_driver: str = DEFAULT_DRIVER) -> str:
        driver = info.get("driver", default_driver)
        server = info["server"]
        trusted = info.get("trusted_connection", False)

        parts = [
            f"DRIVER={{{driver}}}",
            f"SERVER={server}",
            "DATABASE=master",
        ]

        if trusted:
            parts.append("Trusted_Connection=yes")
        else:
            if not info.get("username"):
                raise ValueError(
                    f"Connection to {server} needs a username or trusted_connection: true"
                )
            parts.append(f"UID={odbc_quote(info['username'])}")
            parts.append(f"PWD={odbc_quote(info.get('password') or '')}")

        if info.get("trust_server_certificate", True):
            parts.append("TrustServerCertificate=yes")

        for k, v in info.get("odbc_extras", {}).items():
            parts.append(f"{k}={v}")

        return ";".join(parts)


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

def filter_databases(
    databases: Iterable[Database],
    include: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
) -> list[Database]:
    """Keep accessible databases, then apply the inclusion and exclusion lists."""
    result = [db for db in databases if db.is_accessible]
    if include:
        wanted = set(include)
        result = [db for db in result if db.name in wanted]
    if exclude:
        unwanted = set(exclude)
        result = [db for db in result if db.name not in unwanted]
    return result


def filter_partition_functions(
    functions: Iterable[PartitionFunction],
    names: Iterable[str] | None = None,
) -> list[PartitionFunction]:
    if not names:
        return list(functions)
    wanted = set(names)
    return [pf for pf in functions if pf.name in wanted]


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

def scan_instance(
    session: Session,
    *,
    databases: Iterable[str] | None = None,
    exclude_databases: Iterable[str] | None = None,
    partition_functions: Iterable[str] | None = None,
    logger: logging.Logger | None = None,
) -> Iterator[PartitionFunctionRecord]:
    """Yield a record for every matching partition function on one instance."""
    logger = logger or log
    wanted_functions = set(partition_functions) if partition_functions else None

    try:
        listed = session.list_databases()
    except pyodbc.Error as e:
        logger.warning(f"Failed to list databases on {session.sql_instance}: {e}. Skipping instance.")
        return

    candidates = filter_databases(listed, databases, exclude_databases)
    for db in candidates:
        try:
            if not session.is_accessible(db.name):
                logger.warning(f"Database {db.name} on {session.sql_instance} is not accessible. Skipping.")
                continue
            catalog = session.list_partition_functions(db.name)
        except pyodbc.Error as e:
            logger.warning(
                f"Failed to read partition functions from {db.name} on {session.sql_instance}: {e}. Skipping."
            )
            continue

        functions = filter_partition_functions(catalog, wanted_functions)
        if not functions:
            logger.debug(
                f"No partition functions exist in the {db.name} database on {session.sql_instance}"
            )
            continue

        for function in functions:
            yield PartitionFunctionRecord.from_catalog(session, db.name, function)


def get_partition_functions(
    instances: Iterable[str],
    connector: Connector,
    *,
    credential: Optional[Credential] = None,
    databases: Iterable[str] | None = None,
    exclude_databases: Iterable[str] | None = None,
    partition_functions: Iterable[str] | None = None,
    strict: bool = False,
    logger: logging.Logger | None = None,
) -> Iterator[PartitionFunctionRecord]:
    """
    Lazily inventory partition functions across instances.

    Instances are consumed one at a time. A connection failure is logged as a
    warning and the next instance is tried; with strict=True the
    SqlConnectionError is raised to the caller instead.
    """
    logger = logger or log
    databases = list(databases) if databases else None
    exclude_databases = list(exclude_databases) if exclude_databases else None
    partition_functions = list(partition_functions) if partition_functions else None

    for instance in instances:
        try:
            session = connector.connect(instance, credential)
        except SqlConnectionError as e:
            if strict:
                raise
            logger.warning(str(e))
            continue

        logger.debug(f"Connected to {session.sql_instance}")
        yield from scan_instance(
            session,
            databases=databases,
            exclude_databases=exclude_databases,
            partition_functions=partition_functions,
            logger=logger,
        )

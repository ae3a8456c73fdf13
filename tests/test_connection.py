import datetime

import pyodbc
import pytest

from partscan import engine
from partscan.engine import (
    ConnectionManager,
    Credential,
    InstanceRef,
    SqlConnectionError,
    SqlSession,
    odbc_quote,
    quote_name,
    resolve_env_vars,
)


class _Cursor:
    def __init__(self, responses, executed):
        self._responses = responses
        self._executed = executed
        self.description = None
        self._rows = []

    def execute(self, sql, *params):
        self._executed.append((sql, params))
        for marker, columns, rows in self._responses:
            if marker in sql:
                if isinstance(rows, Exception):
                    raise rows
                self.description = [(c,) for c in columns]
                self._rows = rows
                return self
        raise AssertionError(f"unexpected SQL: {sql}")

    def fetchall(self):
        return self._rows


class _Conn:
    def __init__(self, responses):
        self.responses = responses
        self.executed: list[tuple[str, tuple]] = []
        self.closed = False

    def cursor(self):
        return _Cursor(self.responses, self.executed)

    def close(self):
        self.closed = True


def _server_props(machine="SQL01", instance=None):
    return ("SERVERPROPERTY", ["machine_name", "instance_name"], [(machine, instance)])


# ---------------------------------------------------------------------------
# Instance parsing and config
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "value, expected",
    [
        ("sql01", InstanceRef("sql01")),
        ("sql01\\SALES", InstanceRef("sql01", "SALES")),
        ("sql01,1433", InstanceRef("sql01", port=1433)),
        ("sql01\\SALES,14330", InstanceRef("sql01", "SALES", 14330)),
        ("tcp:10.0.0.5,1433", InstanceRef("10.0.0.5", port=1433)),
        ("  localhost  ", InstanceRef("localhost")),
    ],
)
def test_instance_ref_parse(value, expected):
    assert InstanceRef.parse(value) == expected


@pytest.mark.parametrize("value", ["", "   ", "sql01,abc", "\\SALES", "tcp:"])
def test_instance_ref_parse_rejects_invalid(value):
    with pytest.raises(ValueError):
        InstanceRef.parse(value)


def test_instance_ref_server_round_trips_display_form():
    assert InstanceRef.parse("sql01\\SALES,14330").server == "sql01\\SALES,14330"
    assert str(InstanceRef("sql01")) == "sql01"


def test_credential_repr_hides_password():
    assert "hunter2" not in repr(Credential("inventory", "hunter2"))


def test_resolve_env_vars(monkeypatch):
    monkeypatch.setenv("PARTSCAN_TEST_USER", "inventory")
    monkeypatch.delenv("PARTSCAN_TEST_MISSING", raising=False)

    resolved = resolve_env_vars(
        {"a": {"username": "${PARTSCAN_TEST_USER}", "port": "${PARTSCAN_TEST_MISSING:1433}"}}
    )

    assert resolved == {"a": {"username": "inventory", "port": "1433"}}
    with pytest.raises(ValueError, match="PARTSCAN_TEST_MISSING"):
        resolve_env_vars("${PARTSCAN_TEST_MISSING}")


def test_quote_name_escapes_closing_bracket():
    assert quote_name("sales") == "[sales]"
    assert quote_name("odd]name") == "[odd]]name]"


def test_connection_string_for_trusted_and_sql_auth():
    trusted = ConnectionManager._build_connection_string(
        {"server": "sql01", "trusted_connection": True}
    )
    assert "SERVER=sql01" in trusted
    assert "DATABASE=master" in trusted
    assert "Trusted_Connection=yes" in trusted
    assert "UID=" not in trusted

    sql_auth = ConnectionManager._build_connection_string(
        {"server": "sql01", "username": "inv", "password": "pw", "odbc_extras": {"Encrypt": "yes"}}
    )
    assert "UID={inv}" in sql_auth
    assert "PWD={pw}" in sql_auth
    assert sql_auth.endswith("Encrypt=yes")


def test_connection_string_requires_username_without_trust():
    with pytest.raises(ValueError, match="username"):
        ConnectionManager._build_connection_string({"server": "sql01"})


def test_resolve_prefers_named_connection():
    mgr = ConnectionManager({"prod": {"server": "sql-prod\\MAIN", "trusted_connection": True}})

    assert mgr.resolve("prod")["server"] == "sql-prod\\MAIN"
    assert mgr.resolve("other,1500") == {"server": "other,1500", "trusted_connection": True}
    assert mgr.names == ["prod"]


# ---------------------------------------------------------------------------
# Connecting
# ---------------------------------------------------------------------------

def test_connect_wraps_driver_errors(monkeypatch):
    def fail(conn_str, timeout):
        raise pyodbc.OperationalError("HYT00", "Login timeout expired")

    monkeypatch.setattr(engine.pyodbc, "connect", fail)

    with pytest.raises(SqlConnectionError) as excinfo:
        ConnectionManager().connect("sql01")

    assert excinfo.value.instance == "sql01"
    assert isinstance(excinfo.value.__cause__, pyodbc.Error)
    assert "sql01" in str(excinfo.value)


def test_connect_wraps_bad_instance_names():
    with pytest.raises(SqlConnectionError) as excinfo:
        ConnectionManager().connect("sql01,notaport")
    assert isinstance(excinfo.value.__cause__, ValueError)


def test_connect_applies_credential_and_caches_sessions(monkeypatch):
    opened: list[str] = []

    def fake_connect(conn_str, timeout):
        opened.append(conn_str)
        return _Conn([_server_props()])

    monkeypatch.setattr(engine.pyodbc, "connect", fake_connect)
    mgr = ConnectionManager(timeout=5)

    first = mgr.connect("sql01", Credential("inv", "pw"))
    second = mgr.connect("sql01", Credential("inv", "pw"))

    assert first is second
    assert len(opened) == 1
    assert "UID={inv}" in opened[0]
    assert "Trusted_Connection" not in opened[0]

    mgr.close_all()
    assert first.conn.closed is True


# ---------------------------------------------------------------------------
# Session catalog reads
# ---------------------------------------------------------------------------

def test_session_identity_for_default_instance():
    session = SqlSession(_Conn([_server_props("SRV1", None)]), "srv1")

    assert session.computer_name == "SRV1"
    assert session.instance_name == "MSSQLSERVER"
    assert session.sql_instance == "SRV1"


def test_session_identity_for_named_instance():
    session = SqlSession(_Conn([_server_props("SRV2", "SALES")]), "srv2\\sales")

    assert session.instance_name == "SALES"
    assert session.sql_instance == "SRV2\\SALES"


def test_list_databases_marks_accessibility():
    conn = _Conn([
        _server_props(),
        (
            "sys.databases",
            ["name", "state_desc", "has_access"],
            [("db1", "ONLINE", 1), ("db2", "OFFLINE", 0), ("db3", "ONLINE", 0)],
        ),
    ])

    databases = SqlSession(conn).list_databases()

    assert [(d.name, d.is_accessible) for d in databases] == [
        ("db1", True),
        ("db2", False),
        ("db3", False),
    ]
    assert databases[1].state == "OFFLINE"


def test_is_accessible_queries_by_name():
    conn = _Conn([
        _server_props(),
        ("WHERE name = ?", ["state_desc", "has_access"], [("ONLINE", 1)]),
    ])

    assert SqlSession(conn).is_accessible("db1") is True
    assert conn.executed[-1][1] == ("db1",)


def test_is_accessible_false_for_missing_database():
    conn = _Conn([_server_props(), ("WHERE name = ?", ["state_desc", "has_access"], [])])

    assert SqlSession(conn).is_accessible("gone") is False


def test_list_partition_functions_reads_catalog_and_boundaries():
    created = datetime.datetime(2020, 1, 1)
    conn = _Conn([
        _server_props(),
        (
            "partition_range_values",
            ["function_id", "value"],
            [(65536, "2020-01-01"), (65536, "2021-01-01"), (65537, "100")],
        ),
        (
            "partition_functions",
            ["function_id", "name", "create_date", "modify_date", "fanout",
             "boundary_value_on_right", "parameter_type"],
            [
                (65536, "pf_year", created, created, 3, True, "date"),
                (65537, "pf_id", created, created, 2, False, "int"),
            ],
        ),
    ])

    functions = SqlSession(conn).list_partition_functions("sales]db")

    assert [f.name for f in functions] == ["pf_year", "pf_id"]
    assert functions[0].range_type == "RIGHT"
    assert functions[0].range_values == ("2020-01-01", "2021-01-01")
    assert functions[0].number_of_partitions == 3
    assert functions[1].range_type == "LEFT"
    assert functions[1].parameter_type == "int"
    assert "[sales]]db].sys.partition_functions" in conn.executed[1][0]


def test_list_partition_functions_skips_boundaries_when_empty():
    conn = _Conn([
        _server_props(),
        ("partition_functions", ["function_id", "name"], []),
    ])

    assert SqlSession(conn).list_partition_functions("db1") == []
    assert len(conn.executed) == 2


def test_credentials_are_brace_quoted_in_connection_string():
    conn_str = ConnectionManager._build_connection_string(
        {"server": "sql01", "username": "inv", "password": "a;Trusted_Connection=yes"}
    )

    assert "PWD={a;Trusted_Connection=yes}" in conn_str
    assert "Trusted_Connection=yes;" not in conn_str
    assert odbc_quote("p}w{d") == "{p}}w{d}"


def test_connect_closes_connection_when_server_properties_fail(monkeypatch):
    conn = _Conn([("SERVERPROPERTY", [], pyodbc.ProgrammingError("42000", "permission denied"))])
    monkeypatch.setattr(engine.pyodbc, "connect", lambda conn_str, timeout: conn)

    with pytest.raises(SqlConnectionError):
        ConnectionManager().connect("sql01")

    assert conn.closed is True


def test_session_broken_by_catalog_error_is_reopened(monkeypatch):
    opened: list[_Conn] = []

    def fake_connect(conn_str, timeout):
        conn = _Conn([
            _server_props(),
            ("sys.databases", [], pyodbc.OperationalError("08S01", "Communication link failure")),
        ])
        opened.append(conn)
        return conn

    monkeypatch.setattr(engine.pyodbc, "connect", fake_connect)
    mgr = ConnectionManager()

    first = mgr.connect("sql01")
    with pytest.raises(pyodbc.Error):
        first.list_databases()
    assert first.broken is True

    second = mgr.connect("sql01")

    assert second is not first
    assert len(opened) == 2
    assert opened[0].closed is True

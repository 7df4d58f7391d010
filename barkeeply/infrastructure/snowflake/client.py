"""
Connections to the telemetry warehouse.

The event sink opens one connection per batch through
create_snowflake_connection(), which hands out either a real
snowflake-connector connection or the shared in-memory mock.

Nothing outside this package issues SQL; AnalyticsEventRepository owns
the statements.
"""

import base64
import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional

from .repositories.events import SnowflakeConfig, SnowflakeConnection

logger = logging.getLogger(__name__)


class SnowflakeConnectionError(Exception):
    """Raised when a warehouse connection can't be opened."""
    pass


def _load_private_key(config: SnowflakeConfig) -> bytes:
    """
    Read the key-pair credential as DER-encoded PKCS8 bytes.

    The PEM comes from private_key_path when set, otherwise from
    private_key_base64 (for hosts where mounting a file is awkward).
    """
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization

    if config.private_key_path:
        with open(config.private_key_path, 'rb') as key_file:
            pem = key_file.read()
    else:
        pem = base64.b64decode(config.private_key_base64)

    key = serialization.load_pem_private_key(pem, password=None, backend=default_backend())

    return key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _connect_params(config: SnowflakeConfig) -> dict[str, Any]:
    """Keyword arguments for snowflake.connector.connect()."""
    params: dict[str, Any] = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
    }
    if config.role:
        params['role'] = config.role

    # Key-pair auth wins when both credentials are configured
    if config.private_key_path or config.private_key_base64:
        params['private_key'] = _load_private_key(config)
        logger.debug("Connecting to Snowflake with key-pair auth")
    elif config.password:
        params['password'] = config.password
        logger.debug("Connecting to Snowflake with password auth")
    else:
        raise SnowflakeConnectionError("No Snowflake password or private key configured")

    return params


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Open a warehouse connection and close it on exit.

    Usage:
        with get_snowflake_connection(config) as conn:
            AnalyticsEventRepository(conn).insert_events(records)
    """
    import snowflake.connector

    try:
        conn = snowflake.connector.connect(**_connect_params(config))

    except SnowflakeConnectionError:
        raise

    except snowflake.connector.errors.Error as e:
        logger.error(
            "Could not connect to Snowflake",
            extra={"account": config.account, "error": str(e)}
        )
        raise SnowflakeConnectionError(f"Snowflake connect failed: {e}")

    except (OSError, ValueError) as e:
        # Unreadable or malformed private key
        logger.error("Invalid Snowflake credentials", extra={"error": str(e)})
        raise SnowflakeConnectionError(f"Invalid Snowflake credentials: {e}")

    logger.debug(
        "Opened Snowflake connection",
        extra={"account": config.account, "database": config.database}
    )

    try:
        yield conn
    finally:
        try:
            conn.close()
        except Exception as e:
            logger.warning("Snowflake connection did not close cleanly", extra={"error": str(e)})


# ---------------------------------------------------------------------------
# In-memory warehouse for local development
# ---------------------------------------------------------------------------

class MockSnowflakeCursor:
    """
    Cursor over a MockSnowflakeConnection.

    Understands only the statements the events repository sends. Inserted
    rows are staged on the connection until it commits.
    """

    def __init__(self, connection: 'MockSnowflakeConnection') -> None:
        self._connection = connection
        self._row: Optional[tuple] = None

    def execute(self, query: str, params: Optional[tuple] = None) -> 'MockSnowflakeCursor':
        statement = " ".join(query.split()).upper()
        logger.debug("Mock Snowflake statement", extra={"statement": statement[:80]})

        if statement == 'BEGIN':
            self._connection._staged.clear()
        elif statement.startswith('INSERT INTO ANALYTICS_EVENTS'):
            self._connection._stage_event(params)
        elif statement == 'SELECT 1':
            self._row = (1,)
        else:
            raise NotImplementedError(f"Mock Snowflake can't run: {statement[:40]}")

        return self

    def executemany(self, query: str, seq_of_params: list) -> 'MockSnowflakeCursor':
        for params in seq_of_params:
            self.execute(query, params)
        return self

    def fetchone(self) -> Optional[tuple]:
        return self._row

    def close(self) -> None:
        pass


class MockSnowflakeConnection:
    """
    Stand-in for a warehouse connection.

    Committed rows accumulate in `rows`. One instance is shared across
    batches so rows persist between connections. Set fail_inserts to make
    the next batch fail like a rejected insert.
    """

    def __init__(self) -> None:
        self.rows: list[dict] = []
        self.commits = 0
        self.fail_inserts = False
        self._staged: list[dict] = []
        logger.info("Using in-memory Snowflake mock")

    def cursor(self) -> MockSnowflakeCursor:
        return MockSnowflakeCursor(self)

    def commit(self) -> None:
        self.rows.extend(self._staged)
        self._staged.clear()
        self.commits += 1

    def rollback(self) -> None:
        self._staged.clear()

    def close(self) -> None:
        pass

    def _stage_event(self, params: Optional[tuple]) -> None:
        if self.fail_inserts:
            raise RuntimeError("Mock Snowflake rejected insert")

        columns = ('user_id', 'session_id', 'event_name', 'event_category', 'properties', 'device_info')
        self._staged.append(dict(zip(columns, params or ())))


@contextmanager
def create_snowflake_connection(
    config: Optional[SnowflakeConfig] = None,
    mock_connection: Optional[MockSnowflakeConnection] = None,
) -> Generator[SnowflakeConnection, None, None]:
    """
    Yield the mock connection if one is given, else a real one.

    The mock isn't closed on exit; its rows outlive each batch.
    """
    if mock_connection is not None:
        yield mock_connection
        return

    if config is None:
        raise ValueError("config is required when no mock connection is given")

    with get_snowflake_connection(config) as conn:
        yield conn

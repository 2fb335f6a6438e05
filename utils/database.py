"""Database connection pool and server version detection"""
import queue
import re
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, Set
import pymysql
from logging_config import get_logger
from scrapers.errors import QueryError


logger = get_logger(__name__)

# Version assumed when the server reports something unparsable, so every scraper stays eligible
UNKNOWN_VERSION = 999.0

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)")


class ConnectionPool:
    """Bounded pool of DB-API connections shared by all scrapers.

    A connection is checked out for one query and returned afterwards; a
    connection that saw an error, was interrupted, or comes back after the
    pool was closed is closed instead of being returned.
    """

    def __init__(self, connect: Callable[[], object], max_size: int = 4, acquire_timeout: float = 5.0,
                 interrupt: Optional[Callable[[object], None]] = None):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._connect = connect
        self._interrupt = interrupt if interrupt is not None else self._kill_query
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self._slots = threading.BoundedSemaphore(max_size)
        self._idle: "queue.LifoQueue" = queue.LifoQueue()
        self._lock = threading.Lock()
        self._in_use: Dict[int, object] = {}
        self._interrupted: Set[int] = set()
        self._closed = False

    @contextmanager
    def connection(self, timeout: Optional[float] = None, ctx=None) -> Iterator[object]:
        """Check out a connection for the duration of the block.

        With a ScrapeContext, cancelling the context interrupts whatever the
        connection is running at that moment.
        """
        if self._closed:
            raise QueryError("connection pool is closed")

        wait = self.acquire_timeout if timeout is None else min(timeout, self.acquire_timeout)
        if not self._slots.acquire(timeout=wait):
            raise QueryError(f"no database connection available within {wait:.1f}s (pool size {self.max_size})")

        try:
            conn = self._checkout()
            with self._lock:
                self._in_use[id(conn)] = conn
            unregister = ctx.on_cancel(lambda: self.interrupt(conn)) if ctx is not None else None
            try:
                yield conn
            except BaseException:
                self._release(conn, unregister, reuse=False)
                raise
            else:
                self._release(conn, unregister, reuse=True)
        finally:
            self._slots.release()

    def _checkout(self):
        try:
            return self._idle.get_nowait()
        except queue.Empty:
            pass

        try:
            conn = self._connect()
        except (pymysql.MySQLError, OSError) as e:
            raise QueryError(f"cannot connect to database: {e}") from e
        logger.debug("Opened database connection", pool_size=self.max_size, event_type="db_connect")
        return conn

    def _release(self, conn, unregister, reuse: bool) -> None:
        if unregister is not None:
            unregister()
        with self._lock:
            self._in_use.pop(id(conn), None)
            interrupted = id(conn) in self._interrupted
            self._interrupted.discard(id(conn))

        if reuse and not interrupted and not self._closed:
            self._idle.put(conn)
        else:
            self._discard(conn)

    def interrupt(self, conn) -> None:
        """Abort the statement running on a checked-out connection.

        The connection is discarded when its holder gives it back.
        """
        with self._lock:
            if id(conn) not in self._in_use:
                return
            self._interrupted.add(id(conn))

        try:
            self._interrupt(conn)
            logger.info("Interrupted running query", event_type="db_interrupt")
        except Exception as e:
            # Closing the socket unblocks the reader when KILL is not possible
            logger.warning("Query interrupt failed, closing connection", error=str(e))
            self._discard(conn)

    def _kill_query(self, conn) -> None:
        """KILL QUERY over a side connection; pymysql connections are not thread-safe"""
        thread_id = int(conn.thread_id())
        side = self._connect()
        try:
            with side.cursor() as cursor:
                cursor.execute(f"KILL QUERY {thread_id}")
        finally:
            side.close()

    def _discard(self, conn) -> None:
        try:
            conn.close()
        except Exception as e:
            logger.warning("Failed to close database connection", error=str(e))

    @property
    def idle(self) -> int:
        return self._idle.qsize()

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._in_use)

    def close(self) -> None:
        """Close idle connections and refuse further checkouts.

        Connections still checked out are closed when they are given back.
        """
        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            self._discard(conn)


def create_pool(config) -> ConnectionPool:
    """Create a pymysql-backed pool from configuration"""
    def connect():
        return pymysql.connect(
            host=config.mysql_host,
            port=config.mysql_port,
            user=config.mysql_user,
            password=config.mysql_password,
            database=config.mysql_database or None,
            connect_timeout=config.mysql_connect_timeout,
            read_timeout=config.mysql_read_timeout,
            write_timeout=config.mysql_read_timeout,
            autocommit=True,
            charset="utf8mb4"
        )

    return ConnectionPool(connect, max_size=config.pool_size, acquire_timeout=config.pool_acquire_timeout)


def parse_version(version: Optional[str]) -> float:
    """Extract major.minor from a server version string.

    "8.0.34-cluster" -> 8.0, "5.7.30-ndb-7.6.14" -> 5.7. Anything without a
    leading major.minor yields UNKNOWN_VERSION.
    """
    if isinstance(version, (bytes, bytearray)):
        version = bytes(version).decode("utf-8", errors="replace")
    match = _VERSION_RE.match((version or "").strip())
    if not match:
        return UNKNOWN_VERSION
    return float(f"{match.group(1)}.{match.group(2)}")


def detect_version(pool: ConnectionPool, timeout: Optional[float] = None) -> float:
    """Query the server version and parse it"""
    try:
        with pool.connection(timeout=timeout) as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT @@version")
                row = cursor.fetchone()
    except QueryError:
        raise
    except (pymysql.MySQLError, OSError) as e:
        raise QueryError(f"version query failed: {e}") from e

    if not row:
        logger.warning("Server returned no version, assuming all scrapers apply")
        return UNKNOWN_VERSION

    version = parse_version(row[0])
    logger.debug("Detected server version", raw_version=str(row[0]), version=version)
    return version

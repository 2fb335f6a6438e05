"""Tests for the connection pool and version detection"""
import threading
from unittest.mock import Mock
import pymysql
import pytest

from config import Config
from scrapers.base import ScrapeContext
from scrapers.errors import QueryError
from utils.database import ConnectionPool, UNKNOWN_VERSION, create_pool, detect_version, parse_version
from tests.fakes import FakeConnector


class TestParseVersion:
    """Test server version parsing"""

    @pytest.mark.parametrize("raw, expected", [
        ("8.0.34-cluster", 8.0),
        ("5.7.30-ndb-7.6.14-cluster-gpl", 5.7),
        ("5.6.45-ndb-7.4.26", 5.6),
        (b"5.1.73", 5.1),
        ("10.4.12-MariaDB", 10.4),
    ])
    def test_parses_major_minor(self, raw, expected):
        """Test major.minor extraction from version strings"""
        assert parse_version(raw) == expected

    @pytest.mark.parametrize("raw", ["", None, "cluster", "v8.0"])
    def test_unparsable_assumes_newest(self, raw):
        """Test unparsable versions map to the newest version"""
        assert parse_version(raw) == UNKNOWN_VERSION


class TestConnectionPool:
    """Test connection checkout, reuse and discard"""

    def setup_method(self):
        self.connector = FakeConnector()
        self.pool = ConnectionPool(self.connector, max_size=2, acquire_timeout=0.05)

    def teardown_method(self):
        self.pool.close()

    def test_connection_is_reused(self):
        """Test a returned connection is reused"""
        with self.pool.connection() as first:
            pass
        with self.pool.connection() as second:
            pass

        assert first is second
        assert len(self.connector.connections) == 1

    def test_connection_discarded_after_error(self):
        """Test a connection is closed after an error in its block"""
        with pytest.raises(RuntimeError):
            with self.pool.connection() as conn:
                raise RuntimeError("boom")

        assert conn.closed
        assert self.pool.idle == 0

        with self.pool.connection() as replacement:
            assert replacement is not conn

    def test_exhausted_pool_times_out(self):
        """Test checkout times out when every slot is taken"""
        with self.pool.connection():
            with self.pool.connection():
                with pytest.raises(QueryError, match="no database connection available"):
                    with self.pool.connection():
                        pass

    def test_slot_released_after_timeout(self):
        """Test a timed out checkout does not leak a slot"""
        with self.pool.connection():
            with self.pool.connection():
                with pytest.raises(QueryError):
                    with self.pool.connection(timeout=0.01):
                        pass

        with self.pool.connection():
            pass

    def test_connect_failure(self):
        """Test connect errors become query errors"""
        pool = ConnectionPool(Mock(side_effect=pymysql.err.OperationalError(2003, "Can't connect")), max_size=1)

        with pytest.raises(QueryError, match="cannot connect"):
            with pool.connection():
                pass

        # The slot is free again after the failure
        with pytest.raises(QueryError, match="cannot connect"):
            with pool.connection():
                pass

    def test_closed_pool(self):
        """Test a closed pool closes idle connections and refuses checkouts"""
        with self.pool.connection() as conn:
            pass

        self.pool.close()

        assert conn.closed
        with pytest.raises(QueryError, match="closed"):
            with self.pool.connection():
                pass

    def test_concurrent_checkouts_bounded(self):
        """Test concurrent checkouts never exceed the pool size"""
        active = []
        peak = []
        lock = threading.Lock()

        pool = ConnectionPool(self.connector, max_size=2, acquire_timeout=5.0)

        def worker():
            with pool.connection():
                with lock:
                    active.append(1)
                    peak.append(len(active))
                with lock:
                    active.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        pool.close()

        assert len(peak) == 8
        assert max(peak) <= 2
        assert len(self.connector.connections) <= 2

    def test_invalid_size(self):
        """Test pool size must be positive"""
        with pytest.raises(ValueError):
            ConnectionPool(self.connector, max_size=0)

    def test_create_pool_from_config(self):
        """Test pool creation from configuration"""
        config = Config(pool_size=3, pool_acquire_timeout=2.5)

        pool = create_pool(config)

        assert pool.max_size == 3
        assert pool.acquire_timeout == 2.5


class TestDetectVersion:
    """Test version detection through the pool"""

    def test_detects_version(self):
        """Test version detection"""
        pool = ConnectionPool(FakeConnector({"@@version": [("8.0.34-cluster",)]}))
        assert detect_version(pool) == 8.0

    def test_empty_result(self):
        """Test version detection with no rows"""
        pool = ConnectionPool(FakeConnector({"@@version": []}))
        assert detect_version(pool) == UNKNOWN_VERSION

    def test_query_failure(self):
        """Test version query failure"""
        pool = ConnectionPool(FakeConnector({"@@version": pymysql.err.OperationalError(2006, "gone away")}))

        with pytest.raises(QueryError, match="version query failed"):
            detect_version(pool)


class TestConnectionInterrupt:
    """Test interruption of running queries and shutdown while checked out"""

    def setup_method(self):
        self.connector = FakeConnector({"KILL QUERY": []})

    def test_connection_returned_after_close_is_discarded(self):
        """Test a connection given back after close() is closed, not parked"""
        pool = ConnectionPool(self.connector, max_size=1)

        with pool.connection() as conn:
            pool.close()

        assert conn.closed
        assert pool.idle == 0
        assert pool.in_use == 0

    def test_cancel_interrupts_checked_out_connection(self):
        """Test cancelling the context interrupts and discards the connection"""
        pool = ConnectionPool(self.connector, max_size=1, interrupt=self.connector.interrupt)
        ctx = ScrapeContext()

        with pool.connection(ctx=ctx) as conn:
            assert pool.in_use == 1
            ctx.cancel()
            assert conn.interrupted.is_set()

        assert self.connector.interrupted == [conn]
        assert conn.closed
        assert pool.idle == 0
        assert pool.in_use == 0

    def test_cancel_after_return_does_nothing(self):
        """Test the cancel hook is removed once the connection is returned"""
        pool = ConnectionPool(self.connector, max_size=1, interrupt=self.connector.interrupt)
        ctx = ScrapeContext()

        with pool.connection(ctx=ctx) as conn:
            pass
        ctx.cancel()
        pool.interrupt(conn)

        assert self.connector.interrupted == []
        assert not conn.closed
        assert pool.idle == 1

    def test_kill_query_over_side_connection(self):
        """Test the default interrupt issues KILL QUERY from a side connection"""
        pool = ConnectionPool(self.connector, max_size=1)

        with pool.connection() as conn:
            pool.interrupt(conn)
            side = self.connector.connections[1]
            assert side.executed == [f"KILL QUERY {conn.thread_id()}"]
            assert side.closed
            assert not conn.closed

        assert conn.closed
        assert pool.idle == 0

    def test_failed_kill_closes_connection(self):
        """Test a failed KILL QUERY closes the connection"""
        connector = FakeConnector({"KILL QUERY": pymysql.err.OperationalError(1094, "Unknown thread id")})
        pool = ConnectionPool(connector, max_size=1)

        with pool.connection() as conn:
            pool.interrupt(conn)
            assert conn.closed

        assert pool.idle == 0

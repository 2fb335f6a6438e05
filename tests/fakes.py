"""In-memory stand-ins for pymysql connections"""
import itertools
import threading
import pymysql


class BlockingQuery:
    """Response that hangs in execute() until the connection is interrupted.

    Only the first `times` executions block; later ones return `rows`.
    """

    def __init__(self, rows=(), times=1, max_wait=5.0):
        self.rows = list(rows)
        self.times = times
        self.max_wait = max_wait
        self.started = threading.Event()

    def run(self, connection):
        if self.times <= 0:
            return list(self.rows)
        self.times -= 1
        self.started.set()
        if connection.interrupted.wait(self.max_wait):
            raise pymysql.err.OperationalError(1317, "Query execution was interrupted")
        return list(self.rows)


class FakeCursor:
    """Answers queries from a {sql fragment: rows or exception} table"""

    def __init__(self, connection, cursor_class=None):
        self.connection = connection
        self.cursor_class = cursor_class
        self.closed = False
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def execute(self, sql):
        self.connection.executed.append(sql)
        for fragment, response in self.connection.responses.items():
            if fragment in sql:
                if isinstance(response, Exception):
                    raise response
                if isinstance(response, BlockingQuery):
                    response = response.run(self.connection)
                self._rows = list(response)
                return len(self._rows)
        raise pymysql.err.ProgrammingError(1146, "Table doesn't exist")

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchmany(self, size):
        batch, self._rows = self._rows[:size], self._rows[size:]
        return batch

    def close(self):
        self.closed = True


class FakeConnection:
    _ids = itertools.count(1)

    def __init__(self, responses):
        self.responses = responses
        self.executed = []
        self.cursors = []
        self.closed = False
        self.interrupted = threading.Event()
        self._thread_id = next(self._ids)

    def thread_id(self):
        return self._thread_id

    def cursor(self, cursor_class=None):
        cursor = FakeCursor(self, cursor_class)
        self.cursors.append(cursor)
        return cursor

    def close(self):
        self.closed = True


class FakeConnector:
    """Connect callable for ConnectionPool that remembers what it handed out"""

    def __init__(self, responses=None):
        self.responses = responses if responses is not None else {}
        self.connections = []
        self.interrupted = []

    def __call__(self):
        conn = FakeConnection(self.responses)
        self.connections.append(conn)
        return conn

    def interrupt(self, conn):
        """Interrupt hook for ConnectionPool, standing in for KILL QUERY"""
        self.interrupted.append(conn)
        conn.interrupted.set()

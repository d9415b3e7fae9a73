import logging
import sqlite3
import time
from threading import RLock
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import quote

from src.query_builder import (
	SelectQuery,
	build_count,
	build_delete,
	build_insert,
	build_select,
	build_update,
	build_where,
)
from src.row_shaper import build_tree, group_by

logger = logging.getLogger(__name__)

OPEN_MODES = ("ro", "rw", "rwc", "memory")


class SQLiteClient:
	"""
	SQLite client around one shared connection with query-building helpers.

	Create directly:
		client = SQLiteClient("app.db")

	Or reuse an existing connection by path via the cache:
		client = SQLiteClient.get(database="app.db", mode="ro")

	Call `close()` when you're done with a specific client instance, or `SQLiteClient.closeall()` to close all cached clients.
	"""

	_cache: dict[tuple, "SQLiteClient"] = {}
	_cache_lock = RLock()

	@classmethod
	def get(
		cls,
		*,
		database: str = ":memory:",
		mode: Optional[str] = None,
		timeout: float = 5.0,
		log_queries: bool = False,
	) -> "SQLiteClient":
		"""
		Return a cached client for the same database/mode/timeout, creating it if needed.
		log_queries=True also switches query logging on for a reused client.
		"""
		key = (str(database), mode, timeout)
		with cls._cache_lock:
			client = cls._cache.get(key)
			if client is None or client.closed:
				client = cls(database, mode=mode, timeout=timeout, log_queries=log_queries)
				client._cache_key = key
				cls._cache[key] = client
				logger.debug("Created new cached SQLiteClient for key: %s", key)
			else:
				if log_queries:
					client.log_queries = True
				logger.debug("Reusing cached SQLiteClient for key: %s", key)
			return client

	@classmethod
	def closeall(cls) -> None:
		"""Close all cached clients and clear the cache."""
		with cls._cache_lock:
			clients = list(cls._cache.values())
			cls._cache.clear()
		for client in clients:
			try:
				client.close()
			except Exception:
				logger.exception("Error closing cached client")

	def __init__(
		self,
		database: str = ":memory:",
		*,
		mode: Optional[str] = None,
		timeout: float = 5.0,
		log_queries: bool = False,
	):
		self.log_queries = log_queries
		self.timeout = timeout
		self.path: Optional[str] = None
		self.mode: Optional[str] = None
		self._conn: Optional[sqlite3.Connection] = None
		self._state_lock = RLock()
		self._cache_key: tuple | None = None
		self.open(database, mode)

	def __repr__(self) -> str:
		state = "closed" if self.closed else "open"
		mode = f"?mode={self.mode}" if self.mode else ""
		return f"<SQLiteClient {self.path}{mode} {state}>"

	# ---------- Connection plumbing ----------
	@staticmethod
	def _connect_target(database: str, mode: Optional[str]) -> tuple[str, bool]:
		if mode is None:
			return database, False
		if mode not in OPEN_MODES:
			raise ValueError(f"mode must be one of {OPEN_MODES}, got {mode!r}")
		return f"file:{quote(database)}?mode={mode}", True

	def open(self, database: str, mode: Optional[str] = None) -> "SQLiteClient":
		"""
		Open database, closing any connection this client already holds.
		"""
		target, uri = self._connect_target(str(database), mode)
		with self._state_lock:
			self._close_conn()
			if self._cache_key not in (None, (str(database), mode, self.timeout)):
				self._drop_from_cache()
			logger.debug("Opening SQLite database %s", target)
			conn = sqlite3.connect(
				target,
				timeout=self.timeout,
				uri=uri,
				isolation_level=None,
				check_same_thread=False,
			)
			self._conn = conn
			self.path = str(database)
			self.mode = mode
		return self

	def _close_conn(self) -> None:
		conn, self._conn = self._conn, None
		if conn is None:
			return
		try:
			conn.close()
		except Exception:
			logger.exception("Error closing SQLite connection")

	def close(self) -> None:
		"""Close this client's connection."""
		with self._state_lock:
			if self._conn is None:
				return
			self._close_conn()
		self._drop_from_cache()

	def _drop_from_cache(self) -> None:
		cache_key, self._cache_key = self._cache_key, None
		if cache_key is None:
			return
		with self.__class__._cache_lock:
			cached = self.__class__._cache.get(cache_key)
			if cached is self:
				self.__class__._cache.pop(cache_key, None)

	@property
	def closed(self) -> bool:
		return self._conn is None

	def database(self) -> Optional[sqlite3.Connection]:
		"""Return the underlying sqlite3 connection, or None when closed."""
		return self._conn

	def _get_conn(self) -> sqlite3.Connection:
		conn = self._conn
		if conn is None:
			raise RuntimeError("SQLiteClient is closed.")
		return conn

	# ---------- Execution helpers ----------
	@staticmethod
	def _rows_from_cursor(cur) -> list[dict] | None:
		if cur.description is None:
			return None
		colnames = [d[0] for d in cur.description]
		rows = cur.fetchall()
		return [dict(zip(colnames, r)) for r in rows]

	def _execute(self, query: str, params: Optional[Iterable] = None) -> sqlite3.Cursor:
		"""
		Run one statement on the shared connection and return its cursor.
		"""
		params = list(params or [])
		with self._state_lock:
			conn = self._get_conn()
			started = time.perf_counter()
			cur = conn.execute(query, params)
			if self.log_queries:
				elapsed = (time.perf_counter() - started) * 1000
				logger.debug("%s %s (%.3f ms)", query, params, elapsed)
			return cur

	def _fetch(self, query: str, params: Optional[Iterable] = None) -> list[dict] | None:
		with self._state_lock:
			return self._rows_from_cursor(self._execute(query, params))

	def execute_query(self, query: str, params: Optional[Iterable] = None) -> list[dict] | None:
		"""
		Public wrapper for executing raw SQL (read or write).
		Returns list[dict] for result sets, otherwise None.
		"""
		return self._fetch(query, params)

	def run(self, query: str, params: Optional[Iterable] = None) -> int:
		"""Execute one write statement and return the number of changed rows."""
		with self._state_lock:
			return self._execute(query, params).rowcount

	def exec(self, script: str) -> None:
		"""Execute a script of one or more statements without parameters."""
		with self._state_lock:
			conn = self._get_conn()
			started = time.perf_counter()
			conn.executescript(script)
			if self.log_queries:
				elapsed = (time.perf_counter() - started) * 1000
				logger.debug("%s (%.3f ms)", script, elapsed)

	# ---------- SELECT ----------
	@staticmethod
	def _as_select(query) -> tuple[str, list]:
		if isinstance(query, str):
			return query, []
		if isinstance(query, SelectQuery):
			return build_select(query)
		if isinstance(query, Mapping):
			return build_select(SelectQuery.from_dict(query))
		raise TypeError("select expects a SQL string, a SelectQuery or a dict descriptor.")

	def select(self, query, params: Optional[Iterable] = None) -> list[dict]:
		"""
		Run a SELECT given as raw SQL, a SelectQuery or a dict with keys
		table/fields/where/order/limit/offset.

		params only applies to raw SQL strings.
		"""
		sql_text, query_params = self._as_select(query)
		if params is not None:
			if not isinstance(query, str):
				raise ValueError("params can only be used with a raw SQL string.")
			query_params = list(params)
		return self._fetch(sql_text, query_params) or []

	def select_one(self, query, params: Optional[Iterable] = None) -> dict | None:
		"""
		Return the first row or None.
		"""
		rows = self.select(query, params)
		return rows[0] if rows else None

	def count(self, table: str, where=None) -> int:
		sql_text, params = build_count(table, where)
		result = self._fetch(sql_text, params)
		return int(result[0]["cnt"]) if result else 0

	def select_groups(self, query, by: str, params: Optional[Iterable] = None) -> dict[str, list[dict]]:
		return group_by(self.select(query, params), by)

	def select_tree(
		self,
		query,
		children: str,
		parent_id: str,
		parent_ref: str,
		*,
		params: Optional[Iterable] = None,
		**options: Any,
	) -> list[dict]:
		"""
		Select rows and nest them by their parent references.
		Rows are fresh dicts, so the tree is built in place.
		"""
		options.setdefault("copy", False)
		rows = self.select(query, params)
		return build_tree(rows, children, parent_id, parent_ref, **options)

	# ---------- INSERT / UPDATE / DELETE ----------
	def insert(self, table: str, record: Mapping[str, Any] | None) -> int:
		"""Insert one record and return its rowid."""
		sql_text, params = build_insert(table, record)
		with self._state_lock:
			return self._execute(sql_text, params).lastrowid

	def update(self, table: str, where, record: Mapping[str, Any] | None) -> int:
		"""
		Update rows matching where and return the number of changed rows.
		An empty record changes nothing and returns 0.
		"""
		self._get_conn()
		if not record:
			return 0
		sql_text, params = build_update(table, where, record)
		if not build_where(where)[0]:
			logger.warning("Updating every row of %s", table)
		with self._state_lock:
			return self._execute(sql_text, params).rowcount

	def delete(self, table: str, where=None) -> int:
		"""Delete rows matching where and return the number of deleted rows."""
		sql_text, params = build_delete(table, where)
		if not build_where(where)[0]:
			logger.warning("Deleting every row of %s", table)
		with self._state_lock:
			return self._execute(sql_text, params).rowcount

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

_NAME_RE = re.compile(r"[A-Za-z0-9_]+")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class WhereClause:
	"""
	Raw WHERE fragment using `?` placeholders, with its own bound parameters.
	"""
	clause: str
	params: tuple[Any, ...] = ()


@dataclass(frozen=True)
class SelectQuery:
	"""
	Structured SELECT descriptor.

	where is either a {column: value} dict of equalities or a WhereClause.
	fields is a column list or a raw select-list string; None selects *.
	"""
	table: str
	fields: Sequence[str] | str | None = None
	where: Mapping[str, Any] | WhereClause | None = None
	order: Optional[str] = None
	limit: Optional[int] = None
	offset: Optional[int] = None

	_KEYS = ("table", "fields", "where", "order", "limit", "offset")

	@classmethod
	def from_dict(cls, params: Mapping[str, Any]) -> "SelectQuery":
		unknown = sorted(set(params) - set(cls._KEYS))
		if unknown:
			raise ValueError(f"Unknown select keys: {unknown}")
		optional = {k: params[k] for k in cls._KEYS[1:] if k in params}
		return cls(table=params.get("table"), **optional)


def safe_name(name: Optional[str]) -> Optional[str]:
	"""
	Return the first run of identifier characters in name, or None.
	"""
	match = _NAME_RE.search(name or "")
	return match.group(0) if match else None


def require_table(name: Optional[str]) -> str:
	table = safe_name(name)
	if table is None:
		raise ValueError("Table is not specified")
	return table


def require_identifier(name: Any, label: str) -> str:
	if not isinstance(name, str) or not _IDENT_RE.fullmatch(name):
		raise ValueError(f"Invalid {label} column: {name!r}")
	return name


def _check_count(value: Any, label: str) -> None:
	if isinstance(value, bool) or not isinstance(value, int) or value < 0:
		raise ValueError(f"{label} must be a non-negative integer.")


def _normalize_where(where) -> WhereClause | dict:
	if where is None:
		return {}
	if isinstance(where, WhereClause):
		return where
	if isinstance(where, Mapping):
		if "clause" in where:
			return WhereClause(where.get("clause") or "", tuple(where.get("params") or ()))
		return dict(where)
	raise TypeError("where must be a dict of equalities or a WhereClause.")


def build_where(where) -> tuple[str, list]:
	"""
	Convert a where descriptor into (" WHERE ...", params).
	An empty descriptor produces ("", []).
	"""
	normalized = _normalize_where(where)
	if isinstance(normalized, WhereClause):
		clause = normalized.clause.strip()
		if not clause:
			return "", []
		return " WHERE " + clause, list(normalized.params)

	parts: list[str] = []
	params: list = []
	for column, value in normalized.items():
		require_identifier(column, "condition")
		if value is None:
			parts.append(f"{column} IS NULL")
		else:
			parts.append(f"{column} = ?")
			params.append(value)
	if not parts:
		return "", []
	return " WHERE " + " AND ".join(parts), params


def _fields_sql(fields) -> str:
	if fields is None:
		return "*"
	if isinstance(fields, str):
		return fields.strip() or "*"
	joined = ", ".join(str(f) for f in fields)
	return joined or "*"


def build_select(query: SelectQuery) -> tuple[str, list]:
	table = require_table(query.table)
	where_sql, params = build_where(query.where)

	order_sql = ""
	if query.order:
		order_sql = " ORDER BY " + str(query.order).strip()

	paging_sql = ""
	if query.limit is not None:
		_check_count(query.limit, "limit")
		paging_sql = " LIMIT ?"
		params.append(query.limit)
	if query.offset is not None:
		_check_count(query.offset, "offset")
		if query.limit is None:
			# SQLite only accepts OFFSET after a LIMIT; -1 means unbounded.
			paging_sql = " LIMIT -1"
		paging_sql += " OFFSET ?"
		params.append(query.offset)

	sql = f"SELECT {_fields_sql(query.fields)} FROM {table}{where_sql}{order_sql}{paging_sql}"
	return sql, params


def build_count(table: str, where=None) -> tuple[str, list]:
	tbl = require_table(table)
	where_sql, params = build_where(where)
	return f"SELECT COUNT(*) AS cnt FROM {tbl}{where_sql}", params


def build_insert(table: str, record: Mapping[str, Any] | None) -> tuple[str, list]:
	tbl = require_table(table)
	record = record or {}
	if not record:
		return f"INSERT INTO {tbl} DEFAULT VALUES", []
	columns = [require_identifier(c, "insert") for c in record]
	placeholders = ", ".join("?" for _ in columns)
	sql = f"INSERT INTO {tbl} ({', '.join(columns)}) VALUES ({placeholders})"
	return sql, [record[c] for c in columns]


def build_update(table: str, where, record: Mapping[str, Any] | None) -> tuple[str, list]:
	tbl = require_table(table)
	if not record:
		raise ValueError("Updates dictionary is empty.")
	set_parts = [f"{require_identifier(c, 'update')} = ?" for c in record]
	set_params = list(record.values())
	where_sql, where_params = build_where(where)
	sql = f"UPDATE {tbl} SET {', '.join(set_parts)}{where_sql}"
	return sql, set_params + where_params


def build_delete(table: str, where=None) -> tuple[str, list]:
	tbl = require_table(table)
	where_sql, params = build_where(where)
	return f"DELETE FROM {tbl}{where_sql}", params

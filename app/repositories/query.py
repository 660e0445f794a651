from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Sequence


@dataclass(frozen=True, slots=True)
class QuerySpec:
    """Description of a single-table SELECT that repositories execute.

    Builder methods return a new spec, so a base spec can be shared between
    a count query and a paginated page query.
    """

    table: str
    columns: tuple[str, ...] = ()
    joins: tuple[str, ...] = ()
    join_params: tuple[Any, ...] = ()
    conditions: tuple[str, ...] = ()
    params: tuple[Any, ...] = ()
    any_of: tuple[str, ...] = ()
    any_params: tuple[Any, ...] = ()
    group_by: tuple[str, ...] = ()
    order_by: tuple[str, ...] = ()
    limit: int | None = None
    offset: int | None = None

    def select(self, *columns: str) -> QuerySpec:
        return replace(self, columns=self.columns + columns)

    def join(self, sql: str, *params: Any) -> QuerySpec:
        if sql in self.joins:
            return self
        return replace(self, joins=self.joins + (sql,), join_params=self.join_params + params)

    def where(self, sql: str, *params: Any) -> QuerySpec:
        return replace(self, conditions=self.conditions + (sql,), params=self.params + params)

    def where_any(self, clauses: Sequence[tuple[str, Any]]) -> QuerySpec:
        """Add clauses combined with ``OR``; the group is ANDed with other predicates."""

        sql = tuple(clause for clause, _ in clauses)
        values = tuple(value for _, value in clauses)
        return replace(self, any_of=self.any_of + sql, any_params=self.any_params + values)

    def group(self, *expressions: str) -> QuerySpec:
        return replace(self, group_by=self.group_by + expressions)

    def order(self, *expressions: str) -> QuerySpec:
        return replace(self, order_by=expressions)

    def paginate(self, limit: int | None, offset: int | None = None) -> QuerySpec:
        return replace(self, limit=limit, offset=offset)

    def _where_sql(self) -> tuple[str, list[Any]]:
        predicates = list(self.conditions)
        params: list[Any] = list(self.params)
        if self.any_of:
            predicates.append("(" + " OR ".join(self.any_of) + ")")
            params.extend(self.any_params)
        if not predicates:
            return "", params
        return "WHERE " + " AND ".join(predicates), params

    def to_sql(self) -> tuple[str, tuple[Any, ...]]:
        columns = ", ".join(self.columns) if self.columns else f"{self.table}.*"
        parts = [f"SELECT {columns}", f"FROM {self.table}", *self.joins]
        params: list[Any] = list(self.join_params)

        where_sql, where_params = self._where_sql()
        if where_sql:
            parts.append(where_sql)
            params.extend(where_params)
        if self.group_by:
            parts.append("GROUP BY " + ", ".join(self.group_by))
        if self.order_by:
            parts.append("ORDER BY " + ", ".join(self.order_by))
        if self.limit is not None:
            parts.append("LIMIT %s")
            params.append(int(self.limit))
            if self.offset:
                parts.append("OFFSET %s")
                params.append(int(self.offset))
        return " ".join(parts), tuple(params)

    def count_sql(self) -> tuple[str, tuple[Any, ...]]:
        parts = [
            f"SELECT COUNT(DISTINCT {self.table}.id) AS total",
            f"FROM {self.table}",
            *self.joins,
        ]
        params: list[Any] = list(self.join_params)
        where_sql, where_params = self._where_sql()
        if where_sql:
            parts.append(where_sql)
            params.extend(where_params)
        return " ".join(parts), tuple(params)

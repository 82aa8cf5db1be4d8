from __future__ import annotations

from typing import Any, Iterable

from faturamento.errors import InvalidStateError


class BaseRepository:
    @staticmethod
    def rows_to_dicts(rows: Iterable[Any]) -> list[dict]:
        return [dict(row) for row in rows]

    @staticmethod
    def row_to_dict(row: Any) -> dict | None:
        return dict(row) if row else None

    @staticmethod
    def inserted_id(cursor) -> int:
        row = cursor.fetchone()
        return int(row["id"] if isinstance(row, dict) else row[0])

    @staticmethod
    def require_rows(cursor, *, entity: str, entity_id: int, expected: str) -> int:
        """Fail a conditional update that matched nothing."""
        affected = int(cursor.rowcount or 0)
        if affected <= 0:
            raise InvalidStateError(
                details=f"{entity} {entity_id} nao esta em {expected}; nenhuma linha atualizada.",
            )
        return affected

    @staticmethod
    def placeholders(values: Iterable[Any]) -> str:
        return ",".join("?" for _ in values)

    @staticmethod
    def build_assignments(fields: dict, allowed: Iterable[str]) -> tuple[str, list]:
        allowed_set = set(allowed)
        unknown = sorted(set(fields) - allowed_set)
        if unknown:
            raise ValueError(f"colunas nao permitidas: {', '.join(unknown)}")
        columns = sorted(fields)
        fragment = "".join(f", {column} = ?" for column in columns)
        return fragment, [fields[column] for column in columns]

from __future__ import annotations

from faturamento.infrastructure.repositories.base import BaseRepository


class BlingCredentialRepository(BaseRepository):
    """Single-row OAuth token store."""

    def load(self, db) -> dict | None:
        row = db.execute(
            "SELECT access_token, refresh_token, expires_at FROM bling_credentials WHERE id = 1"
        ).fetchone()
        return self.row_to_dict(row)

    def save(self, db, *, access_token: str, refresh_token: str | None, expires_at: str) -> None:
        db.execute(
            """
            INSERT INTO bling_credentials (id, access_token, refresh_token, expires_at)
            VALUES (1, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                expires_at = excluded.expires_at,
                updated_at = CURRENT_TIMESTAMP
            """,
            (access_token, refresh_token, expires_at),
        )
        db.commit()

from __future__ import annotations

from datetime import datetime, timezone

from faturamento.infrastructure.repositories.base import BaseRepository


CLIENT_COLUMNS = (
    "name",
    "tax_id",
    "state_registration",
    "email",
    "phone",
    "address_street",
    "address_number",
    "address_complement",
    "address_district",
    "address_city",
    "address_state",
    "address_zip",
    "vendor_id",
    "can_invoice",
)


class DirectoryRepository(BaseRepository):
    """Clients and vendors referenced by proposals."""

    def create_client(self, db, **fields) -> int:
        values = {column: fields.get(column) for column in CLIENT_COLUMNS}
        values["can_invoice"] = 1 if values.get("can_invoice") else 0
        columns = ", ".join(CLIENT_COLUMNS)
        cursor = db.execute(
            f"""
            INSERT INTO clients ({columns})
            VALUES ({self.placeholders(CLIENT_COLUMNS)})
            RETURNING id
            """,
            [values[column] for column in CLIENT_COLUMNS],
        )
        client_id = self.inserted_id(cursor)
        db.commit()
        return client_id

    def get_client(self, db, client_id: int) -> dict | None:
        row = db.execute("SELECT * FROM clients WHERE id = ? LIMIT 1", (client_id,)).fetchone()
        return self.row_to_dict(row)

    def create_vendor(
        self,
        db,
        *,
        name: str,
        email: str | None = None,
        commission_rate: float | None = None,
        bling_vendor_id: str | None = None,
    ) -> int:
        cursor = db.execute(
            """
            INSERT INTO vendors (name, email, commission_rate, bling_vendor_id)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            (name, email, commission_rate, bling_vendor_id),
        )
        vendor_id = self.inserted_id(cursor)
        db.commit()
        return vendor_id

    def get_vendor(self, db, vendor_id: int) -> dict | None:
        row = db.execute("SELECT * FROM vendors WHERE id = ? LIMIT 1", (vendor_id,)).fetchone()
        return self.row_to_dict(row)

    def assign_client_discount(self, db, client_id: int, percent: float, assigned_by: str | None) -> bool:
        assigned_at = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        cursor = db.execute(
            """
            UPDATE clients
            SET discount_percent = ?, discount_assigned_by = ?, discount_assigned_at = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (float(percent), assigned_by, assigned_at, client_id),
        )
        db.commit()
        return int(cursor.rowcount or 0) > 0

    def visible_client_ids(self, db, vendor_id: int | None = None) -> list[int]:
        if vendor_id is None:
            rows = db.execute("SELECT id FROM clients ORDER BY id").fetchall()
        else:
            rows = db.execute(
                "SELECT id FROM clients WHERE vendor_id = ? ORDER BY id",
                (vendor_id,),
            ).fetchall()
        return [int(row["id"]) for row in rows]

#!/usr/bin/env python3
"""Install the PostgreSQL exclusion constraint that backs the no-double-booking rule.

With it in place, two active assignment rows for the same machine cannot hold
overlapping half-open windows, even if writers bypass the in-process locks.
"""
from sqlalchemy import create_engine, text

from lounge.config import get_settings


def add_exclusion_constraint() -> None:
    engine = create_engine(get_settings().database_url)
    if engine.dialect.name != "postgresql":
        print(f"Skipping: exclusion constraints need PostgreSQL, not {engine.dialect.name}.")
        return
    with engine.begin() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist;"))
        conn.execute(text("ALTER TABLE booking_machines DROP CONSTRAINT IF EXISTS booking_machines_no_overlap;"))
        conn.execute(
            text(
                "ALTER TABLE booking_machines ADD CONSTRAINT booking_machines_no_overlap "
                "EXCLUDE USING gist (machine_id WITH =, tsrange(start_time, end_time, '[)') WITH &&) "
                "WHERE (active);"
            )
        )
        conn.execute(text("CREATE INDEX IF NOT EXISTS idx_bookings_status ON bookings (status);"))
        print("Exclusion constraint installed.")


if __name__ == "__main__":
    add_exclusion_constraint()

"""SQLite rendition of the back-office booking store (tour types and bookings)."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

from booking_ingestor.core.exceptions import StoreConflictError
from booking_ingestor.core.models import Booking

logger = logging.getLogger(__name__)

# Fields a candidate may patch on an existing booking
PATCHABLE_FIELDS = (
    "departure_date",
    "arrival_date",
    "end_date",
    "avia",
    "pax",
    "pax_uzbekistan",
    "pax_turkmenistan",
    "pax_source",
)

# Codes the trip-name classifier can produce; seeded on every connect
DEFAULT_TOUR_TYPES = (
    ("CO", "Usbekistan ComfortPlus"),
    ("ER", "Erlebnisreise Usbekistan"),
    ("KAS", "Kasachstan, Kirgistan, Usbekistan"),
    ("ZA", "Zentralasien"),
)


def _date_or_none(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _to_db(value: Any) -> Any:
    return value.isoformat() if isinstance(value, date) else value


def _row_to_booking(row: sqlite3.Row) -> Booking:
    return Booking(
        id=row["id"],
        booking_number=row["booking_number"],
        year=row["year"],
        tour_type_id=row["tour_type_id"],
        status=row["status"],
        departure_date=_date_or_none(row["departure_date"]),
        arrival_date=_date_or_none(row["arrival_date"]),
        end_date=_date_or_none(row["end_date"]),
        avia=row["avia"],
        pax=row["pax"],
        pax_uzbekistan=row["pax_uzbekistan"],
        pax_turkmenistan=row["pax_turkmenistan"],
        pax_source=row["pax_source"],
        rooms_dbl=row["rooms_dbl"],
        rooms_twn=row["rooms_twn"],
        rooms_sngl=row["rooms_sngl"],
        rooms_total=row["rooms_total"],
    )


class BookingStore:
    """Bookings keyed by ``(booking_number, year)`` plus the tour-type catalogue.

    Tables:
    - tour_types: classification codes (CO, ER, KAS, ZA, ...)
    - bookings: one row per business key and year; never deleted here
    """

    def __init__(self, db_path: Path, timeout: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path), timeout=self._timeout, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> BookingStore:
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS tour_types (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS bookings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                booking_number TEXT NOT NULL,
                year INTEGER NOT NULL,
                tour_type_id INTEGER NOT NULL REFERENCES tour_types(id),
                status TEXT NOT NULL DEFAULT 'PENDING',
                departure_date TEXT,
                arrival_date TEXT,
                end_date TEXT,
                avia TEXT,
                pax INTEGER NOT NULL DEFAULT 0,
                pax_uzbekistan INTEGER NOT NULL DEFAULT 0,
                pax_turkmenistan INTEGER NOT NULL DEFAULT 0,
                pax_source TEXT,
                rooms_dbl INTEGER NOT NULL DEFAULT 0,
                rooms_twn INTEGER NOT NULL DEFAULT 0,
                rooms_sngl INTEGER NOT NULL DEFAULT 0,
                rooms_total INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (booking_number, year)
            );

            CREATE INDEX IF NOT EXISTS idx_bookings_tour_type ON bookings(tour_type_id);
            CREATE INDEX IF NOT EXISTS idx_bookings_departure
                ON bookings(tour_type_id, departure_date);
        """)
        self.conn.executemany(
            "INSERT OR IGNORE INTO tour_types (code, name) VALUES (?, ?)", DEFAULT_TOUR_TYPES
        )
        self.conn.commit()

    def add_tour_type(self, code: str, name: str = "") -> int:
        """Register a tour type if missing. Returns its id."""
        code = code.strip().upper()
        with self._lock:
            self.conn.execute(
                "INSERT OR IGNORE INTO tour_types (code, name) VALUES (?, ?)", (code, name)
            )
            self.conn.commit()
            row = self.conn.execute(
                "SELECT id FROM tour_types WHERE code = ?", (code,)
            ).fetchone()
        return row["id"]

    def find_tour_type_id(self, code: str) -> int | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT id FROM tour_types WHERE code = ?", (code.upper(),)
            ).fetchone()
        return row["id"] if row else None

    def list_tour_types(self) -> list[dict]:
        with self._lock:
            rows = self.conn.execute("SELECT * FROM tour_types ORDER BY code").fetchall()
        return [dict(row) for row in rows]

    def get_booking(self, booking_number: str, year: int) -> Booking | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM bookings WHERE booking_number = ? AND year = ?",
                (booking_number, year),
            ).fetchone()
        return _row_to_booking(row) if row else None

    def list_bookings(self) -> list[Booking]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM bookings ORDER BY year, booking_number"
            ).fetchall()
        return [_row_to_booking(row) for row in rows]

    def find_booking_near(
        self, tour_type_id: int, departure: date, days: int = 2
    ) -> Booking | None:
        """Booking of the tour type departing within ``days`` of ``departure``, closest first."""
        with self._lock:
            row = self.conn.execute(
                """SELECT * FROM bookings
                   WHERE tour_type_id = ? AND departure_date BETWEEN ? AND ?
                   ORDER BY ABS(julianday(departure_date) - julianday(?)), id
                   LIMIT 1""",
                (
                    tour_type_id,
                    (departure - timedelta(days=days)).isoformat(),
                    (departure + timedelta(days=days)).isoformat(),
                    departure.isoformat(),
                ),
            ).fetchone()
        return _row_to_booking(row) if row else None

    def upsert_booking(
        self, booking_number: str, year: int, tour_type_id: int, **fields: Any
    ) -> tuple[bool, Booking]:
        """Create the booking or patch the fields that were supplied.

        Keyword fields must be in PATCHABLE_FIELDS; ``None`` values are ignored,
        so an update never clears a field. When only per-country pax figures
        are given, ``pax`` is recomputed as their sum.

        Returns (created, booking).

        Raises:
            StoreConflictError: If the write fails.
        """
        unknown = set(fields) - set(PATCHABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown booking fields: {sorted(unknown)}")
        values = {k: _to_db(v) for k, v in fields.items() if v is not None}
        recompute_pax = "pax" not in values and (
            "pax_uzbekistan" in values or "pax_turkmenistan" in values
        )

        now = datetime.now(UTC).isoformat()
        with self._lock:
            try:
                insert_values = {
                    "pax": 0, "pax_uzbekistan": 0, "pax_turkmenistan": 0, **values,
                }
                columns = ["booking_number", "year", "tour_type_id", "status",
                           *insert_values, "created_at", "updated_at"]
                params = [booking_number, year, tour_type_id, "PENDING",
                          *insert_values.values(), now, now]
                cursor = self.conn.execute(
                    f"INSERT OR IGNORE INTO bookings ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    params,
                )
                created = cursor.rowcount == 1

                if not created and values:
                    sets = [f"{column} = ?" for column in values]
                    self.conn.execute(
                        f"UPDATE bookings SET {', '.join(sets)}, updated_at = ? "
                        "WHERE booking_number = ? AND year = ?",
                        [*values.values(), now, booking_number, year],
                    )

                if recompute_pax:
                    self.conn.execute(
                        "UPDATE bookings SET pax = pax_uzbekistan + pax_turkmenistan "
                        "WHERE booking_number = ? AND year = ?",
                        (booking_number, year),
                    )

                self.conn.commit()
                row = self.conn.execute(
                    "SELECT * FROM bookings WHERE booking_number = ? AND year = ?",
                    (booking_number, year),
                ).fetchone()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StoreConflictError(
                    f"Failed to upsert booking {booking_number}/{year}: {e}"
                ) from e

        logger.debug(
            "%s booking %s/%s", "Created" if created else "Updated", booking_number, year
        )
        return created, _row_to_booking(row)

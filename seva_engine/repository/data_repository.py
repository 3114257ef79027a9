"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence
from uuid import uuid4

from seva_engine.domain.constraints import validate_program_requirement
from seva_engine.domain.models import (
    ACTIVE_BOOKING_STATUSES,
    Assignment,
    AssignmentState,
    Booking,
    BookingItem,
    BookingStatus,
    BusyInterval,
    CreditRecord,
    Hall,
    LocationType,
    ProgramCategory,
    ProgramRequirement,
    Recurrence,
    Role,
    SpaceReservation,
    StaffMember,
    TimeWindow,
)
from seva_engine.utils.config import Settings, get_settings
from seva_engine.utils.logger import get_logger


logger = get_logger(__name__)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_db(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="seconds")


def _from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return to_utc(datetime.fromisoformat(str(value)))


def _placeholders(values: Sequence[object]) -> str:
    return ",".join("?" for _ in values)


_ACTIVE_STATUS_VALUES = tuple(status.value for status in ACTIVE_BOOKING_STATUSES)

_BOOKING_COLUMNS = """
    b.id, b.title, b.start_at, b.end_at, b.location_type, b.status,
    b.attendees, b.hall_id, b.address, b.created_at
"""

_PROGRAM_COLUMNS = """
    p.id AS program_id, p.name AS program_name, p.category, p.people_required,
    p.min_recitors, p.min_singers, p.duration_minutes,
    p.trailing_singing_minutes, p.rotation_minutes, p.closing_double_minutes,
    p.two_stage, p.requires_hall, p.allowed_off_site, p.fairness_weight
"""


def _program_from_row(row: sqlite3.Row) -> ProgramRequirement:
    return ProgramRequirement(
        program_id=str(row["program_id"]),
        name=str(row["program_name"]),
        category=ProgramCategory(row["category"]),
        people_required=int(row["people_required"]),
        min_recitors=int(row["min_recitors"]),
        min_singers=int(row["min_singers"]),
        duration_minutes=int(row["duration_minutes"]),
        trailing_singing_minutes=int(row["trailing_singing_minutes"]),
        rotation_minutes=int(row["rotation_minutes"]),
        closing_double_minutes=int(row["closing_double_minutes"]),
        two_stage=bool(row["two_stage"]),
        requires_hall=bool(row["requires_hall"]),
        allowed_off_site=bool(row["allowed_off_site"]),
        fairness_weight=int(row["fairness_weight"]),
    )


def _staff_from_row(row: sqlite3.Row) -> StaffMember:
    skills = frozenset(
        Role(token) for token in str(row["skills"]).split(",") if token.strip()
    )
    return StaffMember(
        id=str(row["id"]),
        name=str(row["name"]),
        skills=skills,
        team_tag=row["team_tag"],
        active=bool(row["active"]),
    )


def _assignment_from_row(row: sqlite3.Row) -> Assignment:
    start = _from_db(row["start_at"])
    end = _from_db(row["end_at"])
    return Assignment(
        id=int(row["id"]),
        booking_id=str(row["booking_id"]),
        booking_item_id=str(row["booking_item_id"]),
        staff_id=str(row["staff_id"]),
        role=str(row["role"]),
        window=TimeWindow(start, end) if start and end else None,
        state=AssignmentState(row["state"]),
    )


class DataRepository:
    """Encapsulates SQLite access so allocation logic stays storage-agnostic.

    Every read/write runs on a short-lived connection unless a
    ``transaction()`` is open on the current thread, in which case it joins
    that transaction. This gives the allocator snapshot-consistent reads and
    an all-or-nothing delete/recompute/insert cycle.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _open(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open (or join) a write transaction on the current thread."""
        active = getattr(self._local, "connection", None)
        if active is not None:
            yield active
            return

        connection = self._open()
        connection.execute("BEGIN IMMEDIATE;")
        self._local.connection = connection
        try:
            yield connection
        except BaseException:
            connection.rollback()
            logger.warning("Transaction rolled back | database=%s", self._db_path)
            raise
        else:
            connection.commit()
        finally:
            self._local.connection = None
            connection.close()

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        active = getattr(self._local, "connection", None)
        if active is not None:
            yield active
            return
        connection = self._open()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before first use."""
        try:
            with self._session() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Halls (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        capacity INTEGER CHECK (capacity IS NULL OR capacity >= 0),
                        active INTEGER NOT NULL DEFAULT 1
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Staff (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        skills TEXT NOT NULL DEFAULT '',
                        team_tag TEXT,
                        active INTEGER NOT NULL DEFAULT 1
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ProgramTypes (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL UNIQUE,
                        category TEXT NOT NULL,
                        people_required INTEGER NOT NULL CHECK (people_required >= 0),
                        min_recitors INTEGER NOT NULL DEFAULT 0,
                        min_singers INTEGER NOT NULL DEFAULT 0,
                        duration_minutes INTEGER NOT NULL DEFAULT 60,
                        trailing_singing_minutes INTEGER NOT NULL DEFAULT 0,
                        rotation_minutes INTEGER NOT NULL DEFAULT 0,
                        closing_double_minutes INTEGER NOT NULL DEFAULT 0,
                        two_stage INTEGER NOT NULL DEFAULT 0,
                        requires_hall INTEGER NOT NULL DEFAULT 1,
                        allowed_off_site INTEGER NOT NULL DEFAULT 1,
                        fairness_weight INTEGER NOT NULL DEFAULT 1
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Bookings (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        start_at TEXT NOT NULL,
                        end_at TEXT NOT NULL,
                        location_type TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        attendees INTEGER NOT NULL DEFAULT 1,
                        hall_id TEXT,
                        address TEXT,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (hall_id) REFERENCES Halls(id)
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS BookingItems (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        program_id TEXT NOT NULL,
                        FOREIGN KEY (booking_id) REFERENCES Bookings(id) ON DELETE CASCADE,
                        FOREIGN KEY (program_id) REFERENCES ProgramTypes(id)
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Assignments (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id TEXT NOT NULL,
                        booking_item_id TEXT NOT NULL,
                        staff_id TEXT NOT NULL,
                        role TEXT NOT NULL,
                        start_at TEXT,
                        end_at TEXT,
                        state TEXT NOT NULL DEFAULT 'PROPOSED',
                        FOREIGN KEY (booking_id) REFERENCES Bookings(id) ON DELETE CASCADE,
                        FOREIGN KEY (booking_item_id) REFERENCES BookingItems(id) ON DELETE CASCADE,
                        FOREIGN KEY (staff_id) REFERENCES Staff(id)
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS SpaceReservations (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        hall_id TEXT,
                        blocks_hall INTEGER NOT NULL DEFAULT 1,
                        start_at TEXT NOT NULL,
                        end_at TEXT NOT NULL,
                        recurrence TEXT NOT NULL DEFAULT 'ONCE',
                        interval INTEGER NOT NULL DEFAULT 1,
                        until TEXT,
                        active INTEGER NOT NULL DEFAULT 1,
                        FOREIGN KEY (hall_id) REFERENCES Halls(id) ON DELETE SET NULL
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_bookings_start_end_status
                    ON Bookings(start_at, end_at, status);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_assignments_staff_state
                    ON Assignments(staff_id, state);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_assignments_booking_state
                    ON Assignments(booking_id, state);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_reference_data(self) -> None:
        """Seed halls, program types and a small staff roster when empty."""
        try:
            with self._session() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM Halls;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Reference data already present; skipping seed")
                    return

                cursor.executemany(
                    "INSERT INTO Halls (id, name, capacity, active) VALUES (?, ?, ?, 1);",
                    [
                        ("hall-small", "Small Hall", self._settings.small_hall_capacity),
                        ("hall-main", "Main Hall", self._settings.main_hall_capacity),
                        ("hall-upper", "Upper Hall", self._settings.upper_hall_capacity),
                    ],
                )

                programs = [
                    ProgramRequirement(
                        program_id="akhand-path",
                        name="Akhand Path",
                        category=ProgramCategory.RECITATION,
                        people_required=1,
                        min_recitors=1,
                        duration_minutes=48 * 60,
                        rotation_minutes=120,
                        closing_double_minutes=60,
                        fairness_weight=6,
                    ),
                    ProgramRequirement(
                        program_id="akhand-path-kirtan",
                        name="Akhand Path + Kirtan",
                        category=ProgramCategory.RECITATION,
                        people_required=4,
                        min_recitors=1,
                        duration_minutes=49 * 60,
                        trailing_singing_minutes=60,
                        rotation_minutes=120,
                        closing_double_minutes=60,
                        fairness_weight=7,
                    ),
                    ProgramRequirement(
                        program_id="sehaj-path",
                        name="Sehaj Path",
                        category=ProgramCategory.RECITATION,
                        people_required=2,
                        min_recitors=1,
                        duration_minutes=48 * 60,
                        two_stage=True,
                        fairness_weight=4,
                    ),
                    ProgramRequirement(
                        program_id="sehaj-path-kirtan",
                        name="Sehaj Path + Kirtan",
                        category=ProgramCategory.RECITATION,
                        people_required=3,
                        min_recitors=1,
                        duration_minutes=49 * 60,
                        trailing_singing_minutes=60,
                        two_stage=True,
                        fairness_weight=5,
                    ),
                    ProgramRequirement(
                        program_id="kirtan",
                        name="Kirtan",
                        category=ProgramCategory.SINGING,
                        people_required=3,
                        min_singers=3,
                        duration_minutes=60,
                        fairness_weight=2,
                    ),
                    ProgramRequirement(
                        program_id="sukhmani-sahib",
                        name="Sukhmani Sahib",
                        category=ProgramCategory.RECITATION,
                        people_required=1,
                        min_recitors=1,
                        duration_minutes=90,
                        fairness_weight=1,
                    ),
                ]
                for program in programs:
                    self._write_program(cursor, program)

                staff = [
                    StaffMember("staff-a1", "Amrit Singh", frozenset({Role.RECITE, Role.SING}), "A"),
                    StaffMember("staff-a2", "Baljit Kaur", frozenset({Role.RECITE, Role.SING}), "A"),
                    StaffMember("staff-a3", "Charan Singh", frozenset({Role.RECITE, Role.SING}), "A"),
                    StaffMember("staff-b1", "Daljit Singh", frozenset({Role.RECITE, Role.SING}), "B"),
                    StaffMember("staff-b2", "Gurpreet Kaur", frozenset({Role.RECITE, Role.SING}), "B"),
                    StaffMember("staff-b3", "Harjit Singh", frozenset({Role.RECITE, Role.SING}), "B"),
                    StaffMember("staff-r1", "Inderjit Singh", frozenset({Role.RECITE})),
                    StaffMember("staff-r2", "Jaswant Kaur", frozenset({Role.RECITE})),
                    StaffMember("staff-r3", "Kuldeep Singh", frozenset({Role.RECITE})),
                ]
                for member in staff:
                    self._write_staff(cursor, member)
            logger.info(
                "Reference seed completed | halls=3 | programs=%s | staff=%s",
                len(programs),
                len(staff),
            )
        except sqlite3.Error as exc:
            raise RuntimeError(f"Reference data seeding failed: {exc}") from exc

    # --- reference data -------------------------------------------------

    @staticmethod
    def _write_program(cursor: sqlite3.Cursor, program: ProgramRequirement) -> None:
        cursor.execute(
            """
            INSERT OR REPLACE INTO ProgramTypes (
                id, name, category, people_required, min_recitors, min_singers,
                duration_minutes, trailing_singing_minutes, rotation_minutes,
                closing_double_minutes, two_stage, requires_hall,
                allowed_off_site, fairness_weight
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                program.program_id,
                program.name,
                program.category.value,
                program.people_required,
                program.min_recitors,
                program.min_singers,
                program.duration_minutes,
                program.trailing_singing_minutes,
                program.rotation_minutes,
                program.closing_double_minutes,
                int(program.two_stage),
                int(program.requires_hall),
                int(program.allowed_off_site),
                program.fairness_weight,
            ),
        )

    @staticmethod
    def _write_staff(cursor: sqlite3.Cursor, member: StaffMember) -> None:
        cursor.execute(
            """
            INSERT OR REPLACE INTO Staff (id, name, skills, team_tag, active)
            VALUES (?, ?, ?, ?, ?);
            """,
            (
                member.id,
                member.name,
                ",".join(sorted(skill.value for skill in member.skills)),
                member.team_tag,
                int(member.active),
            ),
        )

    def save_program(self, program: ProgramRequirement) -> None:
        validate_program_requirement(program)
        with self._session() as conn:
            self._write_program(conn.cursor(), program)

    def save_staff(self, member: StaffMember) -> None:
        with self._session() as conn:
            self._write_staff(conn.cursor(), member)

    def save_hall(self, hall: Hall) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO Halls (id, name, capacity, active)
                VALUES (?, ?, ?, ?);
                """,
                (hall.id, hall.name, hall.capacity, int(hall.active)),
            )

    def save_space_reservation(self, reservation: SpaceReservation) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO SpaceReservations (
                    id, title, hall_id, blocks_hall, start_at, end_at,
                    recurrence, interval, until, active
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    reservation.id,
                    reservation.title,
                    reservation.hall_id,
                    int(reservation.blocks_hall),
                    _to_db(reservation.window.start),
                    _to_db(reservation.window.end),
                    reservation.recurrence.value,
                    reservation.interval,
                    _to_db(reservation.until),
                    int(reservation.active),
                ),
            )

    def get_program(self, program_id: str) -> Optional[ProgramRequirement]:
        programs = self.list_programs([program_id])
        return programs[0] if programs else None

    def list_programs(self, program_ids: Sequence[str]) -> list[ProgramRequirement]:
        if not program_ids:
            return []
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_PROGRAM_COLUMNS}
                FROM ProgramTypes AS p
                WHERE p.id IN ({_placeholders(program_ids)})
                ORDER BY p.id ASC;
                """,
                tuple(program_ids),
            )
            return [_program_from_row(row) for row in cursor.fetchall()]

    def list_halls(self, active_only: bool = True) -> list[Hall]:
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, name, capacity, active
                FROM Halls
                {"WHERE active = 1" if active_only else ""}
                ORDER BY name ASC, id ASC;
                """
            )
            return [
                Hall(
                    id=str(row["id"]),
                    name=str(row["name"]),
                    capacity=None if row["capacity"] is None else int(row["capacity"]),
                    active=bool(row["active"]),
                )
                for row in cursor.fetchall()
            ]

    def list_staff(self, active_only: bool = True) -> list[StaffMember]:
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, name, skills, team_tag, active
                FROM Staff
                {"WHERE active = 1" if active_only else ""}
                ORDER BY id ASC;
                """
            )
            return [_staff_from_row(row) for row in cursor.fetchall()]

    def list_space_reservations(self, active_only: bool = True) -> list[SpaceReservation]:
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, title, hall_id, blocks_hall, start_at, end_at,
                       recurrence, interval, until, active
                FROM SpaceReservations
                {"WHERE active = 1" if active_only else ""}
                ORDER BY start_at ASC, id ASC;
                """
            )
            return [
                SpaceReservation(
                    id=str(row["id"]),
                    title=str(row["title"]),
                    window=TimeWindow(_from_db(row["start_at"]), _from_db(row["end_at"])),
                    hall_id=row["hall_id"],
                    blocks_hall=bool(row["blocks_hall"]),
                    recurrence=Recurrence(row["recurrence"]),
                    interval=int(row["interval"]),
                    until=_from_db(row["until"]),
                    active=bool(row["active"]),
                )
                for row in cursor.fetchall()
            ]

    # --- bookings -------------------------------------------------------

    def _load_items(
        self,
        conn: sqlite3.Connection,
        booking_ids: Sequence[str],
    ) -> dict[str, list[BookingItem]]:
        items: dict[str, list[BookingItem]] = {booking_id: [] for booking_id in booking_ids}
        if not booking_ids:
            return items
        cursor = conn.cursor()
        cursor.execute(
            f"""
            SELECT i.id AS item_id, i.booking_id, {_PROGRAM_COLUMNS}
            FROM BookingItems AS i
            INNER JOIN ProgramTypes AS p ON p.id = i.program_id
            WHERE i.booking_id IN ({_placeholders(booking_ids)})
            ORDER BY i.rowid ASC;
            """,
            tuple(booking_ids),
        )
        for row in cursor.fetchall():
            items[str(row["booking_id"])].append(
                BookingItem(
                    id=str(row["item_id"]),
                    booking_id=str(row["booking_id"]),
                    program=_program_from_row(row),
                )
            )
        return items

    def _bookings_from_rows(
        self,
        conn: sqlite3.Connection,
        rows: Sequence[sqlite3.Row],
    ) -> list[Booking]:
        items = self._load_items(conn, [str(row["id"]) for row in rows])
        return [
            Booking(
                id=str(row["id"]),
                title=str(row["title"]),
                window=TimeWindow(_from_db(row["start_at"]), _from_db(row["end_at"])),
                location_type=LocationType(row["location_type"]),
                status=BookingStatus(row["status"]),
                attendees=int(row["attendees"]),
                hall_id=row["hall_id"],
                address=row["address"],
                items=tuple(items[str(row["id"])]),
                created_at=_from_db(row["created_at"]),
            )
            for row in rows
        ]

    def insert_booking(
        self,
        *,
        title: str,
        window: TimeWindow,
        location_type: LocationType,
        program_ids: Sequence[str],
        attendees: int = 1,
        hall_id: Optional[str] = None,
        address: Optional[str] = None,
        status: BookingStatus = BookingStatus.PENDING,
        created_at: Optional[datetime] = None,
    ) -> Booking:
        """Insert a booking and its items; return the stored aggregate."""
        booking_id = uuid4().hex
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Bookings (
                    id, title, start_at, end_at, location_type, status,
                    attendees, hall_id, address, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    booking_id,
                    title,
                    _to_db(window.start),
                    _to_db(window.end),
                    location_type.value,
                    status.value,
                    attendees,
                    hall_id,
                    address,
                    _to_db(created_at or datetime.now(timezone.utc)),
                ),
            )
            cursor.executemany(
                "INSERT INTO BookingItems (id, booking_id, program_id) VALUES (?, ?, ?);",
                [(uuid4().hex, booking_id, program_id) for program_id in program_ids],
            )
        booking = self.get_booking(booking_id)
        if booking is None:
            raise RuntimeError(f"Booking {booking_id} vanished after insert")
        return booking

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_BOOKING_COLUMNS} FROM Bookings AS b WHERE b.id = ?;",
                (booking_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._bookings_from_rows(conn, [row])[0]

    def update_booking_schedule(
        self,
        booking_id: str,
        window: TimeWindow,
        hall_id: Optional[str],
    ) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE Bookings SET start_at = ?, end_at = ?, hall_id = ? WHERE id = ?;",
                (_to_db(window.start), _to_db(window.end), hall_id, booking_id),
            )

    def update_booking_status(self, booking_id: str, status: BookingStatus) -> None:
        with self._session() as conn:
            conn.execute(
                "UPDATE Bookings SET status = ? WHERE id = ?;",
                (status.value, booking_id),
            )

    def expire_pending_created_before(self, cutoff: datetime) -> int:
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Bookings
                SET status = 'EXPIRED'
                WHERE status = 'PENDING' AND created_at < ?;
                """,
                (_to_db(cutoff),),
            )
            return int(cursor.rowcount)

    def list_active_bookings_overlapping(
        self,
        window: TimeWindow,
        *,
        exclude_booking_id: Optional[str] = None,
        location_type: Optional[LocationType] = None,
        hall_id: Optional[str] = None,
    ) -> list[Booking]:
        """Active bookings whose stored window intersects ``window``."""
        clauses = [
            f"b.status IN ({_placeholders(_ACTIVE_STATUS_VALUES)})",
            "b.start_at < ?",
            "b.end_at > ?",
        ]
        params: list[object] = [*_ACTIVE_STATUS_VALUES, _to_db(window.end), _to_db(window.start)]
        if exclude_booking_id is not None:
            clauses.append("b.id <> ?")
            params.append(exclude_booking_id)
        if location_type is not None:
            clauses.append("b.location_type = ?")
            params.append(location_type.value)
        if hall_id is not None:
            clauses.append("b.hall_id = ?")
            params.append(hall_id)
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_BOOKING_COLUMNS}
                FROM Bookings AS b
                WHERE {" AND ".join(clauses)}
                ORDER BY b.start_at ASC, b.id ASC;
                """,
                tuple(params),
            )
            return self._bookings_from_rows(conn, cursor.fetchall())

    def count_singing_bookings_between(
        self,
        start: datetime,
        end: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> int:
        """Active bookings with singing duty whose start lies in ``[start, end)``."""
        params: list[object] = [*_ACTIVE_STATUS_VALUES, _to_db(start), _to_db(end)]
        exclusion = ""
        if exclude_booking_id is not None:
            exclusion = "AND b.id <> ?"
            params.append(exclude_booking_id)
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT COUNT(DISTINCT b.id) AS count
                FROM Bookings AS b
                INNER JOIN BookingItems AS i ON i.booking_id = b.id
                INNER JOIN ProgramTypes AS p ON p.id = i.program_id
                WHERE b.status IN ({_placeholders(_ACTIVE_STATUS_VALUES)})
                  AND b.start_at >= ?
                  AND b.start_at < ?
                  AND (
                      p.min_singers > 0
                      OR p.trailing_singing_minutes > 0
                      OR p.category = 'SINGING'
                  )
                  {exclusion};
                """,
                tuple(params),
            )
            return int(cursor.fetchone()["count"])

    # --- assignments ----------------------------------------------------

    def list_busy_intervals(
        self,
        window: TimeWindow,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> list[BusyInterval]:
        """Live assignments of active bookings whose effective window meets ``window``.

        An assignment without its own sub-window covers its booking's window.
        """
        params: list[object] = [*_ACTIVE_STATUS_VALUES, _to_db(window.end), _to_db(window.start)]
        exclusion = ""
        if exclude_booking_id is not None:
            exclusion = "AND b.id <> ?"
            params.append(exclude_booking_id)
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT
                    a.staff_id,
                    a.booking_id,
                    COALESCE(a.start_at, b.start_at) AS effective_start,
                    COALESCE(a.end_at, b.end_at) AS effective_end,
                    b.location_type
                FROM Assignments AS a
                INNER JOIN Bookings AS b ON b.id = a.booking_id
                WHERE a.state IN ('PROPOSED', 'CONFIRMED')
                  AND b.status IN ({_placeholders(_ACTIVE_STATUS_VALUES)})
                  AND COALESCE(a.start_at, b.start_at) < ?
                  AND COALESCE(a.end_at, b.end_at) > ?
                  {exclusion}
                ORDER BY a.staff_id ASC, effective_start ASC;
                """,
                tuple(params),
            )
            return [
                BusyInterval(
                    staff_id=str(row["staff_id"]),
                    booking_id=str(row["booking_id"]),
                    window=TimeWindow(
                        _from_db(row["effective_start"]),
                        _from_db(row["effective_end"]),
                    ),
                    location_type=LocationType(row["location_type"]),
                )
                for row in cursor.fetchall()
            ]

    def list_confirmed_credits(
        self,
        staff_ids: Optional[Sequence[str]] = None,
        *,
        category: Optional[ProgramCategory] = None,
        window: Optional[TimeWindow] = None,
    ) -> list[CreditRecord]:
        """Confirmed work of active bookings, optionally filtered."""
        clauses = [
            "a.state = 'CONFIRMED'",
            f"b.status IN ({_placeholders(_ACTIVE_STATUS_VALUES)})",
        ]
        params: list[object] = [*_ACTIVE_STATUS_VALUES]
        if staff_ids is not None:
            if not staff_ids:
                return []
            clauses.append(f"a.staff_id IN ({_placeholders(staff_ids)})")
            params.extend(staff_ids)
        if category is not None:
            clauses.append("p.category = ?")
            params.append(category.value)
        if window is not None:
            clauses.append("COALESCE(a.start_at, b.start_at) < ?")
            clauses.append("COALESCE(a.end_at, b.end_at) > ?")
            params.extend([_to_db(window.end), _to_db(window.start)])
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT
                    a.staff_id,
                    p.id AS program_id,
                    p.name AS program_name,
                    p.category,
                    p.fairness_weight,
                    COALESCE(a.start_at, b.start_at) AS effective_start,
                    COALESCE(a.end_at, b.end_at) AS effective_end
                FROM Assignments AS a
                INNER JOIN Bookings AS b ON b.id = a.booking_id
                INNER JOIN BookingItems AS i ON i.id = a.booking_item_id
                INNER JOIN ProgramTypes AS p ON p.id = i.program_id
                WHERE {" AND ".join(clauses)}
                ORDER BY effective_start ASC, a.id ASC;
                """,
                tuple(params),
            )
            return [
                CreditRecord(
                    staff_id=str(row["staff_id"]),
                    program_id=str(row["program_id"]),
                    program_name=str(row["program_name"]),
                    category=ProgramCategory(row["category"]),
                    weight=int(row["fairness_weight"]),
                    window=TimeWindow(
                        _from_db(row["effective_start"]),
                        _from_db(row["effective_end"]),
                    ),
                )
                for row in cursor.fetchall()
            ]

    def shift_assignment_windows(self, booking_id: str, delta: timedelta) -> int:
        """Move every explicit assignment window of a booking by ``delta``.

        Rows without their own window follow the booking window already.
        """
        if not delta:
            return 0
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, start_at, end_at
                FROM Assignments
                WHERE booking_id = ? AND start_at IS NOT NULL;
                """,
                (booking_id,),
            )
            shifted = [
                (
                    _to_db(_from_db(row["start_at"]) + delta),
                    _to_db(_from_db(row["end_at"]) + delta),
                    int(row["id"]),
                )
                for row in cursor.fetchall()
            ]
            cursor.executemany(
                "UPDATE Assignments SET start_at = ?, end_at = ? WHERE id = ?;",
                shifted,
            )
            return len(shifted)

    def delete_proposed_assignments(self, booking_id: str) -> int:
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM Assignments WHERE booking_id = ? AND state = 'PROPOSED';",
                (booking_id,),
            )
            return int(cursor.rowcount)

    def insert_assignments(self, assignments: Iterable[Assignment]) -> list[Assignment]:
        """Bulk insert; returns the rows with their generated ids."""
        stored: list[Assignment] = []
        with self._session() as conn:
            cursor = conn.cursor()
            for assignment in assignments:
                window = assignment.window
                cursor.execute(
                    """
                    INSERT INTO Assignments (
                        booking_id, booking_item_id, staff_id, role, start_at, end_at, state
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        assignment.booking_id,
                        assignment.booking_item_id,
                        assignment.staff_id,
                        assignment.role,
                        _to_db(window.start) if window else None,
                        _to_db(window.end) if window else None,
                        assignment.state.value,
                    ),
                )
                stored.append(
                    Assignment(
                        id=int(cursor.lastrowid),
                        booking_id=assignment.booking_id,
                        booking_item_id=assignment.booking_item_id,
                        staff_id=assignment.staff_id,
                        role=assignment.role,
                        window=window,
                        state=assignment.state,
                    )
                )
        return stored

    def list_assignments(
        self,
        booking_id: Optional[str] = None,
        state: Optional[AssignmentState] = None,
    ) -> list[Assignment]:
        clauses: list[str] = []
        params: list[object] = []
        if booking_id is not None:
            clauses.append("booking_id = ?")
            params.append(booking_id)
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, booking_id, booking_item_id, staff_id, role, start_at, end_at, state
                FROM Assignments
                {where}
                ORDER BY id ASC;
                """,
                tuple(params),
            )
            return [_assignment_from_row(row) for row in cursor.fetchall()]

    def confirm_assignments(self, booking_id: str) -> int:
        """PROPOSED -> CONFIRMED on behalf of the external review step."""
        with self._session() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE Assignments
                SET state = 'CONFIRMED'
                WHERE booking_id = ? AND state = 'PROPOSED';
                """,
                (booking_id,),
            )
            return int(cursor.rowcount)

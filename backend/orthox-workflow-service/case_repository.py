"""
OrthoX Workflow Service - Case Persistence Backends

Provides repository implementations for the case store:
- SqliteCaseRepository (runtime default)
- InMemoryCaseRepository (tests / ephemeral runs)

Both apply each call atomically; callers never need cross-call transactions.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict, List

from models import CaseFieldUpdate, CaseMedia, CaseNote, MediaType, OrthoCase

_UPDATABLE_COLUMNS = (
    "diagnosis",
    "treatment_plan",
    "implant_choice",
    "outcome_notes",
    "low_resource_mode",
    "phi_confirmed",
)


def _case_not_found(case_id: str) -> KeyError:
    return KeyError(f"Case not found: {case_id}. Create the case first via POST /cases.")


class CaseRepository:
    backend_name = "abstract"

    def create_case(self, record: OrthoCase) -> OrthoCase:
        raise NotImplementedError

    def get_case(self, case_id: str) -> OrthoCase:
        raise NotImplementedError

    def list_cases(self) -> List[OrthoCase]:
        raise NotImplementedError

    def update_case_fields(self, case_id: str, update: CaseFieldUpdate) -> bool:
        raise NotImplementedError

    def add_note(self, note: CaseNote) -> CaseNote:
        raise NotImplementedError

    def add_media(self, media: CaseMedia) -> CaseMedia:
        raise NotImplementedError


class InMemoryCaseRepository(CaseRepository):
    backend_name = "memory"

    def __init__(self) -> None:
        self._cases: Dict[str, OrthoCase] = {}
        self._notes: List[CaseNote] = []
        self._media: List[CaseMedia] = []
        self._lock = Lock()

    def create_case(self, record: OrthoCase) -> OrthoCase:
        with self._lock:
            if record.id in self._cases:
                raise ValueError(f"Case already exists: {record.id}")
            self._cases[record.id] = record.model_copy(
                deep=True, update={"notes": [], "media": []}
            )
        return self.get_case(record.id)

    def get_case(self, case_id: str) -> OrthoCase:
        with self._lock:
            record = self._cases.get(case_id)
            if record is None:
                raise _case_not_found(case_id)
            notes = [n.model_copy() for n in self._notes if n.case_id == case_id]
            media = [m.model_copy() for m in self._media if m.case_id == case_id]
            return record.model_copy(deep=True, update={"notes": notes, "media": media})

    def list_cases(self) -> List[OrthoCase]:
        with self._lock:
            # Newest first; insertion order breaks timestamp ties.
            ordered = sorted(
                enumerate(self._cases.values()),
                key=lambda item: (item[1].created_at, item[0]),
                reverse=True,
            )
            case_ids = [c.id for _, c in ordered]
        return [self.get_case(case_id) for case_id in case_ids]

    def update_case_fields(self, case_id: str, update: CaseFieldUpdate) -> bool:
        fields = update.non_null_fields()
        with self._lock:
            record = self._cases.get(case_id)
            if record is None:
                raise _case_not_found(case_id)
            if fields:
                self._cases[case_id] = record.model_copy(update=fields)
        return True

    def add_note(self, note: CaseNote) -> CaseNote:
        with self._lock:
            if note.case_id not in self._cases:
                raise _case_not_found(note.case_id)
            self._notes.append(note.model_copy())
        return note

    def add_media(self, media: CaseMedia) -> CaseMedia:
        with self._lock:
            if media.case_id not in self._cases:
                raise _case_not_found(media.case_id)
            self._media.append(media.model_copy())
        return media


class SqliteCaseRepository(CaseRepository):
    backend_name = "sqlite"

    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite repository requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cases (
                    id TEXT PRIMARY KEY,
                    patient_reference_id TEXT NOT NULL,
                    patient_name TEXT NOT NULL,
                    diagnosis TEXT,
                    treatment_plan TEXT,
                    implant_choice TEXT,
                    outcome_notes TEXT,
                    low_resource_mode INTEGER NOT NULL DEFAULT 0,
                    phi_confirmed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notes (
                    id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
                    content TEXT NOT NULL,
                    source_url TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS media (
                    id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
                    type TEXT NOT NULL,
                    url TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_cases_created
                ON cases(created_at DESC)
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_notes_case ON notes(case_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_media_case ON media(case_id)")
            conn.commit()

    @staticmethod
    def _row_to_case(row: sqlite3.Row) -> OrthoCase:
        return OrthoCase(
            id=str(row["id"]),
            patient_reference_id=str(row["patient_reference_id"]),
            patient_name=str(row["patient_name"]),
            diagnosis=row["diagnosis"],
            treatment_plan=row["treatment_plan"],
            implant_choice=row["implant_choice"],
            outcome_notes=row["outcome_notes"],
            low_resource_mode=bool(row["low_resource_mode"]),
            phi_confirmed=bool(row["phi_confirmed"]),
            created_at=datetime.fromisoformat(str(row["created_at"])),
        )

    def create_case(self, record: OrthoCase) -> OrthoCase:
        with self._lock, self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO cases (
                        id,
                        patient_reference_id,
                        patient_name,
                        diagnosis,
                        treatment_plan,
                        implant_choice,
                        outcome_notes,
                        low_resource_mode,
                        phi_confirmed,
                        created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.patient_reference_id,
                        record.patient_name,
                        record.diagnosis,
                        record.treatment_plan,
                        record.implant_choice,
                        record.outcome_notes,
                        int(record.low_resource_mode),
                        int(record.phi_confirmed),
                        record.created_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Case already exists: {record.id}") from exc
            conn.commit()
        return self.get_case(record.id)

    def get_case(self, case_id: str) -> OrthoCase:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM cases WHERE id = ?", (case_id,)).fetchone()
            if row is None:
                raise _case_not_found(case_id)
            note_rows = conn.execute(
                "SELECT * FROM notes WHERE case_id = ? ORDER BY created_at ASC, rowid ASC",
                (case_id,),
            ).fetchall()
            media_rows = conn.execute(
                "SELECT * FROM media WHERE case_id = ? ORDER BY created_at ASC, rowid ASC",
                (case_id,),
            ).fetchall()

        record = self._row_to_case(row)
        record.notes = [
            CaseNote(
                id=str(n["id"]),
                case_id=str(n["case_id"]),
                content=str(n["content"]),
                source_url=n["source_url"],
                created_at=datetime.fromisoformat(str(n["created_at"])),
            )
            for n in note_rows
        ]
        record.media = [
            CaseMedia(
                id=str(m["id"]),
                case_id=str(m["case_id"]),
                type=MediaType(str(m["type"])),
                url=str(m["url"]),
                created_at=datetime.fromisoformat(str(m["created_at"])),
            )
            for m in media_rows
        ]
        return record

    def list_cases(self) -> List[OrthoCase]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM cases ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return [self.get_case(str(row["id"])) for row in rows]

    def update_case_fields(self, case_id: str, update: CaseFieldUpdate) -> bool:
        fields = {k: v for k, v in update.non_null_fields().items() if k in _UPDATABLE_COLUMNS}
        with self._lock, self._connect() as conn:
            exists = conn.execute("SELECT 1 FROM cases WHERE id = ?", (case_id,)).fetchone()
            if exists is None:
                raise _case_not_found(case_id)
            if not fields:
                return True
            # Field-level SET keeps concurrent writers of other columns intact.
            assignments = ", ".join(f"{column} = ?" for column in fields)
            params: List[object] = [
                int(value) if isinstance(value, bool) else value for value in fields.values()
            ]
            params.append(case_id)
            conn.execute(f"UPDATE cases SET {assignments} WHERE id = ?", tuple(params))
            conn.commit()
        return True

    def add_note(self, note: CaseNote) -> CaseNote:
        with self._lock, self._connect() as conn:
            exists = conn.execute("SELECT 1 FROM cases WHERE id = ?", (note.case_id,)).fetchone()
            if exists is None:
                raise _case_not_found(note.case_id)
            conn.execute(
                """
                INSERT INTO notes (id, case_id, content, source_url, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (note.id, note.case_id, note.content, note.source_url, note.created_at.isoformat()),
            )
            conn.commit()
        return note

    def add_media(self, media: CaseMedia) -> CaseMedia:
        with self._lock, self._connect() as conn:
            exists = conn.execute("SELECT 1 FROM cases WHERE id = ?", (media.case_id,)).fetchone()
            if exists is None:
                raise _case_not_found(media.case_id)
            conn.execute(
                """
                INSERT INTO media (id, case_id, type, url, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (media.id, media.case_id, media.type.value, media.url, media.created_at.isoformat()),
            )
            conn.commit()
        return media

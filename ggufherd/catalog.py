"""
catalog.py — SQLite catalog of local GGUF files, keyed by slug

Each row maps a short slug to one model file on disk plus the HuggingFace
repo it came from. Every operation is a single short transaction; the
catalog never holds a connection open between calls.

Usage:
    cat = Catalog("~/.cache/gguf/gguf.db")
    cat.upsert("qwen-math", "bartowski/Qwen2.5-Math-1.5B-Instruct-GGUF",
               "model.Q4_K_M.gguf", "/models/model.Q4_K_M.gguf", "1.2G")
    cat.resolve("qwen-math")           # -> "/models/model.Q4_K_M.gguf"
    cat.rename("qwen-math", "qm")
    cat.import_from_directory("~/.cache/gguf/models")
    print(cat.to_frame().to_string(index=False))
"""

from __future__ import annotations
import logging
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import pandas as pd

from .config import human_size
from .errors import Conflict, InvalidInput, NotFound

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS models (
    id INTEGER PRIMARY KEY,
    slug TEXT UNIQUE,
    model_id TEXT,
    file_name TEXT,
    file_path TEXT,
    file_size TEXT,
    created_at TEXT,
    last_used TEXT
)
"""

COLUMNS = ["slug", "model_id", "file_name", "file_path", "file_size", "created_at", "last_used"]

_MODEL_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+/[a-zA-Z0-9_.-]+$")
_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _now() -> str:
    # Fixed-width UTC timestamps so string order is time order
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _stamp(when: datetime | str | None) -> str:
    if when is None:
        return _now()
    if isinstance(when, str):
        return when
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class ModelRecord:
    slug: str
    model_id: str
    file_name: str
    file_path: str
    file_size: str
    created_at: str
    last_used: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ModelRecord":
        return cls(**{c: row[c] for c in COLUMNS})


class Catalog:
    """Persistent slug → model file mapping."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Store I/O
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._transaction() as conn:
            conn.execute(SCHEMA)

    def reset(self):
        """Drop the store file and recreate an empty table."""
        logger.warning("Resetting the database...")
        self.db_path.unlink(missing_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def upsert(self, slug: str, model_id: str, file_name: str,
               file_path: str | Path, file_size: str) -> ModelRecord:
        """
        Insert a record, or replace whatever record already holds *slug*.
        Latest wins: an unrelated entry with the same slug is overwritten.
        """
        record = ModelRecord(
            slug=slug,
            model_id=model_id,
            file_name=file_name,
            file_path=str(file_path),
            file_size=file_size,
            created_at=_now(),
        )
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO models "
                "(slug, model_id, file_name, file_path, file_size, created_at, last_used) "
                "VALUES (?, ?, ?, ?, ?, ?, NULL)",
                (record.slug, record.model_id, record.file_name,
                 record.file_path, record.file_size, record.created_at),
            )
        return record

    def touch_last_used(self, slug: str, when: datetime | str | None = None):
        """Advance last_used to *when* (default now). Unknown slugs are ignored."""
        stamp = _stamp(when)
        with self._transaction() as conn:
            conn.execute(
                "UPDATE models SET last_used = ? "
                "WHERE slug = ? AND (last_used IS NULL OR last_used < ?)",
                (stamp, slug, stamp),
            )

    def remove(self, slug: str):
        with self._transaction() as conn:
            conn.execute("DELETE FROM models WHERE slug = ?", (slug,))

    def rename(self, old_slug: str, new_slug: str):
        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM models WHERE slug = ?", (old_slug,)).fetchone() is None:
                raise NotFound(f"Model with slug '{old_slug}' not found.")
            if conn.execute("SELECT 1 FROM models WHERE slug = ?", (new_slug,)).fetchone() is not None:
                raise Conflict(f"Model with slug '{new_slug}' already exists.")
            try:
                conn.execute("UPDATE models SET slug = ? WHERE slug = ?", (new_slug, old_slug))
            except sqlite3.IntegrityError as exc:
                raise Conflict(f"Model with slug '{new_slug}' already exists.") from exc

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def get(self, slug: str) -> Optional[ModelRecord]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM models WHERE slug = ?", (slug,)).fetchone()
        return ModelRecord.from_row(row) if row else None

    def resolve(self, slug: str) -> str:
        """Return the file path for *slug*; does not bump last_used."""
        record = self.get(slug)
        if record is None:
            raise NotFound(f"Model with slug '{slug}' not found in the database.")
        return record.file_path

    def find_by_path(self, file_path: str | Path) -> Optional[ModelRecord]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM models WHERE file_path = ? LIMIT 1", (str(file_path),)
            ).fetchone()
        return ModelRecord.from_row(row) if row else None

    def slug_for_file_name(self, file_name: str) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT slug FROM models WHERE file_name = ? LIMIT 1", (file_name,)
            ).fetchone()
        return row["slug"] if row else None

    def list(self) -> list[ModelRecord]:
        """Most recently used first; never-used records last, newest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM models "
                "ORDER BY last_used IS NULL, last_used DESC, created_at DESC"
            ).fetchall()
        return [ModelRecord.from_row(r) for r in rows]

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame([r.__dict__ for r in self.list()], columns=COLUMNS)
        df["last_used"] = df["last_used"].fillna("Never")
        return df.rename(columns={
            "slug": "SLUG", "file_name": "MODEL", "file_size": "SIZE", "last_used": "LAST USED",
        })[["SLUG", "MODEL", "SIZE", "LAST USED"]]

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_from_directory(self, root: str | Path) -> list[ModelRecord]:
        """
        Register every .gguf under *root* that is not already catalogued.
        The model id is the file's path relative to *root*.
        """
        root = Path(root).expanduser().resolve()
        imported = []
        if not root.exists():
            logger.warning("Directory not found: %s", root)
            return imported

        logger.info("Scanning for existing models in %s...", root)
        for path in sorted(root.rglob("*.gguf")):
            if not path.is_file():
                continue
            model_id = path.relative_to(root).as_posix()
            slug = derive_slug(model_id)
            if self.find_by_path(path) is not None:
                logger.warning("Model already in database: %s", slug)
                continue
            record = self.upsert(slug, model_id, path.name, path, human_size(path.stat().st_size))
            logger.info("Imported model: %s", slug)
            imported.append(record)
        logger.info("Import completed.")
        return imported


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def derive_slug(identifier: str) -> str:
    """
    Slug from a hub id or relative path: last path segment, lower-cased,
    every run of non [a-z0-9] characters folded to one hyphen, no hyphen at
    either end.

        bartowski/Qwen2.5-Math-1.5B-Instruct-GGUF -> qwen2-5-math-1-5b-instruct-gguf
    """
    last = identifier.rsplit("/", 1)[-1]
    return _NON_SLUG_RE.sub("-", last.lower()).strip("-")


def is_valid_model_id(model_id: str) -> bool:
    return bool(_MODEL_ID_RE.match(model_id or ""))


def validate_model_id(model_id: str) -> str:
    if not is_valid_model_id(model_id):
        raise InvalidInput(
            f"Invalid Hugging Face model ID {model_id!r}. "
            "It should be in the form 'author/model-name'."
        )
    return model_id

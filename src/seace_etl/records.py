"""SQLite store for scraped procurement process records."""

import logging
import sqlite3
from pathlib import Path
from typing import Any, List, Optional

from .models import ProcessRecord

logger = logging.getLogger(__name__)

UNCATEGORIZED_VALUES = ("", "NO_CATEGORIZADO", "OTROS")
LOCATION_PLACEHOLDERS = ("", "No especificado", "Por Determinar", "No Determinado", "Error")

_COLUMNS = list(ProcessRecord.model_fields)
_UPDATABLE = set(_COLUMNS) - {"id_proceso"}


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS procesos (
            id_proceso TEXT PRIMARY KEY,
            nombre_entidad TEXT,
            fecha_publicacion TEXT,
            nomenclatura TEXT,
            reiniciado_desde TEXT,
            objeto_contratacion TEXT,
            descripcion_objeto TEXT,
            estado_proceso TEXT,
            tipo_proceso TEXT,
            numero_convocatoria TEXT,
            codigo_snip TEXT,
            codigo_cui TEXT,
            departamento TEXT,
            provincia TEXT,
            distrito TEXT,
            monto_referencial REAL,
            moneda TEXT,
            version_seace TEXT,
            source_url TEXT,
            pagina_scraping INTEGER,
            fecha_scraping TEXT,
            categoria_proyecto TEXT,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
        """
    )


def _placeholders_sql(column: str, values: tuple) -> str:
    marks = ", ".join("?" for _ in values)
    return f"({column} IS NULL OR TRIM({column}) IN ({marks}))"


_UNCATEGORIZED_WHERE = _placeholders_sql("categoria_proyecto", UNCATEGORIZED_VALUES)
_INCOMPLETE_LOCATION_WHERE = " OR ".join(
    _placeholders_sql(column, LOCATION_PLACEHOLDERS)
    for column in ("departamento", "provincia", "distrito")
)
_INCOMPLETE_LOCATION_PARAMS = LOCATION_PLACEHOLDERS * 3


class RecordStore:
    """Upserts and targeted queries over the `procesos` table.

    A short-lived connection is opened per call so worker threads never share
    one.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            _ensure_schema(conn)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def exists(self, id_proceso: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM procesos WHERE id_proceso = ?", (id_proceso,)).fetchone()
        return row is not None

    def get(self, id_proceso: str) -> Optional[ProcessRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM procesos WHERE id_proceso = ?", (id_proceso,)).fetchone()
        return self._to_record(row) if row else None

    def upsert(self, record: ProcessRecord) -> bool:
        """Insert or refresh a record. Returns True when it was new."""
        payload = record.model_dump()
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT categoria_proyecto, departamento, provincia, distrito FROM procesos WHERE id_proceso = ?",
                (record.id_proceso,),
            ).fetchone()
            if existing is None:
                columns = ", ".join(_COLUMNS)
                marks = ", ".join("?" for _ in _COLUMNS)
                conn.execute(
                    f"INSERT INTO procesos ({columns}) VALUES ({marks})",
                    [payload[column] for column in _COLUMNS],
                )
                return True

            # Keep enrichment results when a fresh scrape has nothing better.
            for column in ("categoria_proyecto", "departamento", "provincia", "distrito"):
                if payload.get(column) in (None, "") and existing[column]:
                    payload[column] = existing[column]
            assignments = ", ".join(f"{column} = ?" for column in _COLUMNS if column != "id_proceso")
            conn.execute(
                f"UPDATE procesos SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id_proceso = ?",
                [payload[column] for column in _COLUMNS if column != "id_proceso"] + [record.id_proceso],
            )
            return False

    def update_fields(self, id_proceso: str, **fields: Any) -> bool:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown record fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE procesos SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id_proceso = ?",
                list(fields.values()) + [id_proceso],
            )
            return cursor.rowcount > 0

    def find_uncategorized(self, limit: Optional[int] = None) -> List[ProcessRecord]:
        return self._find(_UNCATEGORIZED_WHERE, UNCATEGORIZED_VALUES, limit)

    def count_uncategorized(self) -> int:
        return self._count(_UNCATEGORIZED_WHERE, UNCATEGORIZED_VALUES)

    def find_incomplete_location(self, limit: Optional[int] = None) -> List[ProcessRecord]:
        return self._find(_INCOMPLETE_LOCATION_WHERE, _INCOMPLETE_LOCATION_PARAMS, limit)

    def count_incomplete_location(self) -> int:
        return self._count(_INCOMPLETE_LOCATION_WHERE, _INCOMPLETE_LOCATION_PARAMS)

    def count(self) -> int:
        return self._count("1 = 1", ())

    def _find(self, where: str, params: tuple, limit: Optional[int]) -> List[ProcessRecord]:
        sql = f"SELECT * FROM procesos WHERE {where} ORDER BY fecha_publicacion DESC, id_proceso"
        args: list = list(params)
        if limit:
            sql += " LIMIT ?"
            args.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(sql, args).fetchall()
        return [self._to_record(row) for row in rows]

    def _count(self, where: str, params: tuple) -> int:
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM procesos WHERE {where}", params).fetchone()[0]

    @staticmethod
    def _to_record(row: sqlite3.Row) -> ProcessRecord:
        return ProcessRecord.model_validate({column: row[column] for column in _COLUMNS})

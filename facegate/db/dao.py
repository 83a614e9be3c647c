import os
import sqlite3
import uuid
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from facegate.app.errors import EmbeddingShapeError, EnrollmentCorrupt
from facegate.app.utils import as_embedding, compress_embedding, decompress_embedding, now_ts


@dataclass(frozen=True)
class EnrollmentRecord:
    user_id: str
    embedding: np.ndarray = field(repr=False, compare=False)
    captured_at: float
    quality_score: float
    label: str = ""
    model_tag: str = ""


class EnrollmentStore:
    """Storage collaborator used by enrollment and verification."""

    def load_enrollment(self, user_id: str) -> Optional[EnrollmentRecord]:
        raise NotImplementedError

    def save_enrollment(self, record: EnrollmentRecord) -> str:
        raise NotImplementedError


def _read_schema() -> str:
    here = os.path.dirname(__file__)
    path = os.path.join(here, "schema.sql")
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


class Database(EnrollmentStore):
    def __init__(self, db_path: str):
        self.db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self._migrate()

    def _migrate(self):
        self.conn.executescript(_read_schema())
        self.conn.commit()

    def close(self):
        self.conn.close()

    def execute(self, sql: str, params: Tuple = ()):
        cur = self.conn.execute(sql, params)
        self.conn.commit()
        return cur

    def query(self, sql: str, params: Tuple = ()) -> List[Tuple]:
        cur = self.conn.execute(sql, params)
        return cur.fetchall()

    def save_enrollment(self, record: EnrollmentRecord) -> str:
        vec = as_embedding(record.embedding)
        rid = str(uuid.uuid4())
        self.execute(
            """
            INSERT INTO enrollments (id,user_id,label,embedding,dim,model_tag,quality,captured_at,created_at)
            VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (
                rid,
                record.user_id,
                record.label,
                compress_embedding(vec),
                int(vec.size),
                record.model_tag,
                float(record.quality_score),
                float(record.captured_at),
                now_ts(),
            ),
        )
        return rid

    def load_enrollment(self, user_id: str) -> Optional[EnrollmentRecord]:
        rows = self.query(
            """
            SELECT id,user_id,label,embedding,dim,model_tag,quality,captured_at FROM enrollments
            WHERE user_id=? ORDER BY captured_at DESC, rowid DESC LIMIT 1
            """,
            (user_id,),
        )
        if not rows:
            return None
        rid, uid, label, blob, dim, model_tag, quality, captured_at = rows[0]
        try:
            emb = decompress_embedding(blob)
            emb = as_embedding(emb)
        except (zlib.error, TypeError, ValueError, EmbeddingShapeError) as exc:
            raise EnrollmentCorrupt(f"stored embedding {rid} for {uid} is unreadable: {exc}") from exc
        if emb.size != int(dim):
            raise EnrollmentCorrupt(f"stored embedding {rid} has {emb.size} values, expected {dim}")
        return EnrollmentRecord(
            user_id=uid,
            embedding=emb,
            captured_at=float(captured_at),
            quality_score=float(quality),
            label=label or "",
            model_tag=model_tag or "",
        )

    def list_enrollments(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT id,user_id,label,dim,model_tag,quality,captured_at,created_at FROM enrollments"
        params: Tuple = ()
        if user_id:
            sql += " WHERE user_id=?"
            params = (user_id,)
        rows = self.query(sql + " ORDER BY captured_at DESC", params)
        return [
            dict(
                id=r[0], user_id=r[1], label=r[2], dim=r[3], model_tag=r[4], quality=r[5], captured_at=r[6],
                created_at=r[7],
            )
            for r in rows
        ]

"""
consent_store.py
----------------
ClaimBridge — Blue Button Consent Broker — Consent Store
--------------------------------------------------------
SQLite persistence for consent bindings and for the single-use registry of
OAuth2 authorization codes.

Table: consents
  - One row per (clinic_id, internal_patient_ref); upserted on every
    successful authorization-code exchange.
  - patient_external_id is the Blue Button beneficiary id; unique per clinic.
  - encrypted_refresh_token holds a Crypto Vault envelope, never plaintext.
  - Rows are never deleted here (revocation is owned elsewhere).

Table: used_authorization_codes
  - SHA-256 digest of every authorization code presented for exchange.
  - INSERT OR IGNORE makes the "was it used?" check and the "mark used"
    write a single atomic statement, so the guarantee holds across workers
    sharing the same database file.

Public API:
    init_db()                    — Create tables + indexes if absent. Idempotent.
    get_connection()             — Context-manager yielding an open connection.
    upsert_consent()             — INSERT or UPDATE one consent binding.
    get_consent()                — SELECT by (clinic_id, internal_patient_ref).
    list_consents()              — SELECT all consents for a clinic.
    swap_refresh_token()         — Compare-and-swap the stored envelope.
    claim_authorization_code()   — Atomically mark a code as consumed.

Author: Shreelakshmi Gopinatha Rao
Project: ClaimBridge — Blue Button Consent Broker
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional

from errors import ConsentBindingError
from schemas import ConsentRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DB location: overridable per call or via CONSENT_DB_PATH
# ---------------------------------------------------------------------------
_DB_PATH: Path = Path(__file__).parent / "consent_store.sqlite"

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------
_DDL = """
CREATE TABLE IF NOT EXISTS consents (
    id                      INTEGER PRIMARY KEY AUTOINCREMENT,
    clinic_id               TEXT    NOT NULL,
    internal_patient_ref    TEXT    NOT NULL,
    patient_external_id     TEXT    NOT NULL,
    encrypted_refresh_token TEXT    NOT NULL,
    created_at              TEXT    NOT NULL,
    updated_at              TEXT    NOT NULL,
    UNIQUE (clinic_id, internal_patient_ref)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_consents_external
    ON consents (patient_external_id, clinic_id);
CREATE INDEX IF NOT EXISTS idx_consents_clinic ON consents (clinic_id);

CREATE TABLE IF NOT EXISTS used_authorization_codes (
    code_digest TEXT PRIMARY KEY,
    used_at     TEXT NOT NULL
);
"""


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------

def init_db(db_path: Optional[Path] = None) -> None:
    """
    Create the consent tables and indexes if they do not exist.

    Args:
        db_path: Override the default DB file location.  Useful in tests.
    """
    path = db_path or _DB_PATH
    with sqlite3.connect(str(path)) as conn:
        conn.executescript(_DDL)
        conn.commit()
    logger.info("consent_store: DB ready at '%s'.", path)


@contextmanager
def get_connection(
    db_path: Optional[Path] = None,
) -> Generator[sqlite3.Connection, None, None]:
    """
    Yield an open ``sqlite3.Connection`` that commits on clean exit and rolls
    back on exception.
    """
    path = db_path or _DB_PATH
    conn = sqlite3.connect(str(path), timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_record(row: sqlite3.Row) -> ConsentRecord:
    return ConsentRecord(
        patient_external_id=row["patient_external_id"],
        clinic_id=row["clinic_id"],
        internal_patient_ref=row["internal_patient_ref"],
        encrypted_refresh_token=row["encrypted_refresh_token"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


_SELECT = """
    SELECT clinic_id, internal_patient_ref, patient_external_id,
           encrypted_refresh_token, created_at, updated_at
      FROM consents
"""


# ---------------------------------------------------------------------------
# Write operations
# ---------------------------------------------------------------------------

def upsert_consent(
    clinic_id: str,
    internal_patient_ref: str,
    patient_external_id: str,
    encrypted_refresh_token: str,
    db_path: Optional[Path] = None,
) -> ConsentRecord:
    """
    INSERT a consent or UPDATE the existing one for (clinic, internal ref).

    ``created_at`` is preserved on update; ``updated_at`` is refreshed.

    Returns:
        ConsentRecord: the row as stored.

    Raises:
        ConsentBindingError: the beneficiary is already bound to a different
                             internal_patient_ref in this clinic.
    """
    now = _now()
    sql = """
        INSERT INTO consents
            (clinic_id, internal_patient_ref, patient_external_id,
             encrypted_refresh_token, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (clinic_id, internal_patient_ref) DO UPDATE SET
            patient_external_id     = excluded.patient_external_id,
            encrypted_refresh_token = excluded.encrypted_refresh_token,
            updated_at              = excluded.updated_at
    """
    try:
        with get_connection(db_path) as conn:
            conn.execute(
                sql,
                (clinic_id, internal_patient_ref, patient_external_id,
                 encrypted_refresh_token, now, now),
            )
            row = conn.execute(
                _SELECT + " WHERE clinic_id = ? AND internal_patient_ref = ?",
                (clinic_id, internal_patient_ref),
            ).fetchone()
    except sqlite3.IntegrityError as exc:
        raise ConsentBindingError(
            f"Beneficiary already bound to another record in clinic {clinic_id}."
        ) from exc

    logger.info(
        "consent_store: consent upserted (clinic=%s, internal_ref=%s).",
        clinic_id, internal_patient_ref,
    )
    return _row_to_record(row)


def swap_refresh_token(
    clinic_id: str,
    internal_patient_ref: str,
    expected_envelope: str,
    new_envelope: str,
    db_path: Optional[Path] = None,
) -> bool:
    """
    Replace the stored envelope only if it still equals *expected_envelope*.

    A single conditional UPDATE, so the rotation is never observable
    half-applied and a concurrent writer cannot be overwritten.

    Returns:
        bool: True if this call won the swap, False if the row changed (or
              vanished) since *expected_envelope* was read.
    """
    with get_connection(db_path) as conn:
        cur = conn.execute(
            """
            UPDATE consents
               SET encrypted_refresh_token = ?, updated_at = ?
             WHERE clinic_id = ? AND internal_patient_ref = ?
               AND encrypted_refresh_token = ?
            """,
            (new_envelope, _now(), clinic_id, internal_patient_ref, expected_envelope),
        )
        won = cur.rowcount == 1

    logger.debug(
        "consent_store: refresh-token swap %s (clinic=%s, internal_ref=%s).",
        "applied" if won else "rejected", clinic_id, internal_patient_ref,
    )
    return won


def claim_authorization_code(code: str, db_path: Optional[Path] = None) -> bool:
    """
    Record *code* as consumed.

    Returns:
        bool: True the first time a code is presented, False on any reuse.
    """
    digest = hashlib.sha256(code.encode("utf-8")).hexdigest()
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "INSERT OR IGNORE INTO used_authorization_codes (code_digest, used_at) VALUES (?, ?)",
            (digest, _now()),
        )
        return cur.rowcount == 1


# ---------------------------------------------------------------------------
# Read operations
# ---------------------------------------------------------------------------

def get_consent(
    clinic_id: str,
    internal_patient_ref: str,
    db_path: Optional[Path] = None,
) -> Optional[ConsentRecord]:
    """SELECT the consent for (clinic, internal ref), or None."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            _SELECT + " WHERE clinic_id = ? AND internal_patient_ref = ?",
            (clinic_id, internal_patient_ref),
        ).fetchone()
    return _row_to_record(row) if row else None


def list_consents(clinic_id: str, db_path: Optional[Path] = None) -> List[ConsentRecord]:
    """SELECT every consent held by *clinic_id*, most recently updated first."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            _SELECT + " WHERE clinic_id = ? ORDER BY updated_at DESC",
            (clinic_id,),
        ).fetchall()
    return [_row_to_record(r) for r in rows]

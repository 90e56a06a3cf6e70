from __future__ import annotations

import hashlib
import sqlite3
from typing import Optional

import pandas as pd

from .config import get_settings


# -----------------------
# DB helpers
# -----------------------
def db(path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(path or get_settings().db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def sha256(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def init_db(path: Optional[str] = None):
    with db(path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS contests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                admin_pw_hash TEXT NOT NULL,
                join_code TEXT NOT NULL UNIQUE,
                locked INTEGER NOT NULL DEFAULT 0,
                stage TEXT NOT NULL DEFAULT 'sensory',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                contest_id INTEGER NOT NULL REFERENCES contests(id) ON DELETE CASCADE,
                tracking_code TEXT NOT NULL UNIQUE,
                participant_name TEXT NOT NULL,
                category TEXT NOT NULL,
                product_name TEXT NOT NULL DEFAULT '',
                origin TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- one screening per sample, replaced on re-evaluation
            CREATE TABLE IF NOT EXISTS physical_evaluations (
                sample_id INTEGER PRIMARY KEY REFERENCES samples(id) ON DELETE CASCADE,
                data TEXT NOT NULL,
                global_evaluation TEXT NOT NULL,
                disqualification_reasons TEXT NOT NULL,
                warnings TEXT NOT NULL,
                evaluated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS judges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                contest_id INTEGER NOT NULL REFERENCES contests(id) ON DELETE CASCADE,
                judge_name TEXT NOT NULL,
                judge_token TEXT NOT NULL,
                last_submit_at TEXT,
                UNIQUE(contest_id, judge_name)
            );

            -- sheet stores the raw sliders; score columns are derived from it
            CREATE TABLE IF NOT EXISTS sensory_evaluations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sample_id INTEGER NOT NULL REFERENCES samples(id) ON DELETE CASCADE,
                judge_id INTEGER NOT NULL REFERENCES judges(id) ON DELETE CASCADE,
                rule_set TEXT NOT NULL,
                sheet TEXT NOT NULL,
                overall_quality REAL NOT NULL,
                defects_total REAL NOT NULL,
                verdict TEXT NOT NULL,
                disqualification_reasons TEXT NOT NULL,
                evaluated_at TEXT NOT NULL,
                UNIQUE(sample_id, judge_id)
            );

            CREATE TABLE IF NOT EXISTS judge_assignments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sample_id INTEGER NOT NULL REFERENCES samples(id) ON DELETE CASCADE,
                judge_id INTEGER NOT NULL REFERENCES judges(id) ON DELETE CASCADE,
                status TEXT NOT NULL DEFAULT 'assigned',
                assigned_at TEXT NOT NULL,
                UNIQUE(sample_id, judge_id)
            );

            -- snapshot of the sensory ranking taken when the final round opens
            CREATE TABLE IF NOT EXISTS finalists (
                contest_id INTEGER NOT NULL REFERENCES contests(id) ON DELETE CASCADE,
                sample_id INTEGER NOT NULL REFERENCES samples(id) ON DELETE CASCADE,
                sensory_rank INTEGER NOT NULL,
                sensory_score REAL NOT NULL,
                PRIMARY KEY(contest_id, sample_id)
            );

            CREATE TABLE IF NOT EXISTS final_evaluations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sample_id INTEGER NOT NULL REFERENCES samples(id) ON DELETE CASCADE,
                judge_id INTEGER NOT NULL REFERENCES judges(id) ON DELETE CASCADE,
                rule_set TEXT NOT NULL,
                sheet TEXT NOT NULL,
                overall_quality REAL NOT NULL,
                defects_total REAL NOT NULL,
                verdict TEXT NOT NULL,
                disqualification_reasons TEXT NOT NULL,
                evaluated_at TEXT NOT NULL,
                UNIQUE(sample_id, judge_id)
            );

            CREATE INDEX IF NOT EXISTS idx_judge_assignments_judge ON judge_assignments(judge_id);
            """
        )


EVALUATION_TABLES = {"sensory": "sensory_evaluations", "final": "final_evaluations"}


def load_evaluations_dataframe(
    contest_id: int, path: Optional[str] = None, round_name: str = "sensory"
) -> pd.DataFrame:
    """One row per sheet of the given round ("sensory" or "final"), in the shape aggregate_results expects."""
    table = EVALUATION_TABLES[round_name]
    with db(path) as conn:
        rows = conn.execute(
            f"""
            SELECT ev.id AS evaluation_id, ev.sample_id, s.contest_id, s.tracking_code,
                   s.category, s.participant_name AS participant, ev.overall_quality,
                   ev.verdict, ev.evaluated_at
            FROM {table} ev
            JOIN samples s ON s.id = ev.sample_id
            WHERE s.contest_id = ?
            ORDER BY ev.id
            """,
            (contest_id,),
        ).fetchall()

    return pd.DataFrame(
        [dict(r) for r in rows],
        columns=[
            "evaluation_id",
            "sample_id",
            "contest_id",
            "tracking_code",
            "category",
            "participant",
            "overall_quality",
            "verdict",
            "evaluated_at",
        ],
    )

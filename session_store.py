"""
ExamSessions table: one row of progress per 5-character session ID.
"""

import json
import logging
import secrets
import sqlite3
import string

logger = logging.getLogger(__name__)

SESSION_ID_LENGTH = 5
SESSION_ID_ALPHABET = string.ascii_uppercase + string.digits
MAX_ID_ATTEMPTS = 10
RESULTS = ("pass", "fail")

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS ExamSessions (
        id TEXT PRIMARY KEY,
        wrong_question_ids TEXT NOT NULL DEFAULT '[]',
        exams_taken INTEGER NOT NULL DEFAULT 0,
        exams_passed INTEGER NOT NULL DEFAULT 0,
        exams_failed INTEGER NOT NULL DEFAULT 0
    )
'''

SELECT_SESSION = '''
    SELECT id, wrong_question_ids, exams_taken, exams_passed, exams_failed
    FROM ExamSessions WHERE id = ?
'''


class SessionIdExhausted(Exception):
    """No free session ID was found within MAX_ID_ATTEMPTS inserts."""


def generate_session_id() -> str:
    return "".join(secrets.choice(SESSION_ID_ALPHABET) for _ in range(SESSION_ID_LENGTH))


def encode_wrong_ids(wrong_ids) -> str:
    """JSON array text, duplicates dropped, first-seen order kept."""
    return json.dumps(list(dict.fromkeys(wrong_ids or [])), ensure_ascii=False)


class SessionStore:
    """CRUD over the ExamSessions table.

    Each call opens its own connection; the database file is the only
    shared state between requests.
    """

    def __init__(self, db_path):
        self.db_path = str(db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self):
        conn = self._connect()
        try:
            with conn:
                conn.execute(SCHEMA)
        finally:
            conn.close()

    @staticmethod
    def _fetch(conn, session_id):
        row = conn.execute(SELECT_SESSION, (session_id,)).fetchone()
        return dict(row) if row else None

    def get(self, session_id: str):
        """Snapshot dict for the ID (case-insensitive), or None."""
        conn = self._connect()
        try:
            return self._fetch(conn, session_id.upper())
        finally:
            conn.close()

    def create(self, wrong_ids, result=None, id_factory=generate_session_id) -> dict:
        """Insert a new session with counters seeded from result.

        The primary key is the uniqueness check: a colliding ID fails the
        INSERT and a fresh one is tried.
        """
        wrong_json = encode_wrong_ids(wrong_ids)
        taken = 1 if result else 0
        passed = 1 if result == "pass" else 0
        failed = 1 if result == "fail" else 0

        conn = self._connect()
        try:
            for attempt in range(MAX_ID_ATTEMPTS):
                new_id = id_factory()
                try:
                    with conn:
                        conn.execute(
                            'INSERT INTO ExamSessions '
                            '(id, wrong_question_ids, exams_taken, exams_passed, exams_failed) '
                            'VALUES (?, ?, ?, ?, ?)',
                            (new_id, wrong_json, taken, passed, failed),
                        )
                except sqlite3.IntegrityError:
                    logger.info("Session ID %s already taken (attempt %d)", new_id, attempt + 1)
                    continue
                logger.info("Created session %s", new_id)
                return {
                    "id": new_id,
                    "wrong_question_ids": wrong_json,
                    "exams_taken": taken,
                    "exams_passed": passed,
                    "exams_failed": failed,
                }
        finally:
            conn.close()
        raise SessionIdExhausted(f"No free session ID after {MAX_ID_ATTEMPTS} attempts")

    def update(self, session_id: str, wrong_ids, result=None):
        """Overwrite wrong ids and, with a result, bump the counters in the same statement.

        Returns the new snapshot, or None if the session does not exist.
        """
        session_id = session_id.upper()
        wrong_json = encode_wrong_ids(wrong_ids)
        conn = self._connect()
        try:
            with conn:
                if result:
                    cur = conn.execute(
                        '''UPDATE ExamSessions SET wrong_question_ids = ?,
                               exams_taken = exams_taken + 1,
                               exams_passed = exams_passed + CASE WHEN ? = 'pass' THEN 1 ELSE 0 END,
                               exams_failed = exams_failed + CASE WHEN ? = 'fail' THEN 1 ELSE 0 END
                           WHERE id = ?''',
                        (wrong_json, result, result, session_id),
                    )
                else:
                    cur = conn.execute(
                        'UPDATE ExamSessions SET wrong_question_ids = ? WHERE id = ?',
                        (wrong_json, session_id),
                    )
            if cur.rowcount == 0:
                return None
            logger.info("Updated session %s (result=%s)", session_id, result)
            return self._fetch(conn, session_id)
        finally:
            conn.close()

    def clear(self, session_id: str):
        """Empty the wrong-answer set; counters are left alone."""
        session_id = session_id.upper()
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    "UPDATE ExamSessions SET wrong_question_ids = '[]' WHERE id = ?",
                    (session_id,),
                )
            if cur.rowcount == 0:
                return None
            return self._fetch(conn, session_id)
        finally:
            conn.close()

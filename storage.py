# storage.py
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import timedelta

from errors import InvalidJobError, JobNotFoundError, JobStateError, SignalNotFoundError
from models import (
    CLAIMED, COMPLETED, FAILED, MAX_ERROR_LENGTH, PENDING,
    ExecutionJob, to_iso, utcnow,
)

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, db_path="queue.db", clock=utcnow):
        self.db_path = db_path
        self.clock = clock
        # Autocommit mode; every write goes through _transaction()
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None, timeout=30.0)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Better concurrency for multiple worker processes
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                signal_id TEXT,
                signal TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'claimed', 'completed', 'failed')),
                attempt INTEGER NOT NULL DEFAULT 0,
                claimed_at TEXT,
                last_error TEXT,
                finished_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status, created_at)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS signals (
                id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """)

            # Observability sink
            conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                fn TEXT NOT NULL,
                stage TEXT NOT NULL,
                payload TEXT,
                created_at TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)

    @contextmanager
    def _transaction(self):
        """BEGIN IMMEDIATE takes the database write lock up front, so a
        select-then-update inside the block cannot interleave with another
        connection doing the same."""
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    def _query(self, sql, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql, params=()):
        rows = self._query(sql, params)
        return rows[0] if rows else None

    def _now(self):
        return to_iso(self.clock())

    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info(f"Job {job_id}: {old_state} → {new_state} {extra}".rstrip())

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------------- Queue operations ----------------
    def claim_jobs(self, limit):
        """
        Atomically claim up to `limit` pending jobs, oldest first:
        - status pending -> claimed
        - claimed_at stamped with now
        - attempt incremented
        Concurrent callers never receive the same job.
        """
        if limit <= 0:
            return []

        now = self._now()
        with self._transaction() as conn:
            rows = conn.execute("""
                SELECT id FROM jobs
                WHERE status='pending'
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
            """, (limit,)).fetchall()
            ids = [r["id"] for r in rows]
            if not ids:
                return []

            placeholders = ",".join("?" for _ in ids)
            conn.execute(f"""
                UPDATE jobs
                SET status='claimed', claimed_at=?, attempt=attempt + 1, updated_at=?
                WHERE status='pending' AND id IN ({placeholders})
            """, (now, now, *ids))
            claimed = conn.execute(f"""
                SELECT * FROM jobs WHERE id IN ({placeholders})
                ORDER BY created_at ASC, rowid ASC
            """, ids).fetchall()

        jobs = [ExecutionJob.from_row(r) for r in claimed]
        for job in jobs:
            self._log_transition(job.id, PENDING, CLAIMED, f"(attempt={job.attempt})")
        return jobs

    def _finish(self, job_id, target, error=None, attempt=None):
        now = self._now()
        with self._transaction() as conn:
            row = conn.execute("SELECT status, attempt FROM jobs WHERE id=?", (job_id,)).fetchone()
            if row is None:
                raise JobNotFoundError(job_id)
            if row["status"] == target:
                return False
            if row["status"] != CLAIMED:
                raise JobStateError(job_id, row["status"], target)
            # attempt fences out a worker whose claim was reclaimed and handed on
            if attempt is not None and row["attempt"] != attempt:
                raise JobStateError(job_id, f"claimed by attempt {row['attempt']}", target)
            conn.execute("""
                UPDATE jobs
                SET status=?, last_error=?, claimed_at=NULL, finished_at=?, updated_at=?
                WHERE id=? AND status='claimed' AND attempt=?
            """, (target, error, now, now, job_id, row["attempt"]))
        return True

    def complete_job(self, job_id, attempt=None):
        """
        Mark a claimed job completed. Returns False if it already was.
        Pass the claim's attempt to refuse finishing a claim that has since been re-issued.
        """
        changed = self._finish(job_id, COMPLETED, attempt=attempt)
        if changed:
            self._log_transition(job_id, CLAIMED, COMPLETED)
        return changed

    def fail_job(self, job_id, message, attempt=None):
        """Mark a claimed job failed, keeping at most MAX_ERROR_LENGTH chars of the message."""
        message = (message or "unknown error")[:MAX_ERROR_LENGTH]
        changed = self._finish(job_id, FAILED, error=message, attempt=attempt)
        if changed:
            self._log_transition(job_id, CLAIMED, FAILED, f"(error={message[:200]})")
        return changed

    def reclaim_stale(self, visibility_timeout, max_attempts=None):
        """
        Return claimed jobs whose claim is at least `visibility_timeout` seconds
        old to pending. attempt is left alone; the next claim increments it.
        With max_attempts set, stale jobs that already used their attempts are
        failed instead of re-queued. Returns the number re-queued.
        """
        cutoff = to_iso(self.clock() - timedelta(seconds=visibility_timeout))
        now = self._now()
        stale = "status='claimed' AND claimed_at IS NOT NULL AND claimed_at <= ?"
        exhausted = []
        with self._transaction() as conn:
            if max_attempts is not None:
                exhausted = [r["id"] for r in conn.execute(
                    f"SELECT id FROM jobs WHERE {stale} AND attempt >= ?", (cutoff, max_attempts)
                ).fetchall()]
                conn.execute(f"""
                    UPDATE jobs
                    SET status='failed', claimed_at=NULL, finished_at=?, updated_at=?, last_error=?
                    WHERE {stale} AND attempt >= ?
                """, (now, now, f"exceeded max attempts ({max_attempts}) without completing", cutoff, max_attempts))

            requeue = [r["id"] for r in conn.execute(f"SELECT id FROM jobs WHERE {stale}", (cutoff,)).fetchall()]
            conn.execute(f"""
                UPDATE jobs
                SET status='pending', claimed_at=NULL, updated_at=?
                WHERE {stale}
            """, (now, cutoff))

        for job_id in requeue:
            self._log_transition(job_id, CLAIMED, PENDING, "(stale claim reclaimed)")
        for job_id in exhausted:
            self._log_transition(job_id, CLAIMED, FAILED, f"(max attempts {max_attempts} reached)")
        return len(requeue)

    # ---------------- Job helpers ----------------
    def enqueue_job(self, signal=None, signal_id=None, job_id=None):
        if (signal is None) == (signal_id is None):
            raise InvalidJobError("exactly one of signal or signal_id is required")
        if signal is not None and not isinstance(signal, dict):
            raise InvalidJobError("signal payload must be a JSON object")

        job_id = job_id or uuid.uuid4().hex
        now = self._now()
        payload = json.dumps(signal) if signal is not None else None
        with self._transaction() as conn:
            try:
                conn.execute("""
                    INSERT INTO jobs (id, signal_id, signal, status, attempt, created_at, updated_at)
                    VALUES (?, ?, ?, 'pending', 0, ?, ?)
                """, (job_id, signal_id, payload, now, now))
            except sqlite3.IntegrityError as e:
                raise InvalidJobError(f"job {job_id} already exists") from e
        logger.info(f"Job {job_id} enqueued")
        return self.get_job(job_id)

    def get_job(self, job_id):
        row = self._query_one("SELECT * FROM jobs WHERE id=?", (job_id,))
        return ExecutionJob.from_row(row) if row else None

    def list_jobs(self, status=None, limit=None, newest_first=False):
        sql = "SELECT * FROM jobs"
        params = []
        if status:
            sql += " WHERE status=?"
            params.append(status)
        order = "DESC" if newest_first else "ASC"
        sql += f" ORDER BY created_at {order}, rowid {order}"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [ExecutionJob.from_row(r) for r in self._query(sql, params)]

    def count_by_status(self):
        rows = self._query("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
        return {r["status"]: r["count"] for r in rows}

    def resubmit_job(self, job_id):
        """Create a fresh pending job for the signal of a finished one."""
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status not in (COMPLETED, FAILED):
            raise JobStateError(job_id, job.status, PENDING)
        return self.enqueue_job(signal=job.signal if job.signal_id is None else None,
                                signal_id=job.signal_id)

    # ---------------- Signals ----------------
    def add_signal(self, payload, signal_id=None):
        signal_id = signal_id or uuid.uuid4().hex
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO signals (id, payload, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET payload=excluded.payload
            """, (signal_id, json.dumps(payload), self._now()))
        return signal_id

    def get_signal(self, signal_id):
        row = self._query_one("SELECT payload FROM signals WHERE id=?", (signal_id,))
        if row is None:
            raise SignalNotFoundError(signal_id)
        return json.loads(row["payload"])

    # ---------------- Events ----------------
    def log_event(self, fn, stage, payload):
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO events (fn, stage, payload, created_at) VALUES (?, ?, ?, ?)
            """, (fn, stage, json.dumps(payload, default=str), self._now()))

    def recent_events(self, limit=50, stage=None):
        sql = "SELECT * FROM events"
        params = []
        if stage:
            sql += " WHERE stage=?"
            params.append(stage)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = self._query(sql, params)
        return [
            {
                "id": r["id"],
                "fn": r["fn"],
                "stage": r["stage"],
                "payload": json.loads(r["payload"]) if r["payload"] else {},
                "created_at": r["created_at"],
            }
            for r in rows
        ]

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        row = self._query_one("SELECT value FROM config WHERE key=?", (key,))
        return row["value"] if row else default

    def set_config(self, key, value):
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), self._now()))

    def list_config(self):
        rows = self._query("SELECT key, value, updated_at FROM config ORDER BY key")
        return [dict(r) for r in rows]

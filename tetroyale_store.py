"""SQLite-backed credential and score stores."""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Dict, List

import bcrypt

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    high_score INTEGER NOT NULL DEFAULT 0,
    wins_total INTEGER NOT NULL DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""


class StoreError(Exception):
    """The database could not be reached or rejected the operation."""


class DuplicateUsernameError(Exception):
    pass


class InvalidCredentialsError(Exception):
    pass


@dataclass
class User:
    id: int
    username: str

    def to_dict(self) -> Dict[str, object]:
        return {"id": self.id, "username": self.username}


@dataclass
class ScoreResult:
    accepted: bool
    high_score: int


def hash_password(password: str) -> str:
    if not password:
        raise ValueError("Password cannot be empty")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError as e:
        logger.error("Error verifying password: %s", e)
        return False


class Database:
    """One SQLite connection shared by both stores."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.lock = threading.Lock()
        try:
            self.conn = sqlite3.connect(path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            with self.conn:
                self.conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open database {path}: {e}") from e
        logger.info("Database ready at %s", path)

    def close(self) -> None:
        self.conn.close()


class CredentialStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def register(self, username: str, password: str) -> int:
        if not username or not password:
            raise ValueError("Username and password are required")
        password_hash = hash_password(password)
        try:
            with self.db.lock, self.db.conn:
                cursor = self.db.conn.execute(
                    "INSERT INTO users (username, password_hash) VALUES (?, ?)",
                    (username, password_hash),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateUsernameError(username) from e
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        logger.info("Registered user '%s'", username)
        return cursor.lastrowid

    def login(self, username: str, password: str) -> User:
        try:
            with self.db.lock:
                row = self.db.conn.execute(
                    "SELECT id, username, password_hash FROM users WHERE username = ?",
                    (username,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        if row is None or not verify_password(password, row["password_hash"]):
            logger.warning("Failed login attempt for '%s'", username)
            raise InvalidCredentialsError(username)
        return User(id=row["id"], username=row["username"])


class ScoreStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def record_score_if_higher(self, user_id: int, score: int) -> ScoreResult:
        try:
            with self.db.lock, self.db.conn:
                row = self.db.conn.execute(
                    "SELECT high_score FROM users WHERE id = ?", (user_id,)
                ).fetchone()
                if row is None:
                    raise StoreError(f"Unknown user id {user_id}")
                if score <= row["high_score"]:
                    return ScoreResult(accepted=False, high_score=row["high_score"])
                self.db.conn.execute(
                    "UPDATE users SET high_score = ? WHERE id = ?", (score, user_id)
                )
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        logger.info("New high score %s for user %s", score, user_id)
        return ScoreResult(accepted=True, high_score=score)

    def top_scores(self, limit: int = 10) -> List[Dict[str, object]]:
        try:
            with self.db.lock:
                rows = self.db.conn.execute(
                    "SELECT username, high_score FROM users WHERE high_score > 0 "
                    "ORDER BY high_score DESC, id ASC LIMIT ?",
                    (limit,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        return [{"username": row["username"], "score": row["high_score"]} for row in rows]

    def add_wins(self, user_id: int, points: int) -> None:
        try:
            with self.db.lock, self.db.conn:
                self.db.conn.execute(
                    "UPDATE users SET wins_total = wins_total + ? WHERE id = ?",
                    (points, user_id),
                )
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

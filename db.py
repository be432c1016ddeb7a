"""SQLite persistence for users and saved projects."""

from __future__ import annotations

import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

DB_PATH = Path(__file__).parent / "projects.db"


def _conn() -> sqlite3.Connection:
    con = sqlite3.connect(str(DB_PATH))
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL")
    return con


def init_db() -> None:
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                username             TEXT PRIMARY KEY,
                created_at           DATETIME DEFAULT (datetime('now')),
                subject_image        TEXT,          -- URL or data URL
                system_prompt        TEXT DEFAULT '',
                ideas_system_prompt  TEXT DEFAULT '',
                saved_prompts        TEXT           -- JSON  [{id, name, prompt}]
            )
            """
        )
        # Prompt columns for databases created before they existed
        for column in ("system_prompt TEXT DEFAULT ''", "ideas_system_prompt TEXT DEFAULT ''", "saved_prompts TEXT"):
            try:
                con.execute(f"ALTER TABLE users ADD COLUMN {column}")
            except sqlite3.OperationalError:
                pass  # already present
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS projects (
                id          TEXT PRIMARY KEY,
                username    TEXT NOT NULL,
                name        TEXT NOT NULL,
                created_at  REAL NOT NULL,  -- epoch seconds
                updated_at  DATETIME DEFAULT (datetime('now')),
                data        TEXT NOT NULL   -- JSON  {steps, image_size, aspect_ratio, ...}
            )
            """
        )
        con.execute(
            "CREATE INDEX IF NOT EXISTS idx_projects_user ON projects (username, created_at)"
        )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def get_or_create_user(username: str) -> Dict:
    username = username.strip()
    if not username:
        raise RuntimeError("username is required")
    with _conn() as con:
        con.execute("INSERT OR IGNORE INTO users (username) VALUES (?)", (username,))
        row = con.execute("SELECT * FROM users WHERE username=?", (username,)).fetchone()
    return _user(dict(row))


def get_user(username: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM users WHERE username=?", (username,)).fetchone()
    return _user(dict(row)) if row else None


def update_user_subject(username: str, subject_image: Optional[str]) -> None:
    _update_user(username, subject_image=subject_image)


def update_user_prompts(
    username: str,
    system_prompt: Optional[str] = None,
    ideas_system_prompt: Optional[str] = None,
) -> None:
    """Store the generation and/or ideas chat system prompts (None = unchanged)."""
    fields = {}
    if system_prompt is not None:
        fields["system_prompt"] = system_prompt
    if ideas_system_prompt is not None:
        fields["ideas_system_prompt"] = ideas_system_prompt
    if fields:
        _update_user(username, **fields)


def add_saved_prompt(username: str, name: str, prompt: str) -> Dict:
    """Append a named system prompt to the user's library and return it."""
    entry = {"id": uuid.uuid4().hex[:12], "name": name, "prompt": prompt}
    with _conn() as con:
        saved = _saved_prompts(con, username)
        saved.append(entry)
        con.execute(
            "UPDATE users SET saved_prompts=? WHERE username=?",
            (json.dumps(saved), username),
        )
    return entry


def delete_saved_prompt(username: str, prompt_id: str) -> bool:
    with _conn() as con:
        saved = _saved_prompts(con, username)
        remaining = [p for p in saved if p.get("id") != prompt_id]
        if len(remaining) == len(saved):
            return False
        con.execute(
            "UPDATE users SET saved_prompts=? WHERE username=?",
            (json.dumps(remaining), username),
        )
    return True


def _update_user(username: str, **fields: Any) -> None:
    assignments = ", ".join(f"{name}=?" for name in fields)
    with _conn() as con:
        cur = con.execute(
            f"UPDATE users SET {assignments} WHERE username=?",
            (*fields.values(), username),
        )
        if cur.rowcount == 0:
            raise RuntimeError(f"Unknown user: {username}")


def _saved_prompts(con: sqlite3.Connection, username: str) -> List[Dict]:
    row = con.execute("SELECT saved_prompts FROM users WHERE username=?", (username,)).fetchone()
    if row is None:
        raise RuntimeError(f"Unknown user: {username}")
    return _load_list(row["saved_prompts"])


def _user(row: Dict) -> Dict:
    row["system_prompt"] = row.get("system_prompt") or ""
    row["ideas_system_prompt"] = row.get("ideas_system_prompt") or ""
    row["saved_prompts"] = _load_list(row.get("saved_prompts"))
    return row


def _load_list(raw: Optional[str]) -> List[Dict]:
    try:
        value = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

def save_project(username: str, project: Dict[str, Any]) -> None:
    """Insert or overwrite a project record (keyed by ``project['id']``)."""
    with _conn() as con:
        con.execute(
            """
            INSERT INTO projects (id, username, name, created_at, data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name       = excluded.name,
                data       = excluded.data,
                updated_at = datetime('now')
            WHERE projects.username = excluded.username
            """,
            (
                project["id"],
                username,
                project["name"],
                project["created_at"],
                json.dumps(project),
            ),
        )


def list_projects(username: str, limit: int = 100) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM projects WHERE username=? ORDER BY created_at DESC LIMIT ?",
            (username, limit),
        ).fetchall()
    return [p for p in (_deserialise(dict(r)) for r in rows) if p is not None]


def get_project(project_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM projects WHERE id=?", (project_id,)).fetchone()
    if not row:
        return None
    return _deserialise(dict(row))


def delete_project(project_id: str) -> bool:
    with _conn() as con:
        cur = con.execute("DELETE FROM projects WHERE id=?", (project_id,))
    return cur.rowcount > 0


def _deserialise(row: Dict) -> Optional[Dict]:
    try:
        project = json.loads(row["data"])
    except (json.JSONDecodeError, TypeError):
        return None
    project["id"] = row["id"]
    project["name"] = row["name"]
    return project

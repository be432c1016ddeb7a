"""SQLite store tests (isolated database per test)."""

import sqlite3
import time

import pytest

import db


def _project(project_id="p1", name="Launch", created_at=None, **extra):
    data = {"id": project_id, "name": name, "created_at": created_at or time.time(), "steps": []}
    data.update(extra)
    return data


class TestUsers:
    def test_get_or_create_is_idempotent(self, temp_db):
        first = db.get_or_create_user("ana")
        second = db.get_or_create_user("  ana  ")
        assert first["username"] == second["username"] == "ana"
        assert first["subject_image"] is None

    def test_blank_username_rejected(self, temp_db):
        with pytest.raises(RuntimeError):
            db.get_or_create_user("   ")

    def test_subject_image_stored_and_cleared(self, temp_db):
        db.get_or_create_user("ana")
        db.update_user_subject("ana", "https://cdn/face.png")
        assert db.get_or_create_user("ana")["subject_image"] == "https://cdn/face.png"

        db.update_user_subject("ana", None)
        assert db.get_or_create_user("ana")["subject_image"] is None

    def test_subject_for_unknown_user(self, temp_db):
        with pytest.raises(RuntimeError):
            db.update_user_subject("ghost", "https://cdn/face.png")


class TestProjects:
    def test_save_and_get(self, temp_db):
        db.save_project("ana", _project(image_size="2K"))
        project = db.get_project("p1")
        assert project["name"] == "Launch"
        assert project["image_size"] == "2K"

    def test_get_missing_returns_none(self, temp_db):
        assert db.get_project("nope") is None

    def test_save_same_id_overwrites(self, temp_db):
        db.save_project("ana", _project(name="Draft"))
        db.save_project("ana", _project(name="Final"))
        projects = db.list_projects("ana")
        assert [p["name"] for p in projects] == ["Final"]

    def test_other_user_cannot_overwrite(self, temp_db):
        db.save_project("ana", _project(name="Mine"))
        db.save_project("bob", _project(name="Hijack"))
        assert db.get_project("p1")["name"] == "Mine"
        assert db.list_projects("bob") == []

    def test_list_newest_first_per_user(self, temp_db):
        db.save_project("ana", _project("old", created_at=100.0))
        db.save_project("ana", _project("new", created_at=200.0))
        db.save_project("bob", _project("theirs", created_at=300.0))
        assert [p["id"] for p in db.list_projects("ana")] == ["new", "old"]

    def test_delete(self, temp_db):
        db.save_project("ana", _project())
        assert db.delete_project("p1") is True
        assert db.delete_project("p1") is False
        assert db.get_project("p1") is None


class TestUserPrompts:
    def test_defaults(self, temp_db):
        user = db.get_or_create_user("ana")
        assert user["system_prompt"] == ""
        assert user["ideas_system_prompt"] == ""
        assert user["saved_prompts"] == []

    def test_update_one_prompt_leaves_other(self, temp_db):
        db.get_or_create_user("ana")
        db.update_user_prompts("ana", system_prompt="gen", ideas_system_prompt="ideas")
        db.update_user_prompts("ana", ideas_system_prompt="better ideas")

        user = db.get_user("ana")
        assert user["system_prompt"] == "gen"
        assert user["ideas_system_prompt"] == "better ideas"

    def test_update_prompts_unknown_user(self, temp_db):
        with pytest.raises(RuntimeError):
            db.update_user_prompts("ghost", system_prompt="x")

    def test_library_add_and_delete(self, temp_db):
        db.get_or_create_user("ana")
        first = db.add_saved_prompt("ana", "Retro", "80s synthwave")
        second = db.add_saved_prompt("ana", "Noir", "black and white, hard light")

        assert [p["name"] for p in db.get_user("ana")["saved_prompts"]] == ["Retro", "Noir"]
        assert first["id"] != second["id"]

        assert db.delete_saved_prompt("ana", first["id"]) is True
        assert db.delete_saved_prompt("ana", first["id"]) is False
        assert db.get_user("ana")["saved_prompts"] == [second]

    def test_library_unknown_user(self, temp_db):
        with pytest.raises(RuntimeError):
            db.add_saved_prompt("ghost", "x", "y")

    def test_get_user_missing(self, temp_db):
        assert db.get_user("ghost") is None

    def test_columns_added_to_older_database(self, tmp_path, monkeypatch):
        path = tmp_path / "old.db"
        con = sqlite3.connect(str(path))
        con.execute("CREATE TABLE users (username TEXT PRIMARY KEY, created_at DATETIME, subject_image TEXT)")
        con.execute("INSERT INTO users (username) VALUES ('ana')")
        con.commit()
        con.close()
        monkeypatch.setattr(db, "DB_PATH", path)

        db.init_db()

        assert db.get_user("ana")["saved_prompts"] == []
        db.update_user_prompts("ana", system_prompt="migrated")
        assert db.get_user("ana")["system_prompt"] == "migrated"

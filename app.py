"""Carru — Flask web application.

Serves one in-process session: the logged-in user, their credential, and
the workspace the UI renders.  Generation runs in a background thread
with its own event loop and streams progress over Server-Sent Events.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import queue
import threading
import traceback
import uuid
from typing import Dict, Generator, Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request, send_file
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure()

import archive
import carousel_core
import db
import image_client
import projects
from assets import CloudinaryUploader
from prompt_assistant import CHAT_MODEL, PromptAssistant, PromptAssistantError, PromptChat
from session import SessionContext
from steps import image_ref_to_str, parse_image_ref
from workspace import Workspace

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__)
CORS(app)

db.init_db()

_session = SessionContext()
_workspace = Workspace()
_user: Optional[Dict] = None

# Active SSE queues: run_id -> Queue
_run_queues: Dict[str, queue.Queue] = {}
_run_queues_lock = threading.Lock()

# Open prompt chats: "generation" | "ideas" -> PromptChat
CHAT_KINDS = {"generation": "system_prompt", "ideas": "ideas_system_prompt"}
_chats: Dict[str, PromptChat] = {}


def _uploader() -> Optional[CloudinaryUploader]:
    return CloudinaryUploader.from_env()


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _get_or_create_queue(run_id: str) -> queue.Queue:
    with _run_queues_lock:
        if run_id not in _run_queues:
            _run_queues[run_id] = queue.Queue(maxsize=500)
        return _run_queues[run_id]


def _cleanup_queue(run_id: str) -> None:
    with _run_queues_lock:
        _run_queues.pop(run_id, None)


# ---------------------------------------------------------------------------
# Generation thread
# ---------------------------------------------------------------------------

def _generation_thread(run_id: str, action: str) -> None:
    q = _get_or_create_queue(run_id)

    def progress_cb(event: Dict) -> None:
        try:
            q.put_nowait(event)
        except queue.Full:
            pass

    orchestrator = carousel_core.Orchestrator(
        _workspace,
        image_client.create_client(_session),
        progress_cb=progress_cb,
        run_id=run_id,
    )
    try:
        if action == "run":
            asyncio.run(orchestrator.run())
        else:
            step = asyncio.run(orchestrator.regenerate_selected())
            if step is not None and step.has_image:
                status, message = "regenerated", "Step regenerated"
            else:
                status, message = "failed", (step.error if step else None) or "Nothing to regenerate"
            progress_cb({"run_id": run_id, "step_id": None, "status": status, "message": message})
    except carousel_core.RunInProgressError as exc:
        progress_cb({"run_id": run_id, "step_id": None, "status": "failed", "message": str(exc)})
    except Exception as exc:
        log.error("Generation thread failed: run=%s  error=%s", run_id, exc, exc_info=True)
        progress_cb({
            "run_id": run_id,
            "step_id": None,
            "status": "failed",
            "message": str(exc),
            "data": {"traceback": traceback.format_exc()},
        })
    finally:
        # Signal SSE stream to close
        try:
            q.put_nowait(None)
        except queue.Full:
            pass


def _start_generation(action: str):
    if _workspace.is_generating:
        return jsonify({"error": "A generation is already in progress"}), 409
    if not _session.has_credential:
        _workspace.needs_credential = True
        return jsonify({"error": "API key is missing", "needs_credential": True}), 401

    run_id = uuid.uuid4().hex[:8]
    _get_or_create_queue(run_id)
    threading.Thread(
        target=_generation_thread,
        args=(run_id, action),
        daemon=True,
    ).start()
    return jsonify({"run_id": run_id})


def _require_user():
    if _user is None:
        return jsonify({"error": "Not logged in"}), 401
    return None


def _require_idle():
    if _workspace.is_generating:
        return jsonify({"error": "A generation is in progress"}), 409
    return None


def _state():
    return jsonify(_workspace.to_dict())


def _profile(user: Dict) -> Dict:
    return {
        "username": user["username"],
        "system_prompt": user["system_prompt"],
        "ideas_system_prompt": user["ideas_system_prompt"],
        "saved_prompts": user["saved_prompts"],
    }


# ---------------------------------------------------------------------------
# Routes — Session
# ---------------------------------------------------------------------------

@app.post("/api/login")
def api_login():
    global _user
    body = request.json or {}
    username = (body.get("username") or "").strip()
    api_key = (body.get("api_key") or "").strip()
    provider = body.get("provider") or "gemini"

    if not username or not api_key:
        return jsonify({"error": "username and api_key are required"}), 400
    try:
        candidate = SessionContext(api_key, provider)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    if not asyncio.run(image_client.create_client(candidate).validate()):
        return jsonify({"error": "API key was rejected", "needs_credential": True}), 401

    _session.set(api_key, provider)
    _user = db.get_or_create_user(username)
    _workspace.reset()
    _chats.clear()
    if image_client.provider_for_model(_workspace.model) != provider:
        _workspace.configure(model=image_client.default_model_for(provider))
    if _user.get("subject_image"):
        try:
            _workspace.subject = parse_image_ref(_user["subject_image"])
        except ValueError:
            log.warning("Stored subject image for %s is unreadable", username)
    log.info("Login: user=%s  provider=%s", username, provider)
    return jsonify({"user": _profile(_user), "state": _workspace.to_dict()})


@app.post("/api/logout")
def api_logout():
    global _user
    _session.clear()
    _workspace.reset()
    _chats.clear()
    _user = None
    return jsonify({"ok": True})


@app.get("/api/models")
def api_models():
    return jsonify({
        "provider": _session.provider,
        "image_models": image_client.models_for(_session.provider),
        "has_credential": _session.has_credential,
    })


# ---------------------------------------------------------------------------
# Routes — Workspace
# ---------------------------------------------------------------------------

@app.get("/api/state")
def api_state():
    return _state()


@app.post("/api/steps")
def api_add_step():
    _workspace.add_step()
    return _state()


@app.patch("/api/steps/<step_id>")
def api_update_step(step_id: str):
    body = request.json or {}
    if _workspace.step(step_id) is None:
        return jsonify({"error": "Step not found"}), 404
    _workspace.update_step(step_id, str(body.get("prompt", "")))
    return _state()


@app.delete("/api/steps/<step_id>")
def api_remove_step(step_id: str):
    _workspace.remove_step(step_id)
    return _state()


@app.post("/api/steps/<step_id>/approve")
def api_toggle_approval(step_id: str):
    step = _workspace.step(step_id)
    if step is None:
        return jsonify({"error": "Step not found"}), 404
    # Only a finished image can be approved.
    if not step.has_image:
        return jsonify({"error": "Only generated images can be approved"}), 409
    _workspace.toggle_approval(step_id)
    return _state()


@app.post("/api/steps/<step_id>/subject")
def api_toggle_subject(step_id: str):
    _workspace.toggle_subject_use(step_id)
    return _state()


@app.post("/api/select")
def api_select():
    body = request.json or {}
    direction = body.get("direction")
    if direction == "next":
        _workspace.select_next()
    elif direction == "previous":
        _workspace.select_previous()
    else:
        try:
            _workspace.select(int(body.get("index", 0)))
        except (TypeError, ValueError):
            return jsonify({"error": "index must be an integer"}), 400
    return _state()


@app.put("/api/settings")
def api_settings():
    body = request.json or {}
    model = body.get("model")
    if model and image_client.provider_for_model(model) != _session.provider:
        return jsonify({"error": f"Model {model} needs a {image_client.provider_for_model(model)} key"}), 400
    try:
        _workspace.configure(
            mode=body.get("mode"),
            image_size=body.get("image_size"),
            aspect_ratio=body.get("aspect_ratio"),
            model=model,
        )
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return _state()


@app.put("/api/subject")
def api_set_subject():
    body = request.json or {}
    try:
        subject = parse_image_ref(body.get("image") or "")
    except ValueError as exc:
        return jsonify({"error": f"Invalid subject image: {exc}"}), 400

    if body.get("save"):
        err = _require_user()
        if err:
            return err
        uploader = _uploader()
        try:
            if uploader is not None:
                subject = uploader.upload(subject)
            db.update_user_subject(_user["username"], image_ref_to_str(subject))
        except RuntimeError as exc:
            log.error("Failed to save subject: %s", exc)
            return jsonify({"error": str(exc)}), 502

    _workspace.subject = subject
    return _state()


@app.delete("/api/subject")
def api_clear_subject():
    _workspace.subject = None
    return _state()


# ---------------------------------------------------------------------------
# Routes — Generation
# ---------------------------------------------------------------------------

@app.post("/api/run")
def api_run():
    return _start_generation("run")


@app.post("/api/regenerate")
def api_regenerate():
    if _workspace.selected_step.is_blank:
        return jsonify({"error": "Selected step has an empty prompt"}), 400
    return _start_generation("regenerate")


@app.get("/api/stream/<run_id>")
def api_stream(run_id: str):
    """Server-Sent Events stream for a run."""
    q = _get_or_create_queue(run_id)

    def generate() -> Generator[str, None, None]:
        # Send a heartbeat first so the connection opens
        yield _sse_event({"type": "heartbeat", "run_id": run_id})
        try:
            while True:
                try:
                    event = q.get(timeout=25)
                except queue.Empty:
                    yield _sse_event({"type": "heartbeat"})
                    continue

                if event is None:
                    # Sentinel — generation finished
                    yield _sse_event({"type": "done"})
                    break

                yield _sse_event(event)
        finally:
            _cleanup_queue(run_id)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@app.get("/api/export")
def api_export():
    try:
        data = archive.build_archive(_workspace.steps, _workspace.mode)
    except image_client.ConditioningFetchError as exc:
        return jsonify({"error": exc.reason}), 502
    if data is None:
        return jsonify({"error": "No approved images to export"}), 404
    name = (_workspace.project_name or "carousel").replace(" ", "_")
    return send_file(
        io.BytesIO(data),
        mimetype="application/zip",
        as_attachment=True,
        download_name=f"{name}.zip",
    )


# ---------------------------------------------------------------------------
# Routes — Projects
# ---------------------------------------------------------------------------

@app.get("/api/projects")
def api_list_projects():
    err = _require_user()
    if err:
        return err
    summary = []
    for p in projects.load_projects(_user["username"]):
        first = next((s for s in p.steps if s.has_image), None)
        summary.append({
            "id": p.id,
            "name": p.name,
            "created_at": p.created_at,
            "generation_mode": p.generation_mode,
            "step_count": len(p.steps),
            "cover": image_ref_to_str(first.image) if first else None,
        })
    return jsonify(summary)


@app.post("/api/projects")
def api_save_project():
    err = _require_user() or _require_idle()
    if err:
        return err
    body = request.json or {}
    name = body.get("name") or _workspace.project_name
    try:
        project = projects.save_workspace(_workspace, _user["username"], name or "", _uploader())
    except RuntimeError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"id": project.id, "state": _workspace.to_dict()})


@app.post("/api/projects/<project_id>/load")
def api_load_project(project_id: str):
    err = _require_user() or _require_idle()
    if err:
        return err
    data = db.get_project(project_id)
    if not data:
        return jsonify({"error": "Not found"}), 404
    projects.load_into_workspace(_workspace, projects.Project.from_dict(data))
    return _state()


@app.delete("/api/projects/<project_id>")
def api_delete_project(project_id: str):
    err = _require_user()
    if err:
        return err
    try:
        projects.delete_project(project_id)
    except RuntimeError as exc:
        return jsonify({"error": str(exc)}), 404
    if _workspace.project_id == project_id:
        _workspace.project_id = None
    return jsonify({"ok": True})


# ---------------------------------------------------------------------------
# Routes — Prompt assistant
# ---------------------------------------------------------------------------

def _assistant(body: Dict) -> PromptAssistant:
    return PromptAssistant(_session, provider=body.get("provider") or "gemini", model=body.get("model"))


@app.post("/api/prompts/refine")
def api_refine_prompt():
    body = request.json or {}
    prompt = (body.get("prompt") or "").strip()
    if not prompt:
        return jsonify({"error": "prompt is required"}), 400
    try:
        refined = _assistant(body).refine_prompt(prompt)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"prompt": refined})


@app.post("/api/prompts/idea")
def api_creative_idea():
    body = request.json or {}
    topic = (body.get("topic") or "").strip()
    if not topic:
        return jsonify({"error": "topic is required"}), 400
    try:
        idea = _assistant(body).generate_creative_idea(topic, body.get("system") or "")
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except PromptAssistantError as exc:
        return jsonify({"error": str(exc)}), 502
    return jsonify({"idea": idea})


@app.post("/api/prompts/slides")
def api_slide_prompts():
    body = request.json or {}
    topic = (body.get("topic") or "").strip()
    if not topic:
        return jsonify({"error": "topic is required"}), 400
    try:
        background, slides = _assistant(body).generate_slide_prompts(topic, body.get("system"))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except PromptAssistantError as exc:
        return jsonify({"error": str(exc)}), 502

    if body.get("import"):
        err = _require_idle()
        if err:
            return err
        _workspace.import_prompts(background, slides)
    return jsonify({"background": background, "slides": slides, "state": _workspace.to_dict()})


# ---------------------------------------------------------------------------
# Routes — User prompts and chats
# ---------------------------------------------------------------------------

@app.get("/api/user/prompts")
def api_user_prompts():
    err = _require_user()
    if err:
        return err
    return jsonify(_profile(_user))


@app.put("/api/user/prompts")
def api_update_user_prompts():
    global _user
    err = _require_user()
    if err:
        return err
    body = request.json or {}
    db.update_user_prompts(
        _user["username"],
        system_prompt=body.get("system_prompt"),
        ideas_system_prompt=body.get("ideas_system_prompt"),
    )
    _user = db.get_user(_user["username"])
    # An open chat restarts under its new system prompt
    for kind, column in CHAT_KINDS.items():
        if body.get(column) is not None and kind in _chats:
            _chats[kind].reset(_user[column])
    return jsonify(_profile(_user))


@app.post("/api/user/prompts/library")
def api_save_prompt_to_library():
    global _user
    err = _require_user()
    if err:
        return err
    body = request.json or {}
    name = (body.get("name") or "").strip()
    prompt = (body.get("prompt") or "").strip()
    if not name or not prompt:
        return jsonify({"error": "name and prompt are required"}), 400
    entry = db.add_saved_prompt(_user["username"], name, prompt)
    _user = db.get_user(_user["username"])
    return jsonify({"prompt": entry, "saved_prompts": _user["saved_prompts"]})


@app.delete("/api/user/prompts/library/<prompt_id>")
def api_delete_prompt_from_library(prompt_id: str):
    global _user
    err = _require_user()
    if err:
        return err
    if not db.delete_saved_prompt(_user["username"], prompt_id):
        return jsonify({"error": "Prompt not found"}), 404
    _user = db.get_user(_user["username"])
    return jsonify({"saved_prompts": _user["saved_prompts"]})


@app.post("/api/chat/<kind>")
def api_chat_send(kind: str):
    err = _require_user()
    if err:
        return err
    if kind not in CHAT_KINDS:
        return jsonify({"error": f"Unknown chat: {kind}"}), 404
    body = request.json or {}
    chat = _chats.get(kind)
    try:
        if chat is None:
            provider = body.get("provider") or "gemini"
            model = body.get("model") or (CHAT_MODEL if provider == "gemini" else None)
            assistant = PromptAssistant(_session, provider=provider, model=model)
            chat = _chats[kind] = PromptChat(assistant, _user[CHAT_KINDS[kind]])
        reply = chat.send(body.get("message") or "")
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    except PromptAssistantError as exc:
        return jsonify({"error": str(exc)}), 502
    return jsonify({"reply": reply, "history": chat.history})


@app.delete("/api/chat/<kind>")
def api_chat_reset(kind: str):
    if kind not in CHAT_KINDS:
        return jsonify({"error": f"Unknown chat: {kind}"}), 404
    _chats.pop(kind, None)
    return jsonify({"ok": True})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    print(f"\n  Carru → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)

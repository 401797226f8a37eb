import logging
from typing import Any, Dict

from flask import current_app
from flask_socketio import join_room, leave_room, emit

from fleak.extension.extensions import socketio

_registered = False


def _log_info(msg: str, *args):
    try:
        current_app.logger.info(msg, *args)
    except RuntimeError:
        logging.getLogger(__name__).info(msg, *args)


def _log_err(msg: str, *args):
    try:
        current_app.logger.error(msg, *args)
    except RuntimeError:
        logging.getLogger(__name__).error(msg, *args)


def flake_room(flake_id) -> str:
    return f"flake_{flake_id}"


def emit_flake_update(flake_id: str, event: str, data: Dict[str, Any]):
    """Push a change to clients watching this Flake; delivery failures never fail the request."""
    try:
        socketio.emit(event, data, to=flake_room(flake_id))
    except Exception:
        _log_err("Flake emit failed event=%s flake=%s", event, flake_id)


def register_flake_events():
    global _registered
    if _registered:
        return
    _registered = True

    @socketio.on("connect")
    def _on_connect():
        _log_info("Flake client connected")

    @socketio.on("disconnect")
    def _on_disconnect():
        _log_info("Flake client disconnected")

    @socketio.on("join_flake")
    def _on_join_flake(data: Dict[str, Any]):
        flake_id = (data or {}).get("flakeId") or (data or {}).get("flake_id")
        if not flake_id:
            emit("error", {"error": "flakeId is required"})
            return
        room = flake_room(flake_id)
        join_room(room)
        _log_info("Client joined room %s", room)
        emit("joined", {"room": room})

    @socketio.on("leave_flake")
    def _on_leave_flake(data: Dict[str, Any]):
        flake_id = (data or {}).get("flakeId") or (data or {}).get("flake_id")
        if flake_id:
            leave_room(flake_room(flake_id))

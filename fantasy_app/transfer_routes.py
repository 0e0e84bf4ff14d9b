"""
Transfer Routes - JSON endpoints for gameweek transfers, chips and rollover
"""

import hmac

from flask import Blueprint, abort, jsonify, request

from . import config
from . import transfer_service as service
from .storage import StorageError
from .transfer_state import (
    ConcurrentUpdateError,
    InvalidStateError,
    TransferValidationError,
)

bp = Blueprint("transfers", __name__, url_prefix="/transfers")


@bp.errorhandler(TransferValidationError)
def _validation_error(e):
    return jsonify({"success": False, "error": str(e)}), 400


@bp.errorhandler(InvalidStateError)
def _invalid_state(e):
    print(f"[TRANSFERS] invalid state: {e}")
    return jsonify({"success": False, "error": str(e)}), 409


@bp.errorhandler(ConcurrentUpdateError)
def _conflict(e):
    return jsonify({"success": False, "error": "Transfer state changed, please reload and retry"}), 409


@bp.errorhandler(StorageError)
def _storage_error(e):
    print(f"[TRANSFERS] storage failure: {e}")
    return jsonify({"success": False, "error": "Storage unavailable"}), 503


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise TransferValidationError("request body must be a JSON object")
    return data


@bp.route("/<user_id>/<int:gameweek>", methods=["GET"])
def get_state(user_id: str, gameweek: int):
    state = service.get_transfer_state(user_id, gameweek)
    return jsonify({"transferState": state.to_dict(), "gameweekId": gameweek})


@bp.route("/<user_id>/<int:gameweek>", methods=["POST"])
def execute_transfer(user_id: str, gameweek: int):
    """Execute one transfer (player out/in) or a batch of ``count`` transfers"""
    data = _json_body()
    player_out = data.get("playerOutId")
    player_in = data.get("playerInId")
    count = data.get("count")

    if count is None:
        if not player_out or not player_in:
            raise TransferValidationError("Missing required fields: playerOutId, playerInId")
        count = 1

    state, summary = service.make_transfers(
        user_id, gameweek, count=count, player_out=player_out, player_in=player_in
    )
    return jsonify({
        "success": True,
        "transferState": state.to_dict(),
        "summary": summary.to_dict(),
        "message": service.transfer_message(summary, gameweek),
    })


@bp.route("/<user_id>/<int:gameweek>/chips", methods=["POST"])
def toggle_chip(user_id: str, gameweek: int):
    data = _json_body()
    chip = data.get("chip")
    if not chip:
        raise TransferValidationError("Missing required field: chip")
    active = data.get("active", True)
    if not isinstance(active, bool):
        raise TransferValidationError("active must be true or false")
    state = service.set_chip(user_id, gameweek, chip, active)
    return jsonify({
        "success": True,
        "transferState": state.to_dict(),
        "message": "Chip activated successfully" if active else "Chip deactivated successfully",
    })


@bp.route("/admin/gameweeks/<int:gameweek>/close", methods=["POST"])
def close_gameweek(gameweek: int):
    """Deadline job hook: roll all users into the next gameweek"""
    token = config.ADMIN_TOKEN
    supplied = request.headers.get("X-Admin-Token", "")
    if not token or not hmac.compare_digest(supplied, token):
        abort(403)
    data = _json_body()
    user_ids = data.get("userIds")
    if user_ids is not None and (
        not isinstance(user_ids, list) or not all(isinstance(u, str) and u for u in user_ids)
    ):
        raise TransferValidationError("userIds must be a list of user id strings")
    report = service.close_gameweek(gameweek, user_ids=user_ids)
    return jsonify({"success": True, "gameweekId": gameweek, "report": report})

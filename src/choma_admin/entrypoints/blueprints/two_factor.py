"""ABOUTME: JSON API endpoints for admin two-factor authentication
ABOUTME: Setup, verification, disable, backup codes, trusted devices, settings, audit queries and recovery"""

from datetime import UTC, datetime
from typing import Any

from flask import Blueprint, jsonify, request
from flask.typing import ResponseReturnValue
from flask_login import current_user, login_required

from choma_admin.domain.value_objects import AuditAction
from choma_admin.entrypoints.extensions import get_two_factor_manager
from choma_admin.logging import bind_request_context, clear_request_context
from choma_admin.service_layer.exceptions import (
    AccountLocked,
    AuthenticationError,
    ChomaAdminError,
    InfrastructureError,
    InvalidPassword,
    InvalidRequest,
    MissingField,
    NotFoundError,
    PreconditionError,
)
from choma_admin.service_layer.two_factor_service import RequestInfo

two_factor_bp = Blueprint("two_factor", __name__)


# helpers


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _request_info() -> RequestInfo:
    return RequestInfo(ip_address=request.remote_addr or "", user_agent=request.headers.get("User-Agent", ""))


def _account_id() -> str:
    return str(current_user.account_id)


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _required(data: dict[str, Any], field_name: str) -> str:
    value = data.get(field_name)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MissingField(field_name)
    if not isinstance(value, str):
        raise InvalidRequest(f"{field_name} must be a string")
    return value


def _flag(data: dict[str, Any], field_name: str) -> bool:
    value = data.get(field_name)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise InvalidRequest(f"{field_name} must be true or false")
    return value


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise InvalidRequest(f"{name} must be a whole number") from e


def _datetime_arg(name: str) -> datetime | None:
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except ValueError as e:
        raise InvalidRequest(f"{name} must be an ISO 8601 date or timestamp") from e
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _ok(message: str = "", data: Any = None) -> ResponseReturnValue:
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return jsonify(body)


def _error_status(error: ChomaAdminError) -> int:
    if isinstance(error, InfrastructureError):
        return 503
    if isinstance(error, AccountLocked):
        return 423
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, InvalidPassword):
        return 401
    if isinstance(error, (AuthenticationError, PreconditionError)):
        return 400
    return 500


@two_factor_bp.errorhandler(ChomaAdminError)
def handle_two_factor_error(error: ChomaAdminError) -> ResponseReturnValue:
    body: dict[str, Any] = {"success": False, "error": str(error), "code": error.code}
    attempts_remaining = getattr(error, "attempts_remaining", None)
    if attempts_remaining is not None:
        body["attempts_remaining"] = attempts_remaining
    if isinstance(error, AccountLocked):
        body["locked_until"] = _iso(error.locked_until)
    if isinstance(error, InfrastructureError):
        body["retryable"] = True
    return jsonify(body), _error_status(error)


@two_factor_bp.before_request
def bind_logging_context() -> None:
    if current_user.is_authenticated:
        bind_request_context(_account_id(), request.remote_addr or "")


@two_factor_bp.teardown_request
def clear_logging_context(exc: BaseException | None) -> None:
    clear_request_context()


# status and setup


@two_factor_bp.route("/status", methods=["GET"])
@login_required
def status() -> ResponseReturnValue:
    result = get_two_factor_manager().get_status(_account_id())
    for key in ("setup_date", "last_verified", "locked_until"):
        result[key] = _iso(result[key])
    return _ok(data=result)


@two_factor_bp.route("/setup/initialize", methods=["POST"])
@login_required
def initialize_setup() -> ResponseReturnValue:
    details = get_two_factor_manager().initialize_setup(_account_id(), _request_info())
    return _ok(
        "Scan the QR code with your authenticator app, then verify with a code to finish setup",
        {
            "secret": details.secret,
            "provisioning_uri": details.provisioning_uri,
            "issuer": details.issuer,
            "account_label": details.account_label,
        },
    )


@two_factor_bp.route("/setup/verify", methods=["POST"])
@login_required
def verify_setup() -> ResponseReturnValue:
    token = _required(_json_body(), "token")
    backup_codes = get_two_factor_manager().verify_setup(_account_id(), token, _request_info())
    return _ok(
        "2FA has been enabled. Store these backup codes somewhere safe, they will not be shown again",
        {"backup_codes": backup_codes},
    )


# disable


@two_factor_bp.route("/disable", methods=["POST"])
@login_required
def disable() -> ResponseReturnValue:
    data = _json_body()
    password = _required(data, "password")
    token = _required(data, "current_token")
    get_two_factor_manager().disable(_account_id(), password, token, _request_info())
    return _ok("2FA has been disabled")


@two_factor_bp.route("/emergency-disable", methods=["POST"])
@login_required
def emergency_disable() -> ResponseReturnValue:
    data = _json_body()
    password = _required(data, "admin_password")
    reason = _required(data, "reason")
    get_two_factor_manager().emergency_disable(_account_id(), password, reason, _request_info())
    return _ok("2FA has been disabled. This emergency action has been logged and reported")


# verification


@two_factor_bp.route("/verify", methods=["POST"])
@login_required
def verify() -> ResponseReturnValue:
    data = _json_body()
    token = _required(data, "token")
    result = get_two_factor_manager().verify(
        _account_id(), token, _request_info(), trust_device=_flag(data, "trust_device")
    )
    return _ok("Verification successful", {"trusted_device_id": result.trusted_device_id})


@two_factor_bp.route("/verify-backup", methods=["POST"])
@login_required
def verify_backup() -> ResponseReturnValue:
    data = _json_body()
    backup_code = _required(data, "backup_code")
    result = get_two_factor_manager().verify_backup_code(
        _account_id(), backup_code, _request_info(), trust_device=_flag(data, "trust_device")
    )
    return _ok(
        "Backup code accepted",
        {"trusted_device_id": result.trusted_device_id, "backup_codes_remaining": result.backup_codes_remaining},
    )


# backup codes


@two_factor_bp.route("/backup-codes", methods=["GET"])
@login_required
def backup_codes_info() -> ResponseReturnValue:
    info = get_two_factor_manager().get_backup_codes_info(_account_id())
    info["last_generated"] = _iso(info["last_generated"])
    return _ok(data=info)


@two_factor_bp.route("/backup-codes/regenerate", methods=["POST"])
@login_required
def regenerate_backup_codes() -> ResponseReturnValue:
    token = _required(_json_body(), "current_token")
    backup_codes = get_two_factor_manager().regenerate_backup_codes(_account_id(), token, _request_info())
    return _ok("New backup codes generated, the previous codes no longer work", {"backup_codes": backup_codes})


# trusted devices


@two_factor_bp.route("/devices", methods=["GET"])
@login_required
def list_devices() -> ResponseReturnValue:
    devices = get_two_factor_manager().list_trusted_devices(_account_id())
    return _ok(data={"devices": [device.to_dict() for device in devices]})


@two_factor_bp.route("/devices", methods=["POST"])
@login_required
def trust_device() -> ResponseReturnValue:
    data = _json_body()
    token = _required(data, "current_token")
    name = data.get("device_name")
    if name is not None and not isinstance(name, str):
        raise InvalidRequest("device_name must be a string")
    device_id = get_two_factor_manager().trust_device(
        _account_id(), token, _request_info(), name=(name or "").strip() or None
    )
    return _ok("Device trusted", {"device_id": device_id})


@two_factor_bp.route("/devices/<device_id>/check", methods=["GET"])
@login_required
def check_device(device_id: str) -> ResponseReturnValue:
    trusted = get_two_factor_manager().is_device_trusted(_account_id(), device_id, _request_info())
    return _ok(data={"trusted": trusted})


@two_factor_bp.route("/devices/<device_id>", methods=["DELETE"])
@login_required
def remove_device(device_id: str) -> ResponseReturnValue:
    token = _required(_json_body(), "current_token")
    get_two_factor_manager().remove_trusted_device(_account_id(), device_id, token, _request_info())
    return _ok("Trusted device removed")


# settings


@two_factor_bp.route("/settings", methods=["GET"])
@login_required
def get_settings() -> ResponseReturnValue:
    return _ok(data={"settings": get_two_factor_manager().get_settings(_account_id()).to_dict()})


@two_factor_bp.route("/settings", methods=["PUT"])
@login_required
def update_settings() -> ResponseReturnValue:
    data = _json_body()
    token = _required(data, "current_token")
    changes = data.get("settings")
    if not isinstance(changes, dict) or not changes:
        raise MissingField("settings")
    settings = get_two_factor_manager().update_settings(_account_id(), token, changes, _request_info())
    return _ok("Settings updated", {"settings": settings.to_dict()})


# audit


@two_factor_bp.route("/audit", methods=["GET"])
@login_required
def audit_log() -> ResponseReturnValue:
    action_name = request.args.get("action")
    try:
        action = AuditAction(action_name) if action_name else None
    except ValueError as e:
        raise InvalidRequest(f"Unknown audit action '{action_name}'") from e

    page = get_two_factor_manager().get_audit_log(
        _account_id(),
        action=action,
        start=_datetime_arg("start"),
        end=_datetime_arg("end"),
        page=_int_arg("page", 1),
        limit=_int_arg("limit", 50),
    )
    return _ok(data=page.to_dict())


@two_factor_bp.route("/audit/summary", methods=["GET"])
@login_required
def audit_summary() -> ResponseReturnValue:
    days = _int_arg("days", 30)
    summary = get_two_factor_manager().get_audit_summary(_account_id(), days=days)
    return _ok(data={"days": days, "summary": [item.to_dict() for item in summary]})


@two_factor_bp.route("/audit/suspicious", methods=["GET"])
@login_required
def suspicious_activity() -> ResponseReturnValue:
    report = get_two_factor_manager().get_suspicious_activity(_account_id(), hours=_int_arg("hours", 24))
    return _ok(data=report.to_dict())


# recovery


@two_factor_bp.route("/recovery", methods=["POST"])
@login_required
def request_recovery() -> ResponseReturnValue:
    data = _json_body()
    contact_info = _required(data, "contact_info")
    reason = _required(data, "reason")
    recovery = get_two_factor_manager().request_recovery(_account_id(), contact_info, reason, _request_info())
    return _ok(
        "Recovery request submitted. An administrator will contact you",
        {"request_id": recovery.request_id, "attempt_number": recovery.attempt_number},
    )

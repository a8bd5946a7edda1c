import time

from flask import Blueprint, request, jsonify, Response, stream_with_context

from ..infra.context import get_current_user_id, STREAM_SCOPE
from ..infra.signing import sign_token
from ..infra.repository import list_orders, list_reports, list_deposits, list_premium_requests
from ..services.moderation_service import (
    transition_order_service, bulk_transition_service, payment_proof_url_service
)
from ..services.report_service import process_report_service, set_account_status_service
from ..services.wallet_service import (
    approve_deposit_service, reject_deposit_service, deposit_screenshot_url_service,
    admin_set_wallet_balance_service
)
from ..services.profile_service import grant_premium_service
from ..services.premium_service import approve_premium_request_service, reject_premium_request_service
from ..services.dashboard_service import dashboard_stats, order_event_stream
from .common import respond, require_admin
import config

admin_bp = Blueprint("admin_bp", __name__)


# --- Orders ---

@admin_bp.get('/admin/orders')
@require_admin
def get_orders():
    """
    订单列表，status=all|pending|approved|finished|rejected|cancelled
    """
    return jsonify(list_orders(request.args.get("status")))


@admin_bp.post('/admin/orders/<order_id>/status')
@require_admin
def post_order_status(order_id):
    """
    POST Body: {"status": "finished", "confirmed": true}
    """
    payload = request.get_json(force=True) or {}
    return respond(transition_order_service(
        order_id, payload.get("status"), get_current_user_id(), bool(payload.get("confirmed"))
    ))


@admin_bp.post('/admin/orders/bulk-status')
@require_admin
def post_bulk_status():
    """
    POST Body: {"order_ids": [...], "status": "approved", "confirmed": false}
    """
    payload = request.get_json(force=True) or {}
    return respond(bulk_transition_service(
        payload.get("order_ids") or [], payload.get("status"), get_current_user_id(), bool(payload.get("confirmed"))
    ))


@admin_bp.get('/admin/orders/<order_id>/proof-url')
@require_admin
def get_proof_url(order_id):
    return respond(payment_proof_url_service(order_id))


@admin_bp.post('/admin/orders/stream-token')
@require_admin
def post_stream_token():
    expires_at = int(time.time()) + config.stream_token_ttl
    token = sign_token({"sub": get_current_user_id(), "scope": STREAM_SCOPE, "exp": expires_at})
    return jsonify({"ok": True, "token": token, "expires_at": expires_at})


@admin_bp.get('/admin/orders/stream')
@require_admin
def get_order_stream():
    """
    新订单 / 订单变更实时推送（text/event-stream）
    浏览器 EventSource 不能带 Header，先调 /admin/orders/stream-token 取短期 token，再用 ?token= 连接
    """
    admin_id = get_current_user_id()
    return Response(
        stream_with_context(order_event_stream(admin_id)),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@admin_bp.get('/admin/stats')
@require_admin
def get_stats():
    return jsonify(dashboard_stats())


# --- Reports / users ---

@admin_bp.get('/admin/reports')
@require_admin
def get_reports():
    return jsonify(list_reports(request.args.get("status", "pending")))


@admin_bp.post('/admin/reports/<report_id>/action')
@require_admin
def post_report_action(report_id):
    """
    POST Body: {"action": "dismiss|warning|temporary_ban", "notes": "..."}
    """
    payload = request.get_json(force=True) or {}
    return respond(process_report_service(report_id, payload.get("action"), get_current_user_id(), payload.get("notes")))


@admin_bp.put('/admin/users/<user_id>/status')
@require_admin
def put_account_status(user_id):
    payload = request.get_json(force=True) or {}
    return respond(set_account_status_service(user_id, payload.get("account_status"), get_current_user_id()))


@admin_bp.post('/admin/users/<user_id>/premium')
@require_admin
def post_premium(user_id):
    payload = request.get_json(force=True) or {}
    return respond(grant_premium_service(
        user_id, payload.get("days"), get_current_user_id(), payload.get("plan_name") or "Premium"
    ))


@admin_bp.put('/admin/users/<user_id>/wallet')
@require_admin
def put_wallet_balance(user_id):
    payload = request.get_json(force=True) or {}
    return respond(admin_set_wallet_balance_service(
        user_id, payload.get("wallet_balance"), get_current_user_id(), payload.get("note")
    ))


# --- Deposits ---

@admin_bp.get('/admin/deposits')
@require_admin
def get_deposits():
    return jsonify(list_deposits(request.args.get("status", "pending")))


@admin_bp.post('/admin/deposits/<deposit_id>/approve')
@require_admin
def post_approve_deposit(deposit_id):
    payload = request.get_json(silent=True) or {}
    return respond(approve_deposit_service(deposit_id, get_current_user_id(), payload.get("notes")))


@admin_bp.post('/admin/deposits/<deposit_id>/reject')
@require_admin
def post_reject_deposit(deposit_id):
    payload = request.get_json(force=True) or {}
    return respond(reject_deposit_service(deposit_id, get_current_user_id(), payload.get("notes")))


@admin_bp.get('/admin/deposits/<deposit_id>/screenshot-url')
@require_admin
def get_screenshot_url(deposit_id):
    return respond(deposit_screenshot_url_service(deposit_id))


# --- Premium requests ---

@admin_bp.get('/admin/premium-requests')
@require_admin
def get_premium_requests():
    return jsonify(list_premium_requests(request.args.get("status", "pending")))


@admin_bp.post('/admin/premium-requests/<request_id>/approve')
@require_admin
def post_approve_premium_request(request_id):
    return respond(approve_premium_request_service(request_id, get_current_user_id()))


@admin_bp.post('/admin/premium-requests/<request_id>/reject')
@require_admin
def post_reject_premium_request(request_id):
    """
    POST Body: {"reason": "..."}，不填时使用默认原因
    """
    payload = request.get_json(silent=True) or {}
    return respond(reject_premium_request_service(request_id, get_current_user_id(), payload.get("reason")))

import json
import os

from flask import Blueprint, request, jsonify, abort, send_file

from ..domain.policy import authorize
from ..infra.context import get_current_user_id
from ..infra.repository import (
    list_products, get_product, get_order, list_orders, list_deposits,
    get_withdrawal_settings, list_withdrawal_items, ensure_profile, load_actor,
    list_premium_plans, list_premium_requests
)
from ..services.order_service import (
    checkout_service, add_to_cart_service, update_cart_item_service, remove_cart_item_service, cart_summary
)
from ..services.payment_service import quick_buy_service, purchase_with_points_service
from ..services.moderation_service import payment_proof_url_service
from ..services.wallet_service import request_deposit_service, exchange_points_service
from ..services.report_service import create_report_service
from ..services.profile_service import profile_view, update_profile_service, wallet_view
from ..services.premium_service import request_premium_service
from ..services.preference_service import get_preferences, set_preference
from ..services.storage_service import (
    BUCKETS, BUCKET_AVATARS, StorageError, verify_token, local_file_path, refresh_signed_url
)
from .common import respond, require_user, uploaded_file, request_payload

consumer_bp = Blueprint("consumer_bp", __name__)


@consumer_bp.get('/products')
def get_products():
    """
    商品列表，可按类目过滤
    """
    return jsonify(list_products(request.args.get("category")))


@consumer_bp.get('/products/<product_id>')
def get_product_detail(product_id):
    p = get_product(product_id)
    if not p or not p.is_active:
        return jsonify({"error": "not_found"}), 404
    return jsonify(p.to_dict())


# --- Cart ---

@consumer_bp.get('/cart')
@require_user
def get_cart():
    return jsonify(cart_summary(get_current_user_id()))


@consumer_bp.post('/cart')
@require_user
def post_cart():
    payload = request.get_json(force=True) or {}
    return respond(add_to_cart_service(get_current_user_id(), payload.get("product_id"), payload.get("quantity", 1)))


@consumer_bp.put('/cart/<product_id>')
@require_user
def put_cart(product_id):
    payload = request.get_json(force=True) or {}
    return respond(update_cart_item_service(get_current_user_id(), product_id, payload.get("quantity")))


@consumer_bp.delete('/cart/<product_id>')
@require_user
def delete_cart(product_id):
    return respond(remove_cart_item_service(get_current_user_id(), product_id))


# --- Orders ---

@consumer_bp.post('/checkout')
@require_user
def post_checkout():
    """
    结算购物车
    JSON 或 multipart（转账凭证放在 proof 字段）:
    {
        "phone_number": "09123456789",
        "delivery_address": "Yangon",
        "payment_method": "kbzpay",
        "transaction_id": "123456",
        "submission_key": "...",
        "items": [{"product_id": 1, "quantity": 2}]   // 可选，不传则结算整个购物车
    }
    """
    payload = request_payload()
    if isinstance(payload.get("items"), str):
        try:
            payload["items"] = json.loads(payload["items"])
        except ValueError:
            return jsonify({"error": "missing_fields", "fields": ["items"]}), 400
    return respond(checkout_service(get_current_user_id(), payload, uploaded_file("proof")), 201)


@consumer_bp.post('/quick-buy')
@require_user
def post_quick_buy():
    payload = request.get_json(force=True) or {}
    return respond(quick_buy_service(get_current_user_id(), payload), 201)


@consumer_bp.get('/orders')
@require_user
def get_my_orders():
    return jsonify(list_orders(request.args.get("status"), user_id=get_current_user_id()))


@consumer_bp.get('/orders/<order_id>/proof-url')
@require_user
def get_my_proof_url(order_id):
    order = get_order(order_id)
    if not order or order.user_id != get_current_user_id():
        return jsonify({"error": "not_found"}), 404
    return respond(payment_proof_url_service(order_id))


# --- Wallet / points ---

@consumer_bp.get('/wallet')
@require_user
def get_wallet():
    return respond(wallet_view(get_current_user_id()))


@consumer_bp.get('/wallet/deposits')
@require_user
def get_my_deposits():
    return jsonify(list_deposits(user_id=get_current_user_id()))


@consumer_bp.post('/wallet/deposits')
@require_user
def post_deposit():
    """
    充值申请（multipart）：amount, payment_method, screenshot
    """
    return respond(request_deposit_service(get_current_user_id(), request_payload(), uploaded_file("screenshot")), 201)


@consumer_bp.get('/points/exchange')
def get_exchange_catalog():
    settings = get_withdrawal_settings()
    return jsonify({
        "enabled": bool(settings and settings.enabled),
        "minimum_points": settings.minimum_points if settings else 0,
        "terms_conditions": settings.terms_conditions if settings else None,
        "items": list_withdrawal_items(),
    })


@consumer_bp.post('/points/exchange')
@require_user
def post_exchange():
    payload = request.get_json(force=True) or {}
    return respond(exchange_points_service(get_current_user_id(), payload.get("item_id")), 201)


@consumer_bp.post('/points/purchase')
@require_user
def post_points_purchase():
    """
    POST Body: {"product_id": 1, "quantity": 1, "submission_key": "..."} + 配送 / 充值信息
    """
    payload = request.get_json(force=True) or {}
    return respond(purchase_with_points_service(get_current_user_id(), payload), 201)

# --- Reports ---

@consumer_bp.post('/reports')
@require_user
def post_report():
    payload = request.get_json(force=True) or {}
    return respond(create_report_service(get_current_user_id(), payload), 201)


# --- Profile / preferences ---

@consumer_bp.post('/profile/sync')
@require_user
def post_profile_sync():
    """
    注册后由前端调用一次，创建 profile 行
    """
    payload = request.get_json(force=True) or {}
    ensure_profile(
        get_current_user_id(),
        name=str(payload.get("name") or "").strip(),
        phone_number=str(payload.get("phone_number") or "").strip(),
        email=payload.get("email"),
    )
    return respond(profile_view(get_current_user_id()))


@consumer_bp.get('/profile')
@require_user
def get_profile_detail():
    return respond(profile_view(get_current_user_id()))


@consumer_bp.put('/profile')
@require_user
def put_profile():
    return respond(update_profile_service(get_current_user_id(), request_payload(), uploaded_file("avatar")))


@consumer_bp.get('/preferences')
@require_user
def get_my_preferences():
    return jsonify(get_preferences(get_current_user_id()))


@consumer_bp.put('/preferences/<key>')
@require_user
def put_preference(key):
    payload = request.get_json(force=True) or {}
    if "value" not in payload:
        return jsonify({"error": "missing_fields", "fields": ["value"]}), 400
    return respond(set_preference(get_current_user_id(), key, payload["value"]))



# --- Premium ---

@consumer_bp.get('/premium/plans')
def get_premium_plans():
    return jsonify(list_premium_plans())


@consumer_bp.get('/premium/requests')
@require_user
def get_my_premium_requests():
    return jsonify(list_premium_requests(user_id=get_current_user_id()))


@consumer_bp.post('/premium/requests')
@require_user
def post_premium_request():
    """
    POST Body: {"plan_id": 1, "phone_number": "09..."}，手机号不传时用资料里的
    """
    payload = request.get_json(force=True) or {}
    return respond(request_premium_service(get_current_user_id(), payload), 201)

# --- Storage ---

@consumer_bp.post('/storage/refresh')
@require_user
def post_refresh_url():
    """
    链接过期后重新签名
    头像任何人可见；其他桶只能刷新自己上传的文件（管理员除外）
    """
    payload = request.get_json(force=True) or {}
    bucket = payload.get("bucket")
    path = str(payload.get("path") or "")
    user_id = get_current_user_id()
    if bucket not in BUCKETS or not path:
        return jsonify({"error": "missing_fields", "fields": ["bucket", "path"]}), 400
    if bucket != BUCKET_AVATARS and not path.startswith(user_id + "/"):
        if not authorize(load_actor(user_id), "admin.access"):
            return jsonify({"error": "forbidden", "reason": "not_owner"}), 403
    try:
        url = refresh_signed_url(bucket, path, payload.get("url"))
    except StorageError as e:
        return jsonify({"error": "sign_failed", "message": str(e)}), 400
    return jsonify({"ok": True, "url": url})


@consumer_bp.get('/storage/<bucket>/<path:path>')
def get_storage_file(bucket, path):
    """
    本地存储的签名链接（STORAGE_DRIVER=LOCAL）
    """
    if bucket not in BUCKETS or not verify_token(request.args.get("token"), bucket, path):
        abort(403)
    try:
        full_path = local_file_path(bucket, path)
    except StorageError:
        abort(403)
    if not os.path.isfile(full_path):
        abort(404)
    return send_file(full_path)

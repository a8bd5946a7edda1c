from functools import wraps

from flask import jsonify, request

from ..domain.policy import authorize
from ..infra.context import get_current_user_id
from ..infra.repository import load_actor

# service 错误码 -> HTTP 状态码，其余错误一律 400
_STATUS = {
    "unauthorized": 401,
    "forbidden": 403,
    "not_found": 404,
    "product_not_found": 404,
}


def respond(result, ok_status=200):
    """
    把 service 返回的字典转成响应
    """
    if isinstance(result, dict) and result.get("error"):
        return jsonify(result), _STATUS.get(result["error"], 400)
    return jsonify(result), ok_status


def require_user(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not get_current_user_id():
            return jsonify({"error": "unauthorized", "message": "请先登录"}), 401
        return f(*args, **kwargs)
    return decorated_function


def require_admin(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = get_current_user_id()
        if not user_id:
            return jsonify({"error": "unauthorized", "message": "请先登录"}), 401
        decision = authorize(load_actor(user_id), "admin.access")
        if not decision:
            return jsonify({"error": "forbidden", "reason": decision.reason}), 403
        return f(*args, **kwargs)
    return decorated_function


def uploaded_file(field):
    """
    取 multipart 里的文件，转成 service 需要的 {filename, data, content_type}
    """
    f = request.files.get(field)
    if not f:
        return None
    return {"filename": f.filename, "data": f.read(), "content_type": f.mimetype}


def request_payload():
    """
    JSON 或 multipart 表单统一成字典
    """
    if request.is_json:
        return request.get_json(force=True) or {}
    return request.form.to_dict()

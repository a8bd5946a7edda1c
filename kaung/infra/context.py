from flask import g, request

from .signing import verify_signed

STREAM_SCOPE = "order_stream"


def get_current_user_id():
    """
    获取当前请求的用户 ID（由认证平台签发，网关透传到 X-User-ID）
    """
    return g.get('user_id')

def _stream_token_user():
    # EventSource 无法自定义 Header，只在推送接口上接受短期签名 token
    claims = verify_signed(request.args.get('token'))
    if not claims or claims.get('scope') != STREAM_SCOPE:
        return None
    return claims.get('sub')

def user_context_middleware():
    """
    Flask before_request 钩子
    解析 X-User-ID Header
    """
    if request.path.startswith('/api/storage/') and request.method == 'GET':
        # 本地文件下载只认签名 token
        g.user_id = None
        return

    user_id = request.headers.get('X-User-ID')
    if not user_id and request.endpoint == 'admin_bp.get_order_stream':
        user_id = _stream_token_user()

    g.user_id = user_id.strip() if user_id and user_id.strip() else None

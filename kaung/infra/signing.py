"""
HS256 签名令牌（JWT 格式）

本地存储的签名链接和管理后台实时推送连接共用；
密钥取 app.config["SECRET_KEY"]，载荷里必须带 exp（秒级时间戳）。
"""
import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional

from flask import current_app


def _signing_key() -> bytes:
    return str(current_app.config.get("SECRET_KEY", "dev")).encode()

def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))

def _signature(signing_input: str) -> str:
    return _b64(hmac.new(_signing_key(), signing_input.encode(), hashlib.sha256).digest())


def sign_token(claims: Dict[str, Any]) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    signing_input = _b64(json.dumps(header, separators=(",", ":")).encode()) + "." + \
                    _b64(json.dumps(claims, separators=(",", ":")).encode())
    return signing_input + "." + _signature(signing_input)


def token_claims(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    只解析载荷，不校验签名
    """
    try:
        _, payload, _ = token.split(".")
        return json.loads(_b64decode(payload))
    except (AttributeError, ValueError, TypeError):
        return None


def verify_signed(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    签名正确且未过期时返回载荷，否则返回 None
    """
    if not token or token.count(".") != 2:
        return None
    signing_input, _, signature = token.rpartition(".")
    if not hmac.compare_digest(_signature(signing_input), signature):
        return None
    claims = token_claims(token)
    if not isinstance(claims, dict):
        return None
    try:
        exp = int(claims.get("exp", 0))
    except (TypeError, ValueError):
        return None
    if exp <= int(time.time()):
        return None
    return claims

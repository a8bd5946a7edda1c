import os
import time
import uuid
import logging
from typing import Optional
from urllib.parse import urlparse, parse_qs, quote

from werkzeug.utils import secure_filename

import config
from ..infra.signing import sign_token, token_claims, verify_signed

logger = logging.getLogger('log')

BUCKET_PAYMENT_PROOFS = "payment-proofs"
BUCKET_AVATARS = "avatars"
BUCKET_CHAT_VOICES = "chat-voices"
BUCKET_DEPOSIT_SCREENSHOTS = "deposit-screenshots"

BUCKETS = {BUCKET_PAYMENT_PROOFS, BUCKET_AVATARS, BUCKET_CHAT_VOICES, BUCKET_DEPOSIT_SCREENSHOTS}

MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class StorageError(Exception):
    pass


def _driver() -> str:
    return (os.getenv("STORAGE_DRIVER") or "LOCAL").upper()

def _local_dir() -> str:
    return os.getenv("STORAGE_LOCAL_DIR") or "/tmp/kaung_uploads"

def _safe_filename(name: str) -> str:
    return secure_filename(name or "") or "upload.bin"

def _check_bucket(bucket: str) -> None:
    if bucket not in BUCKETS:
        raise StorageError(f"unknown bucket: {bucket}")

def _check_path(path: str) -> None:
    if not path or path.startswith("/") or ".." in path.split("/"):
        raise StorageError("invalid storage path")

def _cos_client():
    """
    期望环境变量：COS_BUCKET, COS_REGION, COS_SECRET_ID, COS_SECRET_KEY
    """
    bucket = os.getenv("COS_BUCKET")
    region = os.getenv("COS_REGION")
    secret_id = os.getenv("COS_SECRET_ID")
    secret_key = os.getenv("COS_SECRET_KEY")
    if not all([secret_id, secret_key, bucket, region]):
        raise StorageError("COS config missing: COS_BUCKET|COS_REGION|COS_SECRET_ID|COS_SECRET_KEY are required")

    from qcloud_cos import CosConfig, CosS3Client

    cos_config = CosConfig(Region=region, SecretId=secret_id, SecretKey=secret_key)
    return CosS3Client(cos_config), bucket


def upload_file(bucket: str, user_id: str, filename: str, data: bytes, content_type: Optional[str] = None) -> str:
    """
    统一的对象存储上传入口：
    - 环境变量 STORAGE_DRIVER=COS 时，使用腾讯云 COS（同一个 COS 桶内按逻辑桶名分前缀）
    - 否则走本地目录 STORAGE_LOCAL_DIR（默认 /tmp/kaung_uploads）
    返回存储路径 <user_id>/<ts>-<id>.<ext>；私有文件只保存路径，访问时再签名
    """
    _check_bucket(bucket)
    if not user_id:
        raise StorageError("user_id required")
    if not data:
        raise StorageError("empty file")
    if len(data) > MAX_UPLOAD_BYTES:
        raise StorageError("file too large")

    fname = _safe_filename(filename)
    ext = fname.rsplit(".", 1)[-1].lower() if "." in fname else "bin"
    path = f"{_safe_filename(user_id)}/{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.{ext}"

    if _driver() == "COS":
        from qcloud_cos.cos_exception import CosClientError, CosServiceError
        client, cos_bucket = _cos_client()
        try:
            client.put_object(
                Bucket=cos_bucket,
                Body=data,
                Key=f"{bucket}/{path}",
                ContentType=content_type or "application/octet-stream",
            )
        except (CosClientError, CosServiceError) as e:
            logger.exception("COS upload failed bucket=%s path=%s", bucket, path)
            raise StorageError(str(e)) from e
        return path

    # LOCAL 存储：开发联调用。生产请使用 COS。
    full_path = os.path.join(_local_dir(), bucket, path)
    try:
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as f:
            f.write(data)
    except OSError as e:
        logger.exception("local upload failed bucket=%s path=%s", bucket, path)
        raise StorageError(str(e)) from e
    return path


def delete_file(bucket: str, path: Optional[str]) -> bool:
    """
    删除文件（下单失败后清理已上传的凭证）
    """
    if not path:
        return False
    _check_bucket(bucket)
    _check_path(path)
    if _driver() == "COS":
        from qcloud_cos.cos_exception import CosClientError, CosServiceError
        client, cos_bucket = _cos_client()
        try:
            client.delete_object(Bucket=cos_bucket, Key=f"{bucket}/{path}")
        except (CosClientError, CosServiceError) as e:
            logger.exception("COS delete failed bucket=%s path=%s", bucket, path)
            raise StorageError(str(e)) from e
        return True
    full_path = os.path.join(_local_dir(), bucket, path)
    if not os.path.exists(full_path):
        return False
    try:
        os.remove(full_path)
    except OSError as e:
        logger.exception("local delete failed bucket=%s path=%s", bucket, path)
        raise StorageError(str(e)) from e
    return True


def discard_file(bucket: str, path: Optional[str]) -> None:
    """
    补偿清理：写库失败后删除刚上传的文件，删除失败只记日志
    """
    try:
        delete_file(bucket, path)
    except StorageError:
        logger.exception("orphaned file bucket=%s path=%s", bucket, path)


def file_exists(bucket: str, path: str) -> bool:
    _check_bucket(bucket)
    _check_path(path)
    if _driver() == "COS":
        from qcloud_cos.cos_exception import CosClientError, CosServiceError
        client, cos_bucket = _cos_client()
        try:
            return client.object_exists(Bucket=cos_bucket, Key=f"{bucket}/{path}")
        except (CosClientError, CosServiceError) as e:
            logger.exception("COS head failed bucket=%s path=%s", bucket, path)
            raise StorageError(str(e)) from e
    return os.path.exists(os.path.join(_local_dir(), bucket, path))


def local_file_path(bucket: str, path: str) -> str:
    _check_bucket(bucket)
    _check_path(path)
    return os.path.join(_local_dir(), bucket, path)


def verify_token(token: str, bucket: str, path: str) -> bool:
    """
    校验本地签名链接：签名正确、未过期、且与请求的文件一致
    """
    claims = verify_signed(token)
    if not claims:
        return False
    return claims.get("bucket") == bucket and claims.get("path") == path


def create_signed_url(bucket: str, path: str, expires_in: Optional[int] = None) -> str:
    """
    获取私有文件的临时访问链接（默认 1 小时有效）
    """
    _check_bucket(bucket)
    _check_path(path)
    ttl = int(expires_in or config.signed_url_ttl)

    if _driver() == "COS":
        client, cos_bucket = _cos_client()
        return client.get_presigned_url(
            Method='GET',
            Bucket=cos_bucket,
            Key=f"{bucket}/{path}",
            Expired=ttl
        )

    exp = int(time.time()) + ttl
    base = (os.getenv("STORAGE_PUBLIC_BASE") or "").rstrip("/")
    token = sign_token({"bucket": bucket, "path": path, "exp": exp})
    return f"{base}/api/storage/{bucket}/{quote(path)}?token={token}"


def signed_url_expires_at(url: Optional[str]) -> Optional[int]:
    """
    解析签名链接的过期时间
    - 本地链接：token 的 exp
    - COS 链接：q-sign-time=<start>;<end>
    无法解析时返回 None
    """
    if not url:
        return None
    query = parse_qs(urlparse(url).query)
    if "token" in query:
        payload = token_claims(query["token"][0])
        if payload and "exp" in payload:
            return int(payload["exp"])
        return None
    sign_time = (query.get("q-sign-time") or [""])[0]
    if ";" in sign_time:
        try:
            return int(sign_time.split(";")[1])
        except ValueError:
            return None
    return None


def refresh_signed_url(bucket: str, path: str, url: Optional[str] = None, leeway: int = 60) -> str:
    """
    链接已过期或即将过期时重新签名，否则原样返回
    """
    exp = signed_url_expires_at(url)
    if exp is not None and exp - leeway > int(time.time()):
        return url
    logger.info("re-signing url bucket=%s path=%s", bucket, path)
    return create_signed_url(bucket, path)

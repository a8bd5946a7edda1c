import os
import time
from urllib.parse import urlparse, parse_qs

import pytest
from qcloud_cos.cos_exception import CosClientError

from kaung.services import storage_service
from kaung.services.storage_service import (
    StorageError, BUCKET_PAYMENT_PROOFS, BUCKET_AVATARS, MAX_UPLOAD_BYTES,
    upload_file, delete_file, discard_file, file_exists, local_file_path, verify_token,
    create_signed_url, signed_url_expires_at, refresh_signed_url
)


def token_of(url):
    return parse_qs(urlparse(url).query)["token"][0]


def test_upload_stores_under_user_prefix(app):
    path = upload_file(BUCKET_PAYMENT_PROOFS, "u1", "../../My Proof.JPG", b"data", "image/jpeg")
    assert path.startswith("u1/")
    assert path.endswith(".jpg")
    assert file_exists(BUCKET_PAYMENT_PROOFS, path)
    with open(local_file_path(BUCKET_PAYMENT_PROOFS, path), "rb") as f:
        assert f.read() == b"data"
    assert local_file_path(BUCKET_PAYMENT_PROOFS, path).startswith(os.environ["STORAGE_LOCAL_DIR"])

    assert delete_file(BUCKET_PAYMENT_PROOFS, path)
    assert not file_exists(BUCKET_PAYMENT_PROOFS, path)
    assert not delete_file(BUCKET_PAYMENT_PROOFS, None)


def test_upload_rejects_bad_input(app):
    with pytest.raises(StorageError):
        upload_file("secrets", "u1", "a.jpg", b"x")
    with pytest.raises(StorageError):
        upload_file(BUCKET_AVATARS, "u1", "a.jpg", b"")
    with pytest.raises(StorageError):
        upload_file(BUCKET_AVATARS, "u1", "a.jpg", b"x" * (MAX_UPLOAD_BYTES + 1))
    with pytest.raises(StorageError):
        local_file_path(BUCKET_AVATARS, "../etc/passwd")


def test_signed_url_verifies_only_for_its_file(app):
    url = create_signed_url(BUCKET_PAYMENT_PROOFS, "u1/1-abc.jpg")
    assert url.startswith("/api/storage/payment-proofs/u1/1-abc.jpg?token=")
    token = token_of(url)
    assert verify_token(token, BUCKET_PAYMENT_PROOFS, "u1/1-abc.jpg")
    assert not verify_token(token, BUCKET_PAYMENT_PROOFS, "u2/1-abc.jpg")
    assert not verify_token(token, BUCKET_AVATARS, "u1/1-abc.jpg")
    assert not verify_token(token[:-2] + "xx", BUCKET_PAYMENT_PROOFS, "u1/1-abc.jpg")
    assert not verify_token("", BUCKET_PAYMENT_PROOFS, "u1/1-abc.jpg")


def test_signed_url_lasts_one_hour_by_default(app):
    before = int(time.time())
    url = create_signed_url(BUCKET_AVATARS, "u1/a.png")
    exp = signed_url_expires_at(url)
    assert before + 3600 <= exp <= int(time.time()) + 3600


def test_expired_token_is_rejected(app):
    url = create_signed_url(BUCKET_AVATARS, "u1/a.png", expires_in=-10)
    assert not verify_token(token_of(url), BUCKET_AVATARS, "u1/a.png")


def test_cos_expiry_is_read_from_sign_time():
    url = ("https://bucket-1250000000.cos.ap-guangzhou.myqcloud.com/avatars/u1/a.png"
           "?q-sign-algorithm=sha1&q-ak=AK&q-sign-time=1700000000;1700003600&q-key-time=1700000000;1700003600")
    assert signed_url_expires_at(url) == 1700003600
    assert signed_url_expires_at("https://example.com/a.png") is None
    assert signed_url_expires_at(None) is None


def test_refresh_only_resigns_expiring_links(app):
    fresh = create_signed_url(BUCKET_AVATARS, "u1/a.png")
    assert refresh_signed_url(BUCKET_AVATARS, "u1/a.png", fresh) == fresh

    stale = create_signed_url(BUCKET_AVATARS, "u1/a.png", expires_in=30)
    renewed = refresh_signed_url(BUCKET_AVATARS, "u1/a.png", stale)
    assert renewed != stale
    assert signed_url_expires_at(renewed) > signed_url_expires_at(stale)

    assert signed_url_expires_at(refresh_signed_url(BUCKET_AVATARS, "u1/a.png")) is not None


class FailingCosClient:
    def delete_object(self, **kwargs):
        raise CosClientError("network down")

    def object_exists(self, **kwargs):
        raise CosClientError("network down")


@pytest.fixture
def failing_cos(app, monkeypatch):
    monkeypatch.setenv("STORAGE_DRIVER", "COS")
    monkeypatch.setattr(storage_service, "_cos_client", lambda: (FailingCosClient(), "bucket-1250000000"))


def test_cos_errors_become_storage_errors(failing_cos):
    with pytest.raises(StorageError):
        delete_file(BUCKET_PAYMENT_PROOFS, "u1/a.jpg")
    with pytest.raises(StorageError):
        file_exists(BUCKET_PAYMENT_PROOFS, "u1/a.jpg")


def test_discard_file_only_logs_failures(failing_cos, caplog):
    discard_file(BUCKET_PAYMENT_PROOFS, "u1/a.jpg")
    assert "orphaned file" in caplog.text
    discard_file(BUCKET_PAYMENT_PROOFS, None)

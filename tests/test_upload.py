"""
tests/test_upload.py
"""
from __future__ import annotations

import io

import pytest
from botocore.exceptions import ClientError

import inkpost.blog as blog
from inkpost.blog import UPLOAD_MAX_BYTES

CFG = {
    "R2_ACCOUNT_ID": "acct",
    "R2_ACCESS_KEY_ID": "key",
    "R2_SECRET_ACCESS_KEY": "secret",
    "R2_BUCKET": "bucket",
    "R2_PUBLIC_BASE": "https://img.example/",
}


# ───────────────────────── helpers ────────────────────────────────────
class FakeS3:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.uploads: list[dict] = []
        self.deleted: list[str] = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.fail:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        self.uploads.append(
            {"bucket": bucket, "key": key, "body": fileobj.read(), "extra": ExtraArgs}
        )

    def delete_object(self, Bucket, Key):
        if self.fail:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "DeleteObject")
        self.deleted.append(Key)


@pytest.fixture
def s3(monkeypatch) -> FakeS3:
    fake = FakeS3()
    monkeypatch.setattr(blog, "r2_config", lambda: dict(CFG))
    monkeypatch.setattr(blog, "_r2_client", lambda cfg: fake)
    return fake


def _file(name="cat.png", mime="image/png", body=b"\x89PNG fake"):
    return (io.BytesIO(body), name, mime)


def _post(client, url, headers, **files):
    return client.post(url, data=files, headers=headers, content_type="multipart/form-data")


# ───────────────────────── single upload ──────────────────────────────
def test_upload_single_image(client, make_user, s3):
    user, headers = make_user()
    rv = _post(client, "/api/upload/image", headers, image=_file())
    assert rv.status_code == 200
    body = rv.get_json()

    assert body["publicId"].startswith(f"blog-app/{user['id']}/")
    assert body["publicId"].endswith(".png")
    assert body["url"] == f"https://img.example/{body['publicId']}"
    assert s3.uploads[0]["bucket"] == "bucket"
    assert s3.uploads[0]["body"] == b"\x89PNG fake"
    assert s3.uploads[0]["extra"] == {"ContentType": "image/png"}


def test_uploaded_url_is_accepted_by_blogs(client, make_user, make_blog, s3):
    _, headers = make_user()
    url = _post(client, "/api/upload/image", headers, image=_file("a.jpg", "image/jpeg")).get_json()["url"]
    assert make_blog(headers, images=[url])["images"] == [url]


def test_upload_requires_auth(client, s3):
    rv = _post(client, "/api/upload/image", {}, image=_file())
    assert rv.status_code == 401
    assert s3.uploads == []


def test_upload_rejects_non_images(client, make_user, s3):
    _, headers = make_user()
    rv = _post(client, "/api/upload/image", headers, image=_file("x.txt", "text/plain", b"hi"))
    assert rv.status_code == 415
    assert s3.uploads == []


def test_upload_rejects_large_files(client, make_user, s3):
    _, headers = make_user()
    big = _file(body=b"0" * (UPLOAD_MAX_BYTES + 1))
    rv = _post(client, "/api/upload/image", headers, image=big)
    assert rv.status_code == 413
    assert rv.get_json() == {"error": "File too large (5 MiB max)."}


def test_upload_without_file(client, make_user, s3):
    _, headers = make_user()
    rv = client.post("/api/upload/image", headers=headers)
    assert rv.status_code == 400


def test_upload_not_configured(client, make_user, monkeypatch):
    _, headers = make_user()
    monkeypatch.setattr(blog, "r2_config", lambda: {})
    rv = _post(client, "/api/upload/image", headers, image=_file())
    assert rv.status_code == 400
    assert rv.get_json() == {"error": "Image uploads are not configured."}


def test_upload_storage_failure_is_500(client, make_user, s3):
    _, headers = make_user()
    s3.fail = True
    rv = _post(client, "/api/upload/image", headers, image=_file())
    assert rv.status_code == 500
    assert rv.get_json() == {"error": "Failed to upload image"}


# ───────────────────────── batch upload ───────────────────────────────
def test_upload_many(client, make_user, s3):
    _, headers = make_user()
    rv = _post(
        client,
        "/api/upload/images",
        headers,
        images=[_file("a.png"), _file("b.gif", "image/gif")],
    )
    assert rv.status_code == 200
    images = rv.get_json()["images"]
    assert [i["publicId"][-4:] for i in images] == [".png", ".gif"]
    assert len(s3.uploads) == 2


def test_upload_many_caps_file_count(client, make_user, s3):
    _, headers = make_user()
    rv = _post(client, "/api/upload/images", headers, images=[_file() for _ in range(6)])
    assert rv.status_code == 400
    assert s3.uploads == []


def test_upload_many_checks_every_file_first(client, make_user, s3):
    _, headers = make_user()
    rv = _post(
        client,
        "/api/upload/images",
        headers,
        images=[_file(), _file("x.pdf", "application/pdf")],
    )
    assert rv.status_code == 415
    assert s3.uploads == []


# ───────────────────────── delete ─────────────────────────────────────
def test_delete_own_image(client, make_user, s3):
    user, headers = make_user()
    key = f"blog-app/{user['id']}/2099/01/01/abc.png"
    rv = client.delete(f"/api/upload/image/{key}", headers=headers)
    assert rv.status_code == 200
    assert s3.deleted == [key]


def test_delete_foreign_image_is_403(client, make_user, s3):
    owner, _ = make_user()
    _, other = make_user()
    key = f"blog-app/{owner['id']}/2099/01/01/abc.png"
    rv = client.delete(f"/api/upload/image/{key}", headers=other)
    assert rv.status_code == 403
    assert s3.deleted == []


def test_delete_storage_failure_is_500(client, make_user, s3):
    user, headers = make_user()
    s3.fail = True
    rv = client.delete(f"/api/upload/image/blog-app/{user['id']}/x.png", headers=headers)
    assert rv.status_code == 500

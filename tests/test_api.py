from datetime import timedelta
from io import BytesIO

import pytest
from sqlalchemy import update

from arcards.extensions import db, storage
from arcards.models.asset import Asset, utcnow
from arcards.services import asset_service
from arcards.services.artifact_codec import HEADER, TripletCodec
from arcards.services.asset_service import Upload
from arcards.services.compile_service import FAILED, compile_asset, reap_stale_compilations

from conftest import checkerboard, png_bytes, random_keypoints


def _create(client, headers, image=None, **fields):
    if image is None:
        return client.post("/api/assets", json=fields, headers=headers)
    data = dict(fields, image=(BytesIO(image), "target.png"))
    return client.post("/api/assets", data=data, headers=headers,
                       content_type="multipart/form-data")


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["database"] is True


def test_requires_bearer_token(client):
    assert client.get("/api/assets").status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    resp = client.get("/api/assets", headers=bad)
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "unauthorized"


def test_create_and_publish(client, auth_headers, checkerboard_png):
    resp = _create(client, auth_headers(), image=checkerboard_png, title="Hello")
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["status"] == "ready"
    assert body["title"] == "Hello"
    assert body["upload_targets"]["image"].endswith(f"/api/assets/{body['id']}/image")
    assert body["descriptor_url"].endswith(f"/ar/nft/owner-1/{body['id']}/g1/descriptors")

    public = client.get(f"/p/{body['id']}").get_json()
    assert public["status"] == "ready"
    assert set(public["artifactUrls"]) == {"iset", "fset", "fset3"}
    assert public["videoUrl"] is None
    assert public["imageUrl"].startswith("http://localhost/storage/postcard-images/")
    assert "owner_id" not in public


def test_signed_urls_are_served_and_checked(client, auth_headers, checkerboard_png):
    asset_id = _create(client, auth_headers(), image=checkerboard_png).get_json()["id"]
    public = client.get(f"/p/{asset_id}").get_json()

    url = public["artifactUrls"]["iset"].replace("http://localhost", "")
    resp = client.get(url)
    assert resp.status_code == 200
    assert resp.data[:4] == b"ISET"

    tampered = url.replace("descriptors.iset", "descriptors.fset")
    assert client.get(tampered).status_code == 403


def test_public_view_hides_details_until_ready(client, auth_headers, gray_png):
    asset_id = _create(client, auth_headers(), image=gray_png).get_json()["id"]
    resp = client.get(f"/p/{asset_id}")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "needs_better_image"
    assert set(body) == {"status"}


def test_public_error_is_generic(client, auth_headers):
    asset_id = _create(client, auth_headers(), image=b"garbage").get_json()["id"]
    body = client.get(f"/p/{asset_id}").get_json()
    assert body == {"status": "error", "message": "This asset could not be prepared."}


def test_private_asset_is_hidden(client, auth_headers, checkerboard_png):
    asset_id = _create(client, auth_headers(), image=checkerboard_png, is_public="false").get_json()["id"]
    assert client.get(f"/p/{asset_id}").status_code == 404
    assert client.get(f"/ar/nft/owner-1/{asset_id}/descriptors.iset").status_code == 404


def test_proxy_headers_and_not_ready(client, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers).get_json()["id"]

    resp = client.get(f"/ar/nft/owner-1/{asset_id}/descriptors.iset")
    assert resp.status_code == 409
    assert resp.get_json() == {
        "error": "not_ready",
        "message": "Descriptors are not available yet",
        "status": "processing",
    }
    assert resp.headers["Retry-After"] == "5"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"

    client.put(f"/api/assets/{asset_id}/image", data=checkerboard_png,
               headers=headers, content_type="image/png")

    resp = client.get(f"/ar/nft/owner-1/{asset_id}/descriptors.fset")
    assert resp.status_code == 200
    assert resp.mimetype == "application/octet-stream"
    assert resp.headers["Cache-Control"] == "public, max-age=60"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert HEADER.unpack_from(resp.data)[0] == b"FSET"
    etag = resp.headers["ETag"]

    again = client.get(f"/ar/nft/owner-1/{asset_id}/descriptors.fset", headers={"If-None-Match": etag})
    assert again.status_code == 304

    versioned = client.get(f"/ar/nft/owner-1/{asset_id}/g1/descriptors.fset")
    assert versioned.status_code == 200
    assert "immutable" in versioned.headers["Cache-Control"]
    assert client.get(f"/ar/nft/owner-1/{asset_id}/g7/descriptors.fset").status_code == 404

    assert client.get(f"/ar/nft/owner-1/{asset_id}/descriptors.exe").status_code == 404
    assert client.get(f"/ar/nft/someone-else/{asset_id}/descriptors.fset").status_code == 404


def test_owner_views_and_forbidden_access(client, auth_headers):
    mine = auth_headers("owner-1")
    theirs = auth_headers("owner-2")
    asset_id = _create(client, mine, title="mine").get_json()["id"]

    listed = client.get("/api/assets", headers=mine).get_json()["items"]
    assert [a["id"] for a in listed] == [asset_id]
    assert client.get("/api/assets", headers=theirs).get_json()["items"] == []

    assert client.get(f"/api/assets/{asset_id}", headers=theirs).status_code == 403
    assert client.delete(f"/api/assets/{asset_id}", headers=theirs).status_code == 403
    assert client.get("/api/assets/nope", headers=mine).status_code == 404


def test_image_replacement_overwrites_deterministic_path(client, app, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers, image=checkerboard_png).get_json()["id"]

    resp = client.put(f"/api/assets/{asset_id}/image",
                      data={"file": (BytesIO(checkerboard_png), "new.webp")},
                      headers=headers, content_type="multipart/form-data")
    assert resp.status_code == 202
    assert resp.get_json()["compile_generation"] == 2

    with app.app_context():
        assert storage.list("postcard-images", f"owner-1/{asset_id}/") == [f"owner-1/{asset_id}/image.webp"]


def test_rejects_unsupported_media(client, auth_headers):
    headers = auth_headers()
    asset_id = _create(client, headers).get_json()["id"]
    resp = client.put(f"/api/assets/{asset_id}/image", data=b"MZ...", headers=headers,
                      content_type="application/x-msdownload")
    assert resp.status_code == 400
    resp = client.put(f"/api/assets/{asset_id}/video", data=b"", headers=headers, content_type="video/mp4")
    assert resp.status_code == 400


def test_video_upload(client, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers, image=checkerboard_png).get_json()["id"]
    resp = client.put(f"/api/assets/{asset_id}/video", data=b"\x00\x00\x00\x18ftypmp42",
                      headers=headers, content_type="video/mp4")
    assert resp.status_code == 200
    assert resp.get_json()["video_ref"] == f"owner-1/{asset_id}/video.mp4"
    assert client.get(f"/p/{asset_id}").get_json()["videoUrl"]


def test_recompile_endpoint(client, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers).get_json()["id"]
    assert client.post(f"/api/assets/{asset_id}/recompile", headers=headers).status_code == 400

    client.put(f"/api/assets/{asset_id}/image", data=checkerboard_png, headers=headers,
               content_type="image/png")
    resp = client.post(f"/api/assets/{asset_id}/recompile", headers=headers)
    assert resp.status_code == 202
    assert resp.get_json()["generation"] == 1


def test_delete_purges_everything_and_is_idempotent(client, app, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers, image=checkerboard_png).get_json()["id"]
    client.put(f"/api/assets/{asset_id}/video", data=b"video-bytes", headers=headers,
               content_type="video/mp4")

    assert client.delete(f"/api/assets/{asset_id}", headers=headers).status_code == 204
    assert client.delete(f"/api/assets/{asset_id}", headers=headers).status_code == 204

    with app.app_context():
        for bucket in ("postcard-images", "postcard-videos", "nft-descriptors"):
            assert storage.list(bucket, f"owner-1/{asset_id}/") == []
    assert client.get(f"/p/{asset_id}").status_code == 404


@pytest.mark.parametrize("config_overrides", [{"MAX_CONTENT_LENGTH": 1024}])
def test_oversized_upload(client, auth_headers):
    resp = _create(client, auth_headers(), image=b"\x00" * 4096)
    assert resp.status_code == 413


def test_replacement_finishing_mid_fetch_still_serves(client, app, auth_headers, monkeypatch, checkerboard_png):
    asset_id = _create(client, auth_headers(), image=checkerboard_png).get_json()["id"]
    fetch = storage.get
    fetched = []

    def get_while_generation_two_lands(bucket, path):
        if bucket == "nft-descriptors" and not fetched:
            fetched.append(path)
            with app.app_context():
                asset = db.session.get(Asset, asset_id)
                asset_service.attach_image(asset, Upload(png_bytes(checkerboard(square=32)), "b.png"))
        return fetch(bucket, path)

    monkeypatch.setattr(storage, "get", get_while_generation_two_lands)
    resp = client.get(f"/ar/nft/owner-1/{asset_id}/descriptors.iset")

    assert fetched == [f"owner-1/{asset_id}/nft/g1/descriptors.iset"]
    assert resp.status_code == 200
    assert resp.headers["X-Artifact-Generation"] == "2"
    assert resp.data[:4] == b"ISET"


def test_reaped_asset_is_not_served(client, app, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers, image=checkerboard_png).get_json()["id"]
    with app.app_context():
        db.session.execute(
            update(Asset).where(Asset.id == asset_id)
            .values(compile_token="stuck", compile_started_at=utcnow() - timedelta(hours=1))
        )
        db.session.commit()
        assert reap_stale_compilations() == 1

    resp = client.get(f"/ar/nft/owner-1/{asset_id}/descriptors.iset")
    assert resp.status_code == 409
    assert resp.get_json()["status"] == "error"
    assert client.get(f"/ar/nft/owner-1/{asset_id}/g1/descriptors.iset").status_code == 409
    assert client.get(f"/api/assets/{asset_id}", headers=headers).get_json()["descriptor_url"] is None


def test_failed_recompile_of_same_image_is_not_served(client, app, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers, image=checkerboard_png).get_json()["id"]
    with app.app_context():
        storage.delete("postcard-images", [f"owner-1/{asset_id}/image.png"])
        assert compile_asset(asset_id, 1) == FAILED

    resp = client.get(f"/ar/nft/owner-1/{asset_id}/descriptors.fset")
    assert resp.status_code == 409
    assert resp.get_json()["status"] == "error"


def _tables(codec_blobs):
    return {name.rsplit(".", 1)[-1]: (BytesIO(data), name) for name, data in codec_blobs.items()}


def test_upload_client_compiled_artifact(client, app, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers, image=checkerboard_png).get_json()["id"]
    blobs = TripletCodec().encode(random_keypoints(80, seed=7), 512, 512, 1_700_000_000)

    resp = client.put(f"/api/assets/{asset_id}/artifact", data=_tables(blobs), headers=headers,
                      content_type="multipart/form-data")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "ready"
    assert body["compile_generation"] == 2
    assert body["keypoint_count"] == 80
    assert body["descriptor_url"].endswith(f"/ar/nft/owner-1/{asset_id}/g2/descriptors")

    for name, data in blobs.items():
        served = client.get(f"/ar/nft/owner-1/{asset_id}/{name}")
        assert served.headers["X-Artifact-Generation"] == "2"
        assert served.data == data
    with app.app_context():
        names = storage.list("nft-descriptors", f"owner-1/{asset_id}/")
    assert names and all("/g2/" in n for n in names)


def test_upload_rejects_malformed_artifact(client, app, auth_headers, checkerboard_png):
    headers = auth_headers()
    asset_id = _create(client, headers, image=checkerboard_png).get_json()["id"]
    good = TripletCodec().encode(random_keypoints(80, seed=8), 512, 512)

    bad_magic = dict(good, **{"descriptors.fset": b"NOPE" + good["descriptors.fset"][4:]})
    missing = {k: v for k, v in good.items() if k != "descriptors.fset3"}
    too_few = TripletCodec().encode(random_keypoints(3, seed=9), 512, 512)

    for blobs in (bad_magic, missing, too_few):
        resp = client.put(f"/api/assets/{asset_id}/artifact", data=_tables(blobs), headers=headers,
                          content_type="multipart/form-data")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "ValidationError"

    after = client.get(f"/api/assets/{asset_id}", headers=headers).get_json()
    assert after["status"] == "ready"
    assert after["compile_generation"] == 1


def test_upload_artifact_requires_owner_and_image(client, auth_headers):
    asset_id = _create(client, auth_headers()).get_json()["id"]
    blobs = TripletCodec().encode(random_keypoints(80, seed=10), 512, 512)

    resp = client.put(f"/api/assets/{asset_id}/artifact", data=_tables(blobs), headers=auth_headers("owner-2"),
                      content_type="multipart/form-data")
    assert resp.status_code == 403
    resp = client.put(f"/api/assets/{asset_id}/artifact", data=_tables(blobs), headers=auth_headers(),
                      content_type="multipart/form-data")
    assert resp.status_code == 400

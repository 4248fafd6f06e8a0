import hashlib
from datetime import timedelta

import pytest

from conftest import JPEG_BLOB, PDF_BLOB, PNG_BLOB
from fileuploader.core.security import TokenService


def assert_error_body(response, status_code: int, error: str) -> None:
    assert response.status_code == status_code
    body = response.json()
    assert set(body) == {"error", "code", "message"}
    assert body["code"] == status_code
    assert body["error"] == error


async def upload(client, headers, data=PNG_BLOB, filename="photo.png", content_type="image/png"):
    return await client.post(
        "/api/v1/upload",
        files={"file": (filename, data, content_type)},
        headers=headers,
    )


def test_create_app_keeps_injected_services(app_instance, storage, limiter, token_service):
    assert app_instance.state.rate_limiter is limiter
    assert app_instance.state.token_service is token_service
    assert app_instance.state.ingestion_service.storage is storage


@pytest.mark.asyncio
async def test_health_and_ready(client):
    health_resp = await client.get("/health")
    assert health_resp.status_code == 200
    assert health_resp.json()["status"] == "healthy"

    ready_resp = await client.get("/ready")
    assert ready_resp.status_code == 200
    assert ready_resp.json() == {"status": "ready", "checks": {"storage": "ok"}}


@pytest.mark.asyncio
async def test_upload_and_download_round_trip(client, auth_headers, storage):
    headers = auth_headers("u1")

    upload_resp = await upload(client, headers)
    assert upload_resp.status_code == 200
    data = upload_resp.json()
    assert set(data) == {"id", "url", "size", "contentType", "uploadTime", "checksum"}
    assert data["size"] == len(PNG_BLOB)
    assert data["contentType"] == "image/png"
    assert data["checksum"] == hashlib.sha256(PNG_BLOB).hexdigest()
    assert data["url"] == f"/api/v1/files/{data['id']}"
    assert str(storage.base_path) not in upload_resp.text

    download_resp = await client.get(data["url"], headers=headers)
    assert download_resp.status_code == 200
    assert download_resp.content == PNG_BLOB
    assert download_resp.headers["content-type"] == "image/png"
    assert download_resp.headers["content-length"] == str(len(PNG_BLOB))
    assert 'filename="photo.png"' in download_resp.headers["content-disposition"]

    legacy_resp = await client.get(f"/files/{data['id']}", headers=headers)
    assert legacy_resp.status_code == 200
    assert legacy_resp.content == PNG_BLOB


@pytest.mark.asyncio
async def test_download_metadata_as_json(client, auth_headers):
    headers = auth_headers("u1")
    data = (await upload(client, headers, filename="../../secret.png")).json()

    meta_resp = await client.get(
        f"/api/v1/files/{data['id']}",
        headers={**headers, "Accept": "application/json"},
    )
    assert meta_resp.status_code == 200
    metadata = meta_resp.json()
    assert metadata["id"] == data["id"]
    assert metadata["ownerId"] == "u1"
    assert metadata["originalName"] == "secret.png"
    assert metadata["checksum"] == data["checksum"]
    assert metadata["size"] == len(PNG_BLOB)


@pytest.mark.parametrize("rate_limit", [2])
@pytest.mark.asyncio
async def test_rate_limited_upload_scenario(client, auth_headers, clock):
    headers = auth_headers("u1")

    first = await upload(client, headers)
    assert first.status_code == 200
    assert len(first.json()["checksum"]) >= 16

    second = await upload(client, headers)
    assert second.status_code == 200

    third = await upload(client, headers)
    assert_error_body(third, 429, "rate_limited")
    assert "retry-after" in third.headers

    clock.advance(60)
    download_resp = await client.get(f"/api/v1/files/{first.json()['id']}", headers=headers)
    assert download_resp.status_code == 200
    assert download_resp.content == PNG_BLOB
    assert download_resp.headers["content-type"] == "image/png"


@pytest.mark.parametrize("rate_limit", [1])
@pytest.mark.asyncio
async def test_rate_limit_is_per_subject(client, auth_headers):
    assert (await client.get("/api/v1/files/missing", headers=auth_headers("u1"))).status_code == 404
    assert (await client.get("/api/v1/files/missing", headers=auth_headers("u1"))).status_code == 429
    assert (await client.get("/api/v1/files/missing", headers=auth_headers("u2"))).status_code == 404


@pytest.mark.asyncio
async def test_other_subject_gets_same_response_as_missing_file(client, auth_headers):
    data = (await upload(client, auth_headers("owner"))).json()

    foreign_resp = await client.get(f"/api/v1/files/{data['id']}", headers=auth_headers("intruder"))
    missing_resp = await client.get(
        "/api/v1/files/00000000-0000-0000-0000-000000000000", headers=auth_headers("intruder")
    )

    assert_error_body(foreign_resp, 404, "not_found")
    assert foreign_resp.status_code == missing_resp.status_code
    assert foreign_resp.json() == missing_resp.json()

    foreign_meta = await client.get(
        f"/api/v1/files/{data['id']}",
        headers={**auth_headers("intruder"), "Accept": "application/json"},
    )
    assert foreign_meta.json() == missing_resp.json()


@pytest.mark.asyncio
async def test_traversal_ids_are_not_found(client, auth_headers):
    for file_id in ("..", "..%2F..%2Fetc%2Fpasswd", "%2E%2E"):
        resp = await client.get(f"/api/v1/files/{file_id}", headers=auth_headers("u1"))
        assert resp.status_code == 404
        assert resp.json()["code"] == 404


@pytest.mark.asyncio
async def test_overlong_id_is_not_found(client, auth_headers):
    resp = await client.get("/api/v1/files/" + "a" * 300, headers=auth_headers("u1"))

    assert_error_body(resp, 404, "not_found")


@pytest.mark.asyncio
async def test_pdf_declared_as_png_is_rejected(client, auth_headers, storage):
    resp = await upload(client, auth_headers("u1"), data=PDF_BLOB, filename="fake.png")

    assert_error_body(resp, 400, "invalid_type")
    assert list(storage.base_path.iterdir()) == []


@pytest.mark.asyncio
async def test_jpeg_upload_accepted(client, auth_headers):
    resp = await upload(
        client, auth_headers("u1"), data=JPEG_BLOB, filename="photo.jpg", content_type="image/jpeg"
    )

    assert resp.status_code == 200
    assert resp.json()["contentType"] == "image/jpeg"


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected(client, auth_headers, storage):
    resp = await upload(client, auth_headers("u1"), data=PNG_BLOB + b"\x00" * 2048)

    assert_error_body(resp, 400, "file_too_large")
    assert list(storage.base_path.iterdir()) == []


@pytest.mark.asyncio
async def test_disallowed_type_is_rejected(client, auth_headers):
    resp = await upload(
        client, auth_headers("u1"), data=b"plain text", filename="notes.txt", content_type="text/plain"
    )

    assert_error_body(resp, 400, "invalid_type")


@pytest.mark.asyncio
async def test_upload_without_file_field(client, auth_headers):
    resp = await client.post(
        "/api/v1/upload",
        data={"other": "value"},
        headers=auth_headers("u1"),
    )

    assert_error_body(resp, 400, "invalid_request")


@pytest.mark.asyncio
async def test_delete_file(client, auth_headers):
    data = (await upload(client, auth_headers("u1"))).json()

    forbidden = await client.delete(f"/api/v1/files/{data['id']}", headers=auth_headers("u2"))
    assert_error_body(forbidden, 404, "not_found")

    deleted = await client.delete(f"/api/v1/files/{data['id']}", headers=auth_headers("u1"))
    assert deleted.status_code == 204

    gone = await client.get(f"/api/v1/files/{data['id']}", headers=auth_headers("u1"))
    assert_error_body(gone, 404, "not_found")


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Basic dXNlcjpwYXNz"},
        {"Authorization": "Bearer"},
        {"Authorization": "Bearer not-a-token"},
    ],
)
@pytest.mark.asyncio
async def test_requests_without_valid_token_are_rejected(client, headers):
    upload_resp = await upload(client, headers)
    assert_error_body(upload_resp, 401, "unauthenticated")
    assert upload_resp.headers["www-authenticate"] == "Bearer"

    download_resp = await client.get("/files/anything", headers=headers)
    assert_error_body(download_resp, 401, "unauthenticated")


@pytest.mark.asyncio
async def test_token_signed_with_other_secret_is_rejected(client):
    foreign = TokenService("another-secret", timedelta(hours=1)).issue("u1")

    resp = await upload(client, {"Authorization": f"Bearer {foreign}"})

    assert_error_body(resp, 401, "unauthenticated")


@pytest.mark.asyncio
async def test_expired_token_is_rejected(client, settings):
    expired = TokenService(settings.jwt_secret_key, timedelta(seconds=-5)).issue("u1")

    resp = await client.get("/api/v1/files/anything", headers={"Authorization": f"Bearer {expired}"})

    assert_error_body(resp, 401, "unauthenticated")


@pytest.mark.asyncio
async def test_unknown_route_uses_error_body(client):
    resp = await client.get("/api/v1/unknown")

    assert_error_body(resp, 404, "not_found")

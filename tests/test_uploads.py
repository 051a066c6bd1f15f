"""Tests for the upload client."""
import httpx
import pytest

from jobsync.client.estimator import UploadPhase
from jobsync.client.uploads import UploadClient
from jobsync.core.exceptions import ErrorCode


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "patients.csv"
    path.write_text("id,name\n" + "".join(f"{i},p{i}\n" for i in range(500)))
    return path


def make_client(handler, client_settings, clock) -> UploadClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://testserver"
    )
    return UploadClient(http, "u1", client_settings, clock=clock)


@pytest.mark.asyncio
async def test_successful_upload_tracks_bytes(csv_file, client_settings, clock):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/uploads"
        assert request.url.params["ownerId"] == "u1"
        assert b"patients.csv" in request.content
        return httpx.Response(
            200, json={"success": True, "filePath": "/srv/uploads/u1/upload_ab_patients.csv"}
        )

    client = make_client(handler, client_settings, clock)
    session = client.select(str(csv_file))

    result = await client.upload(str(csv_file), session)

    assert result is session
    assert session.phase == UploadPhase.COMPLETE
    assert session.uploaded_bytes == csv_file.stat().st_size
    assert session.file_path.endswith("upload_ab_patients.csv")
    assert session.estimated_processing_seconds == 30


@pytest.mark.asyncio
async def test_server_rejection_is_reported(csv_file, client_settings, clock):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"success": False, "error": "Unsupported file type", "code": "validation"},
        )

    client = make_client(handler, client_settings, clock)

    session = await client.upload(str(csv_file))

    assert session.phase == UploadPhase.ERROR
    assert session.error == "Unsupported file type"
    assert session.error_code == ErrorCode.VALIDATION


@pytest.mark.asyncio
async def test_timeout_is_reported(csv_file, client_settings, clock):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_client(handler, client_settings, clock)

    session = await client.upload(str(csv_file))

    assert session.phase == UploadPhase.ERROR
    assert session.error_code == ErrorCode.TIMEOUT


@pytest.mark.asyncio
async def test_non_json_response_is_an_error(csv_file, client_settings, clock):
    client = make_client(
        lambda request: httpx.Response(502, text="Bad gateway"), client_settings, clock
    )

    session = await client.upload(str(csv_file))

    assert session.phase == UploadPhase.ERROR
    assert session.error_code == ErrorCode.INTERNAL


@pytest.mark.asyncio
async def test_success_banner_expires(csv_file, client_settings, clock):
    client = make_client(
        lambda request: httpx.Response(200, json={"success": True, "filePath": "/x.csv"}),
        client_settings,
        clock,
    )
    session = await client.upload(str(csv_file))

    assert client.expire(session) is False
    clock.advance(client_settings.UPLOAD_SUCCESS_RESET_SECONDS)
    assert client.expire(session) is True
    assert session.phase == UploadPhase.IDLE

"""Tests for the HTTP remote document client and the timeout guard."""

import asyncio
import json
from unittest.mock import Mock

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError, Timeout

from localsync.sync.exceptions import NetworkError, RemotePermissionError
from localsync.sync.models import NOT_FOUND
from localsync.sync.remote import HttpDocumentClient, call_with_timeout


def make_client(status_code=200, payload=None, side_effect=None):
    session = Mock()
    response = Mock(status_code=status_code)
    response.json.return_value = payload
    session.request.return_value = response
    if side_effect is not None:
        session.request.side_effect = side_effect
    client = HttpDocumentClient("https://sync.example.org/api/", collection="user_data", session=session)
    return client, session


def test_document_url_quotes_key():
    client, _ = make_client()
    assert client.document_url("prefs/user 1") == "https://sync.example.org/api/user_data/prefs%2Fuser%201"


def test_read_returns_document_value():
    client, session = make_client(payload={"value": {"theme": "dark"}})

    assert asyncio.run(client.read("preferences_default")) == {"theme": "dark"}
    method, url = session.request.call_args.args
    assert method == "GET"
    assert url.endswith("/user_data/preferences_default")


def test_read_missing_document_returns_not_found():
    client, _ = make_client(status_code=404)
    assert asyncio.run(client.read("missing")) is NOT_FOUND


def test_write_puts_json_document():
    client, session = make_client(status_code=204)

    asyncio.run(client.write("theme", "dark"))

    call = session.request.call_args
    assert call.args[0] == "PUT"
    assert json.loads(call.kwargs["data"]) == {"value": "dark"}
    assert call.kwargs["headers"]["Content-Type"] == "application/json"


def test_delete_of_missing_document_succeeds():
    client, session = make_client(status_code=404)
    asyncio.run(client.delete("gone"))
    assert session.request.call_args.args[0] == "DELETE"


@pytest.mark.parametrize("status_code", [401, 403, 400, 422])
def test_rejections_are_permission_errors(status_code):
    client, _ = make_client(status_code=status_code)

    with pytest.raises(RemotePermissionError) as exc_info:
        asyncio.run(client.write("theme", "dark"))

    assert exc_info.value.details["status_code"] == status_code
    assert exc_info.value.details["retryable"] is False


@pytest.mark.parametrize("status_code", [500, 503, 408, 429])
def test_server_errors_are_network_errors(status_code):
    client, _ = make_client(status_code=status_code)

    with pytest.raises(NetworkError):
        asyncio.run(client.read("theme"))


@pytest.mark.parametrize("error", [RequestsConnectionError("refused"), Timeout("slow")])
def test_transport_failures_are_network_errors(error):
    client, _ = make_client(side_effect=error)

    with pytest.raises(NetworkError) as exc_info:
        asyncio.run(client.read("theme"))

    assert exc_info.value.details["retryable"] is True


def test_invalid_json_response_is_network_error():
    client, _ = make_client()
    client.session.request.return_value.json.side_effect = ValueError("bad json")

    with pytest.raises(NetworkError):
        asyncio.run(client.read("theme"))


def test_basic_auth_session():
    client = HttpDocumentClient("https://sync.example.org", username="user", password="secret", verify_ssl=False)
    try:
        assert client.session.auth.username == "user"
        assert client.session.verify is False
    finally:
        client.close()


def test_call_with_timeout_converts_timeout_to_network_error():
    async def run_test():
        with pytest.raises(NetworkError) as exc_info:
            await call_with_timeout(asyncio.sleep(1), 0.01, "read", "theme")
        assert "timed out" in exc_info.value.details["reason"]

        assert await call_with_timeout(asyncio.sleep(0, result="ok"), 1.0) == "ok"

    asyncio.run(run_test())

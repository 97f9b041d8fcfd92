"""Remote document store adapters."""

import asyncio
import json
from typing import Any, Awaitable, Optional, TypeVar
from urllib.parse import quote

from requests import Session
from requests.auth import HTTPBasicAuth
from requests.exceptions import ConnectionError as RequestsConnectionError, RequestException, Timeout

from .exceptions import NetworkError, RemotePermissionError
from .interfaces import RemoteDocumentClient
from .logging_config import get_logger
from .models import NOT_FOUND


logger = get_logger(__name__)

T = TypeVar("T")


async def call_with_timeout(awaitable: Awaitable[T], timeout_seconds: float,
                            operation: str = "call", key: str = "") -> T:
    """Await a remote call with a bounded timeout.

    Raises:
        NetworkError: If the call does not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise NetworkError(operation, key, f"timed out after {timeout_seconds}s")


class HttpDocumentClient(RemoteDocumentClient):
    """Document store client speaking plain JSON over HTTP.

    Documents live at ``<base_url>/<collection>/<key>``: GET reads, PUT
    replaces and DELETE removes. Requests run in a worker thread so the
    event loop is never blocked.
    """

    def __init__(self, base_url: str, collection: str = "user_data",
                 session: Optional[Session] = None, username: Optional[str] = None,
                 password: Optional[str] = None, verify_ssl: bool = True,
                 request_timeout_seconds: float = 10.0):
        self.base_url = base_url.rstrip('/')
        self.collection = collection.strip('/')
        self.request_timeout_seconds = request_timeout_seconds
        self.session = session or self._init_session(username, password, verify_ssl)

    def _init_session(self, username: Optional[str], password: Optional[str],
                      verify_ssl: bool) -> Session:
        session = Session()
        if username is not None:
            session.auth = HTTPBasicAuth(username, password or "")
        session.verify = verify_ssl
        session.headers.update({"Accept": "application/json"})

        if not verify_ssl:
            # Suppress InsecureRequestWarning
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        return session

    def document_url(self, key: str) -> str:
        return f"{self.base_url}/{self.collection}/{quote(key, safe='')}"

    def _request(self, method: str, operation: str, key: str, **kwargs):
        url = self.document_url(key)
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, timeout=self.request_timeout_seconds, **kwargs)
        except (RequestsConnectionError, Timeout) as e:
            raise NetworkError(operation, key, str(e))
        except RequestException as e:
            raise NetworkError(operation, key, f"request failed: {e}")

        status = response.status_code
        if status == 404:
            return None
        if status in (401, 403):
            raise RemotePermissionError(operation, key, f"HTTP {status}", status)
        if status >= 500 or status in (408, 429):
            raise NetworkError(operation, key, f"HTTP {status}")
        if status >= 400:
            raise RemotePermissionError(operation, key, f"HTTP {status}", status)
        return response

    def _read_sync(self, key: str) -> Any:
        response = self._request("GET", "read", key)
        if response is None:
            return NOT_FOUND
        try:
            document = response.json()
        except ValueError as e:
            raise NetworkError("read", key, f"invalid JSON in response: {e}")
        if isinstance(document, dict) and "value" in document:
            return document["value"]
        return document

    def _write_sync(self, key: str, value: Any) -> None:
        body = json.dumps({"value": value}, separators=(',', ':'))
        self._request("PUT", "write", key, data=body,
                      headers={"Content-Type": "application/json"})

    def _delete_sync(self, key: str) -> None:
        # 404 on delete means already removed, which is an Ack
        self._request("DELETE", "delete", key)

    async def read(self, key: str) -> Any:
        return await asyncio.to_thread(self._read_sync, key)

    async def write(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write_sync, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    def close(self) -> None:
        self.session.close()

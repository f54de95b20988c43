import logging
import socket
import threading
import time
from datetime import timedelta
from typing import Any, Optional, TypeVar, Union

import requests
import urllib3
from pydantic import ValidationError
from requests.structures import CaseInsensitiveDict

from reqkit.api.errors import (
    ConstructionError,
    DecodeError,
    RequestTimeoutError,
    TransportError,
    UnexpectedStatusError,
)
from reqkit.config import load_settings
from reqkit.models.destination import check_destination, decode_into
from reqkit.models.request import NO_BODY, RequestSpec

log = logging.getLogger(__name__)

T = TypeVar("T")
Timeout = Union[float, timedelta, None]

CHUNK_SIZE = 64 * 1024


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def get(url: str, destination: Union[T, type[T]], headers: Optional[dict[str, str]] = None,
        timeout: Timeout = None) -> T:
    """GET ``url`` and decode the JSON response into ``destination``.

    Usage:
        item = get("https://api.example.com/items/7", Item, timeout=10)
    """
    return execute("GET", url, destination, headers=headers, timeout=timeout)


def post(url: str, body: Any, destination: Union[T, type[T]], headers: Optional[dict[str, str]] = None,
         timeout: Timeout = None) -> T:
    """POST ``body`` as JSON to ``url`` and decode the JSON response into ``destination``."""
    return execute("POST", url, destination, body=body, headers=headers, timeout=timeout)


def execute(method: str, url: str, destination: Union[T, type[T]], *, body: Any = NO_BODY,
            headers: Optional[dict[str, str]] = None, timeout: Timeout = None) -> T:
    """Run one request/response round trip and decode the body into ``destination``.

    ``timeout`` is in seconds (or a timedelta). None falls back to the
    configured default, zero or less disables the timeout.

    Raises:
        ConstructionError: the request could not be built.
        TransportError: the request could not be sent or timed out.
        UnexpectedStatusError: the status code is outside 200-299.
        DecodeError: the body could not be read or decoded.
    """
    check_destination(destination)
    settings = load_settings()

    try:
        req = RequestSpec(
            method=method,
            url=url,
            headers=headers,
            body=body,
            timeout=settings.timeout_s if timeout is None else timeout,
        )
    except ValidationError as e:
        raise ConstructionError(f"failed to create request: {e}") from e

    with requests.Session() as session:
        session.verify = settings.verify_tls
        prepared = _prepare(session, req)

        deadline = time.monotonic() + req.timeout if req.timeout is not None else None
        response = _send(session, prepared, req)
        try:
            if not is_success(response.status_code):
                raise UnexpectedStatusError(response.status_code, req.url)
            content = _read_body(response, deadline)
        finally:
            _close(response)

    try:
        return decode_into(content, destination)
    except ValidationError as e:
        raise DecodeError(f"failed to unmarshal JSON: {e}") from e


def _prepare(session: requests.Session, req: RequestSpec) -> requests.PreparedRequest:
    request = requests.Request(
        req.method,
        req.url,
        headers=req.outgoing_headers(),
        data=req.payload(),
    )
    try:
        return session.prepare_request(request)
    except (requests.RequestException, ValueError) as e:
        raise ConstructionError(f"failed to create request: {e}") from e


def _send(session: requests.Session, prepared: requests.PreparedRequest,
          req: RequestSpec) -> requests.Response:
    try:
        return session.send(prepared, timeout=req.timeout, stream=True)
    except requests.Timeout as e:
        raise RequestTimeoutError(f"request timed out: {e}") from e
    except (requests.exceptions.InvalidSchema, requests.exceptions.InvalidURL) as e:
        # raised while picking the adapter, still a bad url
        raise ConstructionError(f"failed to create request: {e}") from e
    except requests.RequestException as e:
        raise TransportError(f"request failed: {e}") from e


class _BodyDeadline:
    """Shuts the connection down once the deadline passes, even mid-read.

    requests only bounds each socket read. A server trickling bytes would
    otherwise keep the call alive far past the timeout.
    """

    def __init__(self, response: requests.Response, deadline: Optional[float]):
        self.response = response
        self.expired = False
        self._timer = None
        if deadline is not None:
            self._timer = threading.Timer(max(deadline - time.monotonic(), 0.0), self._expire)
            self._timer.daemon = True

    def __enter__(self):
        if self._timer is not None:
            self._timer.start()
        return self

    def __exit__(self, *exc_info):
        if self._timer is not None:
            self._timer.cancel()
        return False

    def _expire(self):
        self.expired = True
        conn = getattr(self.response.raw, "connection", None)
        sock = getattr(conn, "sock", None)
        if sock is None:
            self.response.close()
            return
        try:
            # unblocks a recv() waiting in the reading thread
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            log.debug("Socket already gone at deadline: %s", e)


def _is_read_timeout(error: requests.RequestException) -> bool:
    return bool(error.args) and isinstance(error.args[0], urllib3.exceptions.ReadTimeoutError)


def _read_body(response: requests.Response, deadline: Optional[float]) -> bytes:
    chunks = []
    with _BodyDeadline(response, deadline) as guard:
        try:
            for chunk in response.iter_content(CHUNK_SIZE):
                chunks.append(chunk)
        except requests.RequestException as e:
            if guard.expired or _is_read_timeout(e):
                raise RequestTimeoutError(f"response body not received within timeout: {e}") from e
            raise DecodeError(f"failed to read response body: {e}") from e

    if guard.expired:
        raise RequestTimeoutError("response body not received within timeout")
    return b"".join(chunks)


def _close(response: requests.Response) -> None:
    # a failed close never changes the outcome of the call
    try:
        response.close()
    except Exception as e:
        log.warning("Error closing response body: %s", e)


class HttpClient:
    """Base url, default headers and timeout for a family of calls.

    Holds no connection: every call runs through ``execute`` with its own
    session.
    """

    def __init__(self, base_url: str, headers: Optional[dict[str, str]] = None, *, timeout: Timeout = None):
        self.base_url = base_url
        self.headers = dict(headers or {})
        self.timeout = timeout

    def url(self, path: str) -> str:
        if not path:
            return self.base_url
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _merge_headers(self, headers: Optional[dict[str, str]]) -> dict[str, str]:
        merged = CaseInsensitiveDict(self.headers)
        merged.update(headers or {})
        return dict(merged)

    def _timeout(self, timeout: Timeout) -> Timeout:
        return self.timeout if timeout is None else timeout

    def get(self, path: str, destination: Union[T, type[T]], *, headers: Optional[dict[str, str]] = None,
            timeout: Timeout = None) -> T:
        return get(self.url(path), destination, headers=self._merge_headers(headers),
                   timeout=self._timeout(timeout))

    def post(self, path: str, payload: Any, destination: Union[T, type[T]], *,
             headers: Optional[dict[str, str]] = None, timeout: Timeout = None) -> T:
        return post(self.url(path), payload, destination, headers=self._merge_headers(headers),
                    timeout=self._timeout(timeout))

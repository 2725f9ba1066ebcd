"""HTTP clients used by API Call nodes.

``SimulatedHttpClient`` never touches the network and answers every request
with a 200 echo of what would have been sent. ``LiveHttpClient`` performs the
request with ``requests``.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .exceptions import ConfigurationError, HttpCallError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class HttpResponse:
    """Decoded response of one HTTP call."""
    status: int
    reason: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    data: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class SimulatedHttpClient:
    """Synthesizes a successful response echoing the request."""

    mode = "simulated"

    def send(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
             body: Any = None, timeout_ms: int = 30000) -> HttpResponse:
        logger.debug(f"Simulating {method} {url}")
        return HttpResponse(
            status=200,
            reason="OK",
            headers={"content-type": "application/json", "x-simulated": "true"},
            data={
                "simulated": True,
                "method": method,
                "url": url,
                "headers": dict(headers or {}),
                "body": body,
            },
        )


class LiveHttpClient:
    """Performs real HTTP calls with ``requests``.

    Sessions are per thread, since iteration-mode loops call ``send`` from a
    thread pool. A session passed in explicitly is used by every thread.
    """

    mode = "live"

    def __init__(self, session: Optional[requests.Session] = None):
        self._shared = session
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        if self._shared is not None:
            return self._shared
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
            with self._lock:
                self._sessions.append(session)
        return session

    def send(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
             body: Any = None, timeout_ms: int = 30000) -> HttpResponse:
        """Send a request and decode the response body.

        JSON responses are decoded, anything else is returned as text.

        Raises:
            HttpCallError: If the request cannot be completed
        """
        try:
            response = self.session.request(
                method,
                url,
                headers=headers or {},
                data=body,
                timeout=timeout_ms / 1000.0,
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise HttpCallError(str(e), url=url)

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data = response.json()
            except ValueError as e:
                raise HttpCallError(f"Invalid JSON response: {e}", url=url)
        else:
            data = response.text

        logger.debug(f"{method} {url} -> {response.status_code}")
        return HttpResponse(
            status=response.status_code,
            reason=response.reason or "",
            headers={key.lower(): value for key, value in response.headers.items()},
            data=data,
        )

    def close(self):
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        if self._shared is not None:
            self._shared.close()


def create_http_client(mode: str):
    """Build the client for an HTTP mode (``simulated`` or ``live``).

    Raises:
        ConfigurationError: If the mode is not recognised
    """
    value = getattr(mode, "value", mode)
    if value == "live":
        return LiveHttpClient()
    if value == "simulated":
        return SimulatedHttpClient()
    raise ConfigurationError(f"Unknown HTTP mode '{value}'", config_key="http_mode")

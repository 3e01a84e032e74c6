"""Network access to the application origin."""

import logging
from urllib.parse import urlparse

import requests

from .models import RESPONSE_BASIC, RESPONSE_CORS, CachedResponse, FetchRequest

logger = logging.getLogger(__name__)

# Headers that describe a single connection and must not be relayed or stored.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# requests decodes the body, so the original encoding and length no longer apply.
DECODED_BODY_HEADERS = frozenset({"content-encoding", "content-length"})

# Request headers rewritten by requests itself for the upstream connection.
SKIPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length", "accept-encoding"}


class NetworkError(Exception):
    """Raised when a request cannot reach the network or gets no response."""

    pass


def _origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def _filter_headers(headers: dict[str, str], skipped: frozenset[str]) -> dict[str, str]:
    return {name: value for name, value in headers.items() if name.lower() not in skipped}


class Fetcher:
    """Performs network requests on behalf of controlled pages.

    Redirects are not followed: a 3xx is returned as is, so the browser
    sees it. Responses from the app origin are typed "basic", anything else
    is "cors". Transport failures raise NetworkError; HTTP
    error statuses are returned as ordinary responses.
    """

    def __init__(
        self,
        origin: str,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            origin: App origin (scheme://host[:port]).
            timeout: Optional request timeout in seconds. None waits for the
                network layer's own timeout.
            session: Optional preconfigured session.
        """
        self._origin = _origin_of(origin)
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def origin(self) -> str:
        return self._origin

    def fetch(self, request: FetchRequest) -> CachedResponse:
        """Send a request and capture the full response.

        Raises:
            NetworkError: If the request fails before a response is received.
        """
        try:
            response = self._session.request(
                request.method,
                request.url,
                headers=_filter_headers(request.headers, SKIPPED_REQUEST_HEADERS),
                data=request.body,
                timeout=self._timeout,
                # 3xx responses go back to the browser untouched
                allow_redirects=False,
            )
        except requests.RequestException as e:
            logger.debug("Network request failed for %s %s: %s", request.method, request.url, e)
            raise NetworkError(f"{request.method} {request.url} failed: {e}") from e

        final_url = response.url or request.url
        response_type = RESPONSE_BASIC if _origin_of(final_url) == self._origin else RESPONSE_CORS

        return CachedResponse(
            url=final_url,
            status=response.status_code,
            status_text=response.reason or "",
            headers=_filter_headers(dict(response.headers), HOP_BY_HOP_HEADERS | DECODED_BODY_HEADERS),
            body=response.content,
            type=response_type,
        )

    def close(self) -> None:
        """Release pooled connections."""
        self._session.close()

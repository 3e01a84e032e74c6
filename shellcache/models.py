"""Data models for intercepted requests, cached responses and controller events."""

from dataclasses import dataclass, field, replace
from enum import Enum
from urllib.parse import urlparse

# Request modes as reported by browsers in Sec-Fetch-Mode.
MODE_NAVIGATE = "navigate"
MODE_NO_CORS = "no-cors"

# Response types. Only "basic" (same-origin) responses are safe to store.
RESPONSE_BASIC = "basic"
RESPONSE_CORS = "cors"
RESPONSE_OPAQUE = "opaque"
RESPONSE_ERROR = "error"


@dataclass(frozen=True)
class FetchRequest:
    """A request observed from a controlled page.

    Attributes:
        url: Absolute URL of the request.
        method: HTTP method (upper case).
        mode: Request mode, "navigate" for full-page loads.
        headers: Request headers to forward to the network.
        body: Request body, if any.
    """

    url: str
    method: str = "GET"
    mode: str = MODE_NO_CORS
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @property
    def path(self) -> str:
        return urlparse(self.url).path or "/"

    @property
    def origin(self) -> str:
        parsed = urlparse(self.url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def is_navigation(self) -> bool:
        return self.mode == MODE_NAVIGATE

    @property
    def cache_key(self) -> tuple[str, str]:
        """Key under which a response for this request is stored."""
        return (self.method.upper(), self.url)


@dataclass(frozen=True)
class CachedResponse:
    """A captured HTTP response.

    Attributes:
        url: Final URL the response came from.
        status: HTTP status code.
        status_text: HTTP reason phrase.
        headers: Response headers.
        body: Raw response body.
        type: Response type ("basic", "cors", "opaque" or "error").
    """

    url: str
    status: int
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    type: str = RESPONSE_BASIC

    @property
    def ok(self) -> bool:
        """True for 2xx statuses."""
        return 200 <= self.status <= 299

    def clone(self) -> "CachedResponse":
        """Return an independent copy that can be stored while this one is returned."""
        return replace(self, headers=dict(self.headers))


class ControllerState(Enum):
    """Lifecycle states of the Offline Cache Controller."""

    INSTALLING = "installing"
    ACTIVATING = "activating"
    SERVING = "serving"
    REDUNDANT = "redundant"


class FetchSource(Enum):
    """Where an intercepted request was answered from."""

    NETWORK = "network"
    CACHE = "cache"
    FALLBACK = "fallback"  # root shell page served for a failed navigation
    BYPASS = "bypass"  # not intercepted, caller goes to the network
    MISS = "miss"  # failed navigation with nothing cached


@dataclass(frozen=True)
class FetchOutcome:
    """Result of intercepting a single request."""

    source: FetchSource
    response: CachedResponse | None = None

    @property
    def intercepted(self) -> bool:
        return self.source is not FetchSource.BYPASS


@dataclass(frozen=True)
class InstallEvent:
    """A new controller version was registered."""


@dataclass(frozen=True)
class ActivateEvent:
    """The installed controller is taking control."""


@dataclass(frozen=True)
class FetchEvent:
    """A controlled page issued a request."""

    request: FetchRequest


ControllerEvent = InstallEvent | ActivateEvent | FetchEvent

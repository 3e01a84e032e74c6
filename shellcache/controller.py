"""Offline Cache Controller: install, activate and intercept.

The controller moves through three lifecycle states:

- INSTALLING: populate the versioned Cache Store with the shell pages.
- ACTIVATING: purge every store that is not the current version.
- SERVING: answer intercepted requests.

A failed install leaves the controller REDUNDANT. Requests are only answered
in SERVING, so the purge always completes before anything is served.

Request policies while serving:
- /api/ paths and other origins: bypassed, never read from or written to the cache.
- Navigations: network first, falling back to the exact cached page, then to
  the cached root page.
- Everything else: cache first; successful same-origin responses are stored.

Stored entries are shared by every client, so responses marked private or
no-store are never written and Set-Cookie is dropped from what is stored.
"""

import logging
import sqlite3
import threading
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait

from . import store
from .fetcher import Fetcher, NetworkError
from .models import (
    RESPONSE_BASIC,
    ActivateEvent,
    CachedResponse,
    ControllerEvent,
    ControllerState,
    FetchEvent,
    FetchOutcome,
    FetchRequest,
    FetchSource,
    InstallEvent,
)

logger = logging.getLogger(__name__)

# Only GET entries can be stored or matched.
CACHEABLE_METHODS = frozenset({"GET"})

# Cache-Control directives that mark a response as per-user.
PRIVATE_DIRECTIVES = frozenset({"private", "no-store"})

# Stored entries are shared by every client of the front.
UNSHARED_HEADERS = frozenset({"set-cookie"})


def _is_private(response: CachedResponse) -> bool:
    for name, value in response.headers.items():
        if name.lower() == "cache-control":
            directives = {part.split("=", 1)[0].strip().lower() for part in value.split(",")}
            if directives & PRIVATE_DIRECTIVES:
                return True
    return False


def _shareable_copy(response: CachedResponse) -> CachedResponse:
    """Clone a response without the headers that belong to one client."""
    copy = response.clone()
    for name in [name for name in copy.headers if name.lower() in UNSHARED_HEADERS]:
        del copy.headers[name]
    return copy


class InstallError(Exception):
    """Raised when the shell pages cannot be cached during install."""

    pass


class ControllerStateError(Exception):
    """Raised when an event arrives in a state that cannot handle it."""

    pass


class CacheController:
    """Mediates between controlled pages, the network and the Cache Store."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        fetcher: Fetcher,
        cache_name: str,
        shell_pages: Sequence[str],
        bypass_prefixes: Sequence[str] = ("/api/",),
        write_workers: int = 2,
    ) -> None:
        """Initialize the controller.

        Args:
            conn: Cache storage connection.
            fetcher: Network access for the app origin.
            cache_name: Name of the current version's Cache Store.
            shell_pages: Paths cached at install time.
            bypass_prefixes: Path prefixes that are never intercepted.
            write_workers: Threads used for background cache writes.
        """
        self._conn = conn
        self._fetcher = fetcher
        self._cache_name = cache_name
        self._shell_pages = tuple(shell_pages)
        self._bypass_prefixes = tuple(bypass_prefixes)
        self._state = ControllerState.INSTALLING
        self._state_lock = threading.Lock()
        self._writer = ThreadPoolExecutor(max_workers=write_workers, thread_name_prefix="cache-write")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def cache_name(self) -> str:
        return self._cache_name

    def entry_count(self) -> int:
        """Number of entries in the current Cache Store."""
        return store.entry_count(self._conn, self._cache_name)

    def _url_for(self, path: str) -> str:
        return self._fetcher.origin + path

    def _require_state(self, expected: ControllerState, action: str) -> None:
        if self._state is not expected:
            raise ControllerStateError(
                f"Cannot {action} while {self._state.value} (expected {expected.value})"
            )

    def dispatch(self, event: ControllerEvent) -> object:
        """Route a typed lifecycle or fetch event to its handler."""
        if isinstance(event, InstallEvent):
            return self.install()
        if isinstance(event, ActivateEvent):
            return self.activate()
        if isinstance(event, FetchEvent):
            return self.handle_fetch(event.request)
        raise TypeError(f"Unsupported controller event: {event!r}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def install(self) -> int:
        """Populate the current Cache Store with every shell page.

        Population is all-or-nothing: a single failed page fails the install
        and nothing is written. On success the controller skips waiting and
        moves straight to ACTIVATING.

        Returns:
            Number of cached shell pages.

        Raises:
            InstallError: If any shell page cannot be fetched.
            ControllerStateError: If the controller is not installing.
        """
        with self._state_lock:
            self._require_state(ControllerState.INSTALLING, "install")
            logger.info("Installing cache %s (%d shell pages)", self._cache_name, len(self._shell_pages))

            pairs: list[tuple[FetchRequest, CachedResponse]] = []
            for path in self._shell_pages:
                request = FetchRequest(url=self._url_for(path))
                try:
                    response = self._fetcher.fetch(request)
                except NetworkError as e:
                    self._state = ControllerState.REDUNDANT
                    raise InstallError(f"Failed to fetch shell page {path}: {e}") from e
                if not response.ok:
                    self._state = ControllerState.REDUNDANT
                    raise InstallError(f"Shell page {path} returned HTTP {response.status}")
                pairs.append((request, _shareable_copy(response)))

            try:
                store.open_cache(self._conn, self._cache_name)
                stored = store.put_all(self._conn, self._cache_name, pairs)
            except store.StoreError as e:
                self._state = ControllerState.REDUNDANT
                raise InstallError(str(e)) from e

            self._state = ControllerState.ACTIVATING
            logger.info("Installed cache %s, activating immediately", self._cache_name)
            return stored

    def resume(self) -> bool:
        """Reuse a complete Cache Store left by an earlier run of this version.

        The shell pages were already cached under the current name, so no
        network round-trip is needed and the controller moves straight to
        ACTIVATING. This lets a restart come up while the origin is down.

        Returns:
            True if the store was reused, False if an install is required.

        Raises:
            ControllerStateError: If the controller is not installing.
        """
        with self._state_lock:
            self._require_state(ControllerState.INSTALLING, "resume")
            if not store.has_cache(self._conn, self._cache_name):
                return False
            cached = set(store.cache_urls(self._conn, self._cache_name))
            missing = [path for path in self._shell_pages if self._url_for(path) not in cached]
            if missing:
                logger.info("Cache %s is missing %d shell page(s), reinstalling", self._cache_name, len(missing))
                return False

            self._state = ControllerState.ACTIVATING
            logger.info("Reusing cache %s, skipping install", self._cache_name)
            return True

    def activate(self) -> list[str]:
        """Purge every stale Cache Store and start serving.

        Returns:
            Names of the deleted stores.

        Raises:
            ControllerStateError: If the controller is not activating.
        """
        with self._state_lock:
            self._require_state(ControllerState.ACTIVATING, "activate")

            purged = []
            for name in store.cache_keys(self._conn):
                if name == self._cache_name:
                    continue
                store.delete_cache(self._conn, name)
                logger.info("Deleted stale cache %s", name)
                purged.append(name)

            self._state = ControllerState.SERVING
            logger.info("Cache %s active, serving requests", self._cache_name)
            return purged

    # ------------------------------------------------------------------
    # Intercept
    # ------------------------------------------------------------------

    def should_bypass(self, request: FetchRequest) -> bool:
        """Check whether a request must go straight to the network."""
        if request.origin.lower() != self._fetcher.origin:
            return True
        return request.path.startswith(self._bypass_prefixes)

    def handle_fetch(self, request: FetchRequest) -> FetchOutcome:
        """Decide how to answer a request from a controlled page.

        Raises:
            NetworkError: If a static asset is neither cached nor reachable.
            ControllerStateError: If the controller is not serving.
        """
        if self._state is not ControllerState.SERVING:
            raise ControllerStateError(
                f"Cannot handle requests while {self._state.value} (expected serving)"
            )

        if self.should_bypass(request):
            logger.debug("Bypassing %s %s", request.method, request.url)
            return FetchOutcome(FetchSource.BYPASS)

        if request.is_navigation:
            return self._handle_navigation(request)
        return self._handle_asset(request)

    def _handle_navigation(self, request: FetchRequest) -> FetchOutcome:
        """Network first, then exact cached page, then cached root page."""
        try:
            response = self._fetcher.fetch(request)
        except NetworkError as e:
            logger.info("Navigation to %s failed, falling back to cache: %s", request.url, e)
        else:
            if request.method in CACHEABLE_METHODS and not _is_private(response):
                self._store_later(request, _shareable_copy(response))
            return FetchOutcome(FetchSource.NETWORK, response)

        if request.method in CACHEABLE_METHODS:
            cached = store.match(self._conn, self._cache_name, request)
            if cached is not None:
                return FetchOutcome(FetchSource.CACHE, cached)

        root = store.match(self._conn, self._cache_name, FetchRequest(url=self._url_for("/")))
        if root is not None:
            return FetchOutcome(FetchSource.FALLBACK, root)

        logger.warning("No cached page available for %s", request.url)
        return FetchOutcome(FetchSource.MISS)

    def _handle_asset(self, request: FetchRequest) -> FetchOutcome:
        """Cache first, then network; only ok same-origin responses are stored."""
        cacheable = request.method in CACHEABLE_METHODS

        if cacheable:
            cached = store.match(self._conn, self._cache_name, request)
            if cached is not None:
                logger.debug("Cache hit for %s", request.url)
                return FetchOutcome(FetchSource.CACHE, cached)

        response = self._fetcher.fetch(request)

        if cacheable and response.ok and response.type == RESPONSE_BASIC and not _is_private(response):
            self._store_later(request, _shareable_copy(response))
        return FetchOutcome(FetchSource.NETWORK, response)

    # ------------------------------------------------------------------
    # Background writes
    # ------------------------------------------------------------------

    def _store_later(self, request: FetchRequest, response: CachedResponse) -> None:
        """Store a response without blocking the caller."""
        future = self._writer.submit(store.put, self._conn, self._cache_name, request, response)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._write_done)

    def _write_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning("Background cache write failed: %s", error)

    def drain(self, timeout: float | None = None) -> None:
        """Wait for pending background cache writes to finish."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        """Finish pending writes and stop the writer threads."""
        self.drain()
        self._writer.shutdown(wait=True)

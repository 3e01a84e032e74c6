"""Tests for the offline cache controller."""

import sqlite3
from collections.abc import Iterator
from unittest.mock import patch

import pytest

from shellcache import store
from shellcache.controller import CacheController, ControllerStateError, InstallError
from shellcache.fetcher import NetworkError
from shellcache.models import (
    RESPONSE_CORS,
    RESPONSE_OPAQUE,
    ActivateEvent,
    CachedResponse,
    ControllerState,
    FetchEvent,
    FetchRequest,
    FetchSource,
    InstallEvent,
)

from conftest import ORIGIN, FakeFetcher

SHELL_PAGES = ("/", "/dashboard", "/sign-in", "/discover", "/pricing", "/blog")


def _page(path: str, **kwargs) -> FetchRequest:
    return FetchRequest(url=ORIGIN + path, mode="navigate", **kwargs)


def _asset(path: str, **kwargs) -> FetchRequest:
    url = path if path.startswith("http") else ORIGIN + path
    return FetchRequest(url=url, **kwargs)


@pytest.fixture
def controller(conn: sqlite3.Connection, fetcher: FakeFetcher) -> Iterator[CacheController]:
    """Controller for creatrid-v2, not yet installed."""
    ctrl = CacheController(conn, fetcher, "creatrid-v2", SHELL_PAGES)
    yield ctrl
    ctrl.close()


@pytest.fixture
def serving(controller: CacheController, fetcher: FakeFetcher) -> CacheController:
    """Controller that has installed and activated; fetch log cleared."""
    controller.install()
    controller.activate()
    fetcher.calls.clear()
    return controller


class TestInstall:
    """Tests for the install step."""

    def test_starts_installing(self, controller: CacheController) -> None:
        assert controller.state is ControllerState.INSTALLING

    def test_caches_every_shell_page(
        self, controller: CacheController, conn: sqlite3.Connection
    ) -> None:
        stored = controller.install()

        assert stored == len(SHELL_PAGES)
        for path in SHELL_PAGES:
            cached = store.match(conn, "creatrid-v2", FetchRequest(url=ORIGIN + path))
            assert cached is not None
            assert cached.body == f"<html>{path}</html>".encode()

    def test_skips_waiting(self, controller: CacheController) -> None:
        """A successful install moves straight on to activation."""
        controller.install()
        assert controller.state is ControllerState.ACTIVATING

    def test_network_failure_fails_whole_install(
        self, controller: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.fail("/pricing")

        with pytest.raises(InstallError, match="/pricing"):
            controller.install()

        assert controller.state is ControllerState.REDUNDANT
        assert not store.has_cache(conn, "creatrid-v2")
        assert store.entry_count(conn, "creatrid-v2") == 0

    def test_error_status_fails_whole_install(
        self, controller: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/blog", status=500)

        with pytest.raises(InstallError, match="HTTP 500"):
            controller.install()

        assert store.entry_count(conn, "creatrid-v2") == 0

    def test_storage_failure_fails_install(self, controller: CacheController) -> None:
        with patch.object(store, "put_all", side_effect=store.StoreError("disk full")):
            with pytest.raises(InstallError, match="disk full"):
                controller.install()
        assert controller.state is ControllerState.REDUNDANT

    def test_cannot_install_twice(self, controller: CacheController) -> None:
        controller.install()
        with pytest.raises(ControllerStateError):
            controller.install()

    def test_redundant_controller_cannot_activate(
        self, controller: CacheController, fetcher: FakeFetcher
    ) -> None:
        fetcher.offline = True
        with pytest.raises(InstallError):
            controller.install()
        with pytest.raises(ControllerStateError):
            controller.activate()


class TestActivate:
    """Tests for the activate step."""

    def test_cannot_activate_before_install(self, controller: CacheController) -> None:
        with pytest.raises(ControllerStateError, match="installing"):
            controller.activate()

    def test_purges_previous_versions(
        self, controller: CacheController, conn: sqlite3.Connection
    ) -> None:
        old_request = FetchRequest(url=ORIGIN + "/old.js")
        store.put(conn, "creatrid-v1", old_request, CachedResponse(url=old_request.url, status=200))
        store.open_cache(conn, "something-else")

        controller.install()
        purged = controller.activate()

        assert sorted(purged) == ["creatrid-v1", "something-else"]
        assert store.cache_keys(conn) == ["creatrid-v2"]
        assert store.match(conn, "creatrid-v1", old_request) is None

    def test_keeps_current_version(
        self, controller: CacheController, conn: sqlite3.Connection
    ) -> None:
        controller.install()
        controller.activate()

        assert store.entry_count(conn, "creatrid-v2") == len(SHELL_PAGES)

    def test_nothing_to_purge(self, controller: CacheController) -> None:
        controller.install()
        assert controller.activate() == []

    def test_starts_serving(self, controller: CacheController) -> None:
        controller.install()
        controller.activate()
        assert controller.state is ControllerState.SERVING


class TestResume:
    """Restarting on a store this version already populated."""

    def test_nothing_to_resume_on_fresh_storage(
        self, controller: CacheController, fetcher: FakeFetcher
    ) -> None:
        assert controller.resume() is False
        assert controller.state is ControllerState.INSTALLING
        assert fetcher.calls == []

    def test_complete_store_is_reused_while_offline(
        self, conn: sqlite3.Connection, fetcher: FakeFetcher
    ) -> None:
        first = CacheController(conn, fetcher, "creatrid-v2", SHELL_PAGES)
        first.install()
        first.close()
        fetcher.calls.clear()
        fetcher.offline = True

        restarted = CacheController(conn, fetcher, "creatrid-v2", SHELL_PAGES)
        try:
            assert restarted.resume() is True
            assert restarted.state is ControllerState.ACTIVATING
            restarted.activate()

            outcome = restarted.handle_fetch(_page("/dashboard"))
        finally:
            restarted.close()

        assert outcome.source is FetchSource.CACHE
        assert outcome.response.body == b"<html>/dashboard</html>"
        assert fetcher.called_urls() == [ORIGIN + "/dashboard"]

    def test_incomplete_store_needs_install(
        self, controller: CacheController, conn: sqlite3.Connection
    ) -> None:
        root = FetchRequest(url=ORIGIN + "/")
        store.put(conn, "creatrid-v2", root, CachedResponse(url=root.url, status=200))

        assert controller.resume() is False
        assert controller.state is ControllerState.INSTALLING

    def test_other_version_is_not_reused(
        self, controller: CacheController, conn: sqlite3.Connection
    ) -> None:
        pairs = [
            (FetchRequest(url=ORIGIN + path), CachedResponse(url=ORIGIN + path, status=200))
            for path in SHELL_PAGES
        ]
        store.put_all(conn, "creatrid-v1", pairs)

        assert controller.resume() is False

    def test_cannot_resume_while_serving(self, serving: CacheController) -> None:
        with pytest.raises(ControllerStateError):
            serving.resume()


class TestDispatch:
    """Tests for typed event dispatch."""

    def test_lifecycle_through_events(self, controller: CacheController) -> None:
        assert controller.dispatch(InstallEvent()) == len(SHELL_PAGES)
        assert controller.dispatch(ActivateEvent()) == []

        outcome = controller.dispatch(FetchEvent(_page("/")))

        assert outcome.source is FetchSource.NETWORK

    def test_fetch_before_activate_is_rejected(self, controller: CacheController) -> None:
        controller.dispatch(InstallEvent())
        with pytest.raises(ControllerStateError, match="activating"):
            controller.dispatch(FetchEvent(_page("/")))

    def test_unknown_event(self, controller: CacheController) -> None:
        with pytest.raises(TypeError):
            controller.dispatch("install")


class TestBypass:
    """API and cross-origin requests never touch the cache."""

    @pytest.mark.parametrize(
        "request_",
        [
            _asset("/api/users/me"),
            _page("/api/auth/callback"),
            _asset("https://fonts.example.com/inter.woff2"),
            FetchRequest(url="https://accounts.example.com/oauth", mode="navigate"),
            _asset("http://creatrid.com/logo.png"),
        ],
    )
    def test_bypassed(self, serving: CacheController, fetcher: FakeFetcher, request_: FetchRequest) -> None:
        with patch.object(store, "match") as mock_match, patch.object(store, "put") as mock_put:
            outcome = serving.handle_fetch(request_)
            serving.drain()

        assert outcome.source is FetchSource.BYPASS
        assert outcome.response is None
        assert not outcome.intercepted
        mock_match.assert_not_called()
        mock_put.assert_not_called()
        assert fetcher.calls == []

    def test_api_path_needs_prefix(self, serving: CacheController) -> None:
        """Only the /api/ prefix bypasses, not paths that merely start with 'api'."""
        assert not serving.should_bypass(_asset("/apidocs.css"))

    def test_custom_bypass_prefixes(self, conn: sqlite3.Connection, fetcher: FakeFetcher) -> None:
        ctrl = CacheController(conn, fetcher, "creatrid-v2", SHELL_PAGES, bypass_prefixes=("/api/", "/auth/"))
        try:
            assert ctrl.should_bypass(_asset("/auth/session"))
        finally:
            ctrl.close()


class TestNavigation:
    """Network-first handling of page loads."""

    def test_network_success_returns_live_response(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        live = fetcher.route("/discover", body=b"<html>fresh</html>")

        outcome = serving.handle_fetch(_page("/discover"))

        assert outcome.source is FetchSource.NETWORK
        assert outcome.response == live

    def test_network_success_updates_cache(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/u/alice", body=b"<html>alice</html>")

        serving.handle_fetch(_page("/u/alice"))
        serving.drain()

        cached = store.match(conn, "creatrid-v2", _page("/u/alice"))
        assert cached is not None
        assert cached.body == b"<html>alice</html>"

    def test_error_status_is_still_cached(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        """Navigations store whatever the network answered."""
        fetcher.route("/gone", status=404, body=b"not found")

        outcome = serving.handle_fetch(_page("/gone"))
        serving.drain()

        assert outcome.response.status == 404
        assert store.match(conn, "creatrid-v2", _page("/gone")).status == 404

    def test_network_failure_returns_exact_cached_page(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        fetcher.offline = True

        outcome = serving.handle_fetch(_page("/dashboard"))

        assert outcome.source is FetchSource.CACHE
        assert outcome.response.body == b"<html>/dashboard</html>"

    def test_network_failure_falls_back_to_root(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        fetcher.offline = True

        outcome = serving.handle_fetch(_page("/u/never-visited"))

        assert outcome.source is FetchSource.FALLBACK
        assert outcome.response.body == b"<html>/</html>"

    def test_miss_without_root(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        store.delete_cache(conn, "creatrid-v2")
        fetcher.offline = True

        outcome = serving.handle_fetch(_page("/pricing"))

        assert outcome.source is FetchSource.MISS
        assert outcome.response is None

    def test_previously_visited_page_served_offline(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        fetcher.route("/u/bob", body=b"<html>bob</html>")
        serving.handle_fetch(_page("/u/bob"))
        serving.drain()

        fetcher.offline = True
        outcome = serving.handle_fetch(_page("/u/bob"))

        assert outcome.source is FetchSource.CACHE
        assert outcome.response.body == b"<html>bob</html>"

    def test_post_navigation_not_cached(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/sign-in", body=b"<html>welcome</html>")

        serving.handle_fetch(_page("/sign-in", method="POST", body=b"x=1"))
        serving.drain()

        cached = store.match(conn, "creatrid-v2", _page("/sign-in"))
        assert cached.body == b"<html>/sign-in</html>"

    def test_post_navigation_offline_falls_back_to_root(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        fetcher.offline = True

        outcome = serving.handle_fetch(_page("/dashboard", method="POST"))

        assert outcome.source is FetchSource.FALLBACK

    def test_cache_write_does_not_block_response(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        """The live response is returned even when storing the clone fails."""
        fetcher.route("/discover", body=b"fresh")

        with patch.object(store, "put", side_effect=store.StoreError("locked")):
            outcome = serving.handle_fetch(_page("/discover"))
            serving.drain()

        assert outcome.source is FetchSource.NETWORK
        assert outcome.response.body == b"fresh"


class TestStaticAssets:
    """Cache-first handling of everything that is not a navigation."""

    def test_cache_hit_never_uses_network(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        request = _asset("/_next/static/app.js")
        store.put(conn, "creatrid-v2", request, CachedResponse(url=request.url, status=200, body=b"cached"))

        outcome = serving.handle_fetch(request)

        assert outcome.source is FetchSource.CACHE
        assert outcome.response.body == b"cached"
        assert fetcher.calls == []

    def test_shell_page_fetched_as_asset_comes_from_cache(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        outcome = serving.handle_fetch(_asset("/pricing"))

        assert outcome.source is FetchSource.CACHE
        assert fetcher.calls == []

    def test_miss_fetches_and_stores_basic_response(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/_next/static/app.js", body=b"js", headers={"Content-Type": "application/javascript"})

        outcome = serving.handle_fetch(_asset("/_next/static/app.js"))
        serving.drain()

        assert outcome.source is FetchSource.NETWORK
        assert outcome.response.body == b"js"
        cached = store.match(conn, "creatrid-v2", _asset("/_next/static/app.js"))
        assert cached == outcome.response

    def test_second_request_served_from_cache(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        fetcher.route("/logo.svg", body=b"<svg/>")

        serving.handle_fetch(_asset("/logo.svg"))
        serving.drain()
        outcome = serving.handle_fetch(_asset("/logo.svg"))

        assert outcome.source is FetchSource.CACHE
        assert fetcher.called_urls() == [ORIGIN + "/logo.svg"]

    @pytest.mark.parametrize("status", [404, 500, 304])
    def test_failed_response_not_stored(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection, status: int
    ) -> None:
        fetcher.route("/missing.css", status=status)

        outcome = serving.handle_fetch(_asset("/missing.css"))
        serving.drain()

        assert outcome.response.status == status
        assert store.match(conn, "creatrid-v2", _asset("/missing.css")) is None

    @pytest.mark.parametrize("response_type", [RESPONSE_OPAQUE, RESPONSE_CORS])
    def test_non_basic_response_not_stored(
        self,
        serving: CacheController,
        fetcher: FakeFetcher,
        conn: sqlite3.Connection,
        response_type: str,
    ) -> None:
        fetcher.route("/img/avatar.png", type=response_type)

        outcome = serving.handle_fetch(_asset("/img/avatar.png"))
        serving.drain()

        assert outcome.response.type == response_type
        assert store.match(conn, "creatrid-v2", _asset("/img/avatar.png")) is None

    def test_network_failure_without_cache_propagates(
        self, serving: CacheController, fetcher: FakeFetcher
    ) -> None:
        fetcher.offline = True

        with pytest.raises(NetworkError):
            serving.handle_fetch(_asset("/_next/static/chunk.js"))

    def test_no_retry_on_failure(self, serving: CacheController, fetcher: FakeFetcher) -> None:
        fetcher.fail("/font.woff2")

        with pytest.raises(NetworkError):
            serving.handle_fetch(_asset("/font.woff2"))

        assert len(fetcher.calls) == 1

    def test_non_get_skips_cache(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/pricing", body=b"posted")

        outcome = serving.handle_fetch(_asset("/pricing", method="POST"))
        serving.drain()

        assert outcome.source is FetchSource.NETWORK
        assert outcome.response.body == b"posted"
        assert store.match(conn, "creatrid-v2", _asset("/pricing")).body == b"<html>/pricing</html>"


class TestSharedEntries:
    """Stored entries never carry one client's private data."""

    def test_set_cookie_is_not_stored_for_navigation(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route(
            "/u/alice",
            body=b"<html>alice</html>",
            headers={"Content-Type": "text/html", "Set-Cookie": "session=abc; HttpOnly"},
        )

        outcome = serving.handle_fetch(_page("/u/alice"))
        serving.drain()

        assert outcome.response.headers["Set-Cookie"] == "session=abc; HttpOnly"
        cached = store.match(conn, "creatrid-v2", _page("/u/alice"))
        assert cached.body == b"<html>alice</html>"
        assert cached.headers == {"Content-Type": "text/html"}

    def test_set_cookie_is_not_stored_for_asset(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/logo.svg", body=b"<svg/>", headers={"set-cookie": "tracking=1"})

        serving.handle_fetch(_asset("/logo.svg"))
        serving.drain()

        assert store.match(conn, "creatrid-v2", _asset("/logo.svg")).headers == {}

    def test_set_cookie_is_not_stored_at_install(
        self, controller: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/", body=b"<html>home</html>", headers={"Set-Cookie": "csrf=xyz"})

        controller.install()

        assert store.match(conn, "creatrid-v2", FetchRequest(url=ORIGIN + "/")).headers == {}

    @pytest.mark.parametrize(
        "cache_control", ["private", "no-store", "private, max-age=0", "max-age=60, No-Store"]
    )
    def test_private_navigation_not_stored(
        self,
        serving: CacheController,
        fetcher: FakeFetcher,
        conn: sqlite3.Connection,
        cache_control: str,
    ) -> None:
        fetcher.route(
            "/dashboard", body=b"<html>alice's dashboard</html>", headers={"Cache-Control": cache_control}
        )

        outcome = serving.handle_fetch(_page("/dashboard"))
        serving.drain()

        assert outcome.source is FetchSource.NETWORK
        assert outcome.response.body == b"<html>alice's dashboard</html>"
        assert store.match(conn, "creatrid-v2", _page("/dashboard")).body == b"<html>/dashboard</html>"

    def test_private_asset_not_stored(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/me/avatar.png", body=b"png", headers={"cache-control": "private"})

        serving.handle_fetch(_asset("/me/avatar.png"))
        serving.drain()

        assert store.match(conn, "creatrid-v2", _asset("/me/avatar.png")) is None

    def test_public_cache_control_is_stored(
        self, serving: CacheController, fetcher: FakeFetcher, conn: sqlite3.Connection
    ) -> None:
        fetcher.route("/app.css", body=b"css", headers={"Cache-Control": "public, max-age=31536000"})

        serving.handle_fetch(_asset("/app.css"))
        serving.drain()

        assert store.match(conn, "creatrid-v2", _asset("/app.css")).body == b"css"


class TestVersionBump:
    """A new deployment replaces the previous store wholesale."""

    def test_new_version_purges_old_entries(
        self, conn: sqlite3.Connection, fetcher: FakeFetcher
    ) -> None:
        first = CacheController(conn, fetcher, "creatrid-v1", SHELL_PAGES)
        first.install()
        first.activate()
        fetcher.route("/app.js", body=b"v1")
        first.handle_fetch(_asset("/app.js"))
        first.close()

        fetcher.route("/app.js", body=b"v2")
        second = CacheController(conn, fetcher, "creatrid-v2", SHELL_PAGES)
        second.install()
        second.activate()
        try:
            assert store.cache_keys(conn) == ["creatrid-v2"]
            assert store.match(conn, "creatrid-v1", _asset("/app.js")) is None
            assert second.handle_fetch(_asset("/app.js")).response.body == b"v2"
        finally:
            second.close()


class TestResponseClone:
    """Tests for CachedResponse.clone."""

    def test_clone_is_independent(self) -> None:
        original = CachedResponse(url=ORIGIN, status=200, headers={"A": "1"})
        clone = original.clone()

        clone.headers["A"] = "2"

        assert original.headers == {"A": "1"}
        assert clone == CachedResponse(url=ORIGIN, status=200, headers={"A": "2"})

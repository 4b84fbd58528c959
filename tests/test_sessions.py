from __future__ import annotations

import asyncio

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from conftest import make_config
from portal.auth.session import (
    MemorySessionStore,
    SessionBag,
    SessionMiddleware,
    decode_session_id,
    encode_session_id,
    get_session,
    session_cookie_name,
)
from portal.core.errors import SessionStoreUnavailable


class _DownStore(MemorySessionStore):
    async def get(self, sid):  # type: ignore[no-untyped-def]
        raise SessionStoreUnavailable("connection refused")

    async def set(self, sid, data, ttl_seconds):  # type: ignore[no-untyped-def]
        raise SessionStoreUnavailable("connection refused")


def _counter_app(store, cfg, skip_paths=()) -> FastAPI:  # type: ignore[no-untyped-def]
    app = FastAPI()

    @app.get("/bump")
    def bump(request: Request):  # type: ignore[no-untyped-def]
        session = get_session(request)
        session["n"] = int(session.get("n") or 0) + 1
        return {"n": session["n"]}

    @app.get("/read")
    def read(request: Request):  # type: ignore[no-untyped-def]
        return {"n": get_session(request).get("n")}

    @app.get("/rotate")
    def rotate(request: Request):  # type: ignore[no-untyped-def]
        get_session(request).regenerate()
        return {"ok": True}

    @app.get("/destroy")
    def destroy(request: Request):  # type: ignore[no-untyped-def]
        get_session(request).invalidate()
        return {"ok": True}

    app.add_middleware(SessionMiddleware, store=store, config=cfg, skip_paths=skip_paths)
    return app


def test_session_bag_tracks_modifications() -> None:
    bag = SessionBag("sid", {"a": 1})
    assert bag.modified is False
    bag.get("a")
    assert bag.modified is False
    bag.pop("missing", None)
    assert bag.modified is False
    bag["b"] = 2
    assert bag.modified is True


def test_cookie_carries_signed_id_only(tmp_path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config(tmp_path)
    value = encode_session_id(cfg, "abc")
    assert decode_session_id(cfg, value) == "abc"
    assert decode_session_id(cfg, value + "x") is None
    assert decode_session_id(cfg, "") is None

    other = make_config(tmp_path, session_secret="another-secret")
    assert decode_session_id(other, value) is None


def test_session_persists_between_requests(tmp_path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config(tmp_path)
    store = MemorySessionStore()
    c = TestClient(_counter_app(store, cfg))

    assert c.get("/bump").json() == {"n": 1}
    assert c.get("/bump").json() == {"n": 2}
    assert c.get("/read").json() == {"n": 2}
    assert len(list(store.session_ids())) == 1


def test_untouched_new_session_is_not_stored(tmp_path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config(tmp_path)
    store = MemorySessionStore()
    c = TestClient(_counter_app(store, cfg))

    r = c.get("/read")
    assert r.json() == {"n": None}
    assert "set-cookie" not in {k.lower() for k in r.headers.keys()}
    assert list(store.session_ids()) == []


def test_regenerate_moves_contents_to_new_id(tmp_path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config(tmp_path)
    store = MemorySessionStore()
    c = TestClient(_counter_app(store, cfg))

    c.get("/bump")
    before = list(store.session_ids())
    c.get("/rotate")
    after = list(store.session_ids())

    assert len(after) == 1
    assert after != before
    assert asyncio.run(store.get(after[0])) == {"n": 1}
    assert c.get("/read").json() == {"n": 1}


def test_invalidate_destroys_session_and_clears_cookie(tmp_path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config(tmp_path)
    store = MemorySessionStore()
    c = TestClient(_counter_app(store, cfg))

    c.get("/bump")
    r = c.get("/destroy")
    assert list(store.session_ids()) == []
    cookies = r.headers.get("set-cookie", "")
    assert session_cookie_name(cfg) in cookies
    assert "max-age=0" in cookies.lower()
    assert c.get("/read").json() == {"n": None}


def test_unreachable_store_fails_the_request(tmp_path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config(tmp_path)
    c = TestClient(_counter_app(_DownStore(), cfg))

    r = c.get("/bump")
    assert r.status_code == 503
    assert r.json() == {"detail": "Session store unavailable"}

    cookie = f"{session_cookie_name(cfg)}={encode_session_id(cfg, 'known')}"
    r = c.get("/read", headers={"Cookie": cookie})
    assert r.status_code == 503


def test_secure_cookie_uses_host_prefix(tmp_path) -> None:  # type: ignore[no-untyped-def]
    assert session_cookie_name(make_config(tmp_path, cookie_secure=True)) == "__Host-portal_session"
    assert session_cookie_name(make_config(tmp_path)) == "portal_session"


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_expired_entries_are_swept_on_write() -> None:
    clock = _Clock()
    store = MemorySessionStore(sweep_interval_seconds=60, clock=clock)
    for i in range(20):
        asyncio.run(store.set(f"one-shot-{i}", {"portal.return_to": "/contact"}, 30))
    assert len(list(store.session_ids())) == 20

    # Nobody comes back for these; the next write past the interval drops them.
    clock.now += 61
    asyncio.run(store.set("fresh", {"n": 1}, 30))
    assert list(store.session_ids()) == ["fresh"]


def test_sweep_keeps_live_entries() -> None:
    clock = _Clock()
    store = MemorySessionStore(clock=clock)
    asyncio.run(store.set("short", {"n": 1}, 10))
    asyncio.run(store.set("long", {"n": 2}, 1000))
    clock.now += 11
    assert store.sweep() == 1
    assert list(store.session_ids()) == ["long"]
    assert asyncio.run(store.get("long")) == {"n": 2}


def test_anonymous_session_uses_short_ttl(tmp_path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config(tmp_path, anonymous_session_ttl_seconds=120)
    c = TestClient(_counter_app(MemorySessionStore(), cfg))

    r = c.get("/bump")
    assert "max-age=120" in r.headers.get("set-cookie", "").lower()


def test_skip_paths_never_touch_the_store(tmp_path) -> None:  # type: ignore[no-untyped-def]
    cfg = make_config(tmp_path)
    store = MemorySessionStore()
    c = TestClient(_counter_app(store, cfg, skip_paths=("/bump",)))

    for _ in range(5):
        r = c.get("/bump")
        assert r.json() == {"n": 1}
        assert "set-cookie" not in {k.lower() for k in r.headers.keys()}
    assert list(store.session_ids()) == []

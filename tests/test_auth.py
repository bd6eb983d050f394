"""Authorization code lookup."""

import asyncio

import httpx
import respx

from autoresponder.auth import AuthCodeProvider

SOURCE = "http://codes.test/codes.json"


async def test_static_codes():
    provider = AuthCodeProvider(source_url="", static_codes=["alpha-code"])

    assert await provider.is_authorized(" alpha-code ")
    assert not await provider.is_authorized("other")
    assert not await provider.is_authorized("")
    assert not await provider.is_authorized(None)


@respx.mock
async def test_remote_codes_are_cached():
    route = respx.get(SOURCE).mock(return_value=httpx.Response(200, json={"secret_code": [" remote-1 ", "", 7]}))
    provider = AuthCodeProvider(source_url=SOURCE, static_codes=[], refresh_seconds=300)

    assert await provider.is_authorized("remote-1")
    assert not await provider.is_authorized("remote-2")
    assert route.call_count == 1


@respx.mock
async def test_expired_cache_is_refreshed():
    route = respx.get(SOURCE).mock(
        side_effect=[
            httpx.Response(200, json={"secret_code": ["old"]}),
            httpx.Response(200, json={"secret_code": ["new"]}),
        ]
    )
    provider = AuthCodeProvider(source_url=SOURCE, static_codes=[], refresh_seconds=0)

    assert await provider.is_authorized("old")
    assert await provider.is_authorized("new")
    assert route.call_count == 2


@respx.mock
async def test_failed_refresh_keeps_last_known_codes():
    respx.get(SOURCE).mock(
        side_effect=[
            httpx.Response(200, json={"secret_code": ["remote-1"]}),
            httpx.Response(500),
        ]
    )
    provider = AuthCodeProvider(source_url=SOURCE, static_codes=[], refresh_seconds=300)

    assert await provider.load_remote_codes() == ["remote-1"]
    assert await provider.load_remote_codes(force=True) == ["remote-1"]


@respx.mock
async def test_unreachable_source_denies():
    respx.get(SOURCE).mock(side_effect=httpx.ConnectError("refused"))
    provider = AuthCodeProvider(source_url=SOURCE, static_codes=[])
    assert not await provider.is_authorized("remote-1")


@respx.mock
async def test_concurrent_lookups_share_one_request():
    route = respx.get(SOURCE).mock(return_value=httpx.Response(200, json={"secret_code": ["remote-1"]}))
    provider = AuthCodeProvider(source_url=SOURCE, static_codes=[], refresh_seconds=300)

    results = await asyncio.gather(*(provider.is_authorized("remote-1") for _ in range(3)))

    assert results == [True, True, True]
    assert route.call_count == 1

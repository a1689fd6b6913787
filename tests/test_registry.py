"""Tests for the in-process session registry"""
import pytest

from resumable_upload.core.exceptions import SessionBusyError
from resumable_upload.services.registry import SessionRegistry


async def test_second_acquire_fails_fast():
    registry = SessionRegistry()
    await registry.acquire("s1")

    with pytest.raises(SessionBusyError):
        await registry.acquire("s1")

    assert registry.is_active("s1")
    assert registry.active_ids() == ["s1"]


async def test_release_frees_the_id():
    registry = SessionRegistry()
    await registry.acquire("s1")
    registry.release("s1")

    assert not registry.is_active("s1")
    entry = await registry.acquire("s1")
    assert entry.session_id == "s1"


async def test_claim_releases_on_error():
    registry = SessionRegistry()

    with pytest.raises(RuntimeError):
        async with registry.claim("s1"):
            raise RuntimeError("boom")

    assert not registry.is_active("s1")


async def test_independent_sessions():
    registry = SessionRegistry()
    await registry.acquire("s1")
    await registry.acquire("s2")

    assert sorted(registry.active_ids()) == ["s1", "s2"]


async def test_request_cancel():
    registry = SessionRegistry()
    assert registry.request_cancel("s1") is False

    entry = await registry.acquire("s1")
    assert registry.request_cancel("s1") is True
    assert entry.cancel_event.is_set()
    assert registry.get("s1") is entry

"""Tests for NotificationRouter."""

import pytest

from src.notifications.router import NotificationRouter
from src.scheduler.errors import DeliveryError, ErrorCode

# -- Helpers -----------------------------------------------------------------


class FakeChannel:
    """Minimal channel implementation for testing."""

    def __init__(self, channel_name: str = "fake") -> None:
        self._name = channel_name
        self.sent: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return self._name

    async def send(self, target: str, message: str) -> str | None:
        self.sent.append((target, message))
        return str(len(self.sent))


class FailChannel(FakeChannel):
    """Channel that always fails to send."""

    async def send(self, target: str, message: str) -> str | None:
        raise DeliveryError("down", ErrorCode.CHANNEL_DISCONNECTED)


@pytest.fixture
def router() -> NotificationRouter:
    return NotificationRouter()


# -- Registration --------------------------------------------------------------


def test_register_and_get(router: NotificationRouter) -> None:
    ch = FakeChannel("telegram")
    router.register_channel(ch)
    assert router.get_channel("telegram") is ch
    assert router.get_channel("other") is None
    assert router.list_channels() == ["telegram"]


def test_register_duplicate_raises(router: NotificationRouter) -> None:
    router.register_channel(FakeChannel("telegram"))
    with pytest.raises(ValueError, match="already registered"):
        router.register_channel(FakeChannel("telegram"))


def test_set_default_unknown_raises(router: NotificationRouter) -> None:
    with pytest.raises(KeyError):
        router.set_default_channel("telegram")


def test_routers_are_independent() -> None:
    a, b = NotificationRouter(), NotificationRouter()
    a.register_channel(FakeChannel("telegram"))
    assert b.list_channels() == []


# -- Resolution ----------------------------------------------------------------


def test_resolve_explicit_then_default(router: NotificationRouter) -> None:
    tg, other = FakeChannel("telegram"), FakeChannel("other")
    router.register_channel(tg)
    router.register_channel(other)
    router.set_default_channel("telegram")

    assert router.resolve_channel("other") is other
    assert router.resolve_channel(None) is tg
    assert router.resolve_channel("missing") is None


def test_resolve_single_channel_without_default(router: NotificationRouter) -> None:
    only = FakeChannel("telegram")
    router.register_channel(only)
    assert router.resolve_channel(None) is only


def test_resolve_ambiguous_without_default(router: NotificationRouter) -> None:
    router.register_channel(FakeChannel("a"))
    router.register_channel(FakeChannel("b"))
    assert router.resolve_channel(None) is None


# -- send() --------------------------------------------------------------------


async def test_send_via_default(router: NotificationRouter) -> None:
    ch = FakeChannel("telegram")
    router.register_channel(ch)
    router.set_default_channel("telegram")

    assert await router.send("-100123", "hello") == "1"
    assert ch.sent == [("-100123", "hello")]


async def test_send_no_channel_raises(router: NotificationRouter) -> None:
    with pytest.raises(DeliveryError) as exc_info:
        await router.send("-100123", "hello")
    assert exc_info.value.code is ErrorCode.CHANNEL_NOT_FOUND


async def test_send_propagates_channel_error(router: NotificationRouter) -> None:
    router.register_channel(FailChannel("telegram"))
    with pytest.raises(DeliveryError) as exc_info:
        await router.send("-100123", "hello")
    assert exc_info.value.code is ErrorCode.CHANNEL_DISCONNECTED

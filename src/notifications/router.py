"""NotificationRouter — dispatches messages to registered channels."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.scheduler.errors import DeliveryError, ErrorCode

if TYPE_CHECKING:
    from src.notifications.channels import NotificationChannel

logger = logging.getLogger(__name__)


class NotificationRouter:
    """Routes outbound messages to the appropriate channel.

    Built once at startup and passed to whoever needs to send.
    """

    def __init__(self) -> None:
        self._channels: dict[str, NotificationChannel] = {}
        self._default: str = ""

    def register_channel(self, channel: NotificationChannel) -> None:
        """Register a notification channel. Raises ValueError on duplicate name."""
        if channel.name in self._channels:
            msg = f"Channel '{channel.name}' is already registered"
            raise ValueError(msg)
        self._channels[channel.name] = channel

    def set_default_channel(self, name: str) -> None:
        """Set the default channel by name. Raises KeyError if not registered."""
        if name not in self._channels:
            msg = f"Channel '{name}' is not registered"
            raise KeyError(msg)
        self._default = name

    def get_channel(self, name: str) -> NotificationChannel | None:
        """Look up a channel by name."""
        return self._channels.get(name)

    def list_channels(self) -> list[str]:
        """Return names of all registered channels."""
        return list(self._channels.keys())

    @property
    def default_channel_name(self) -> str:
        """The name of the current default channel."""
        return self._default

    def resolve_channel(self, name: str | None) -> NotificationChannel | None:
        """Resolve a channel: explicit name → default → only registered channel."""
        if name:
            return self._channels.get(name)
        if self._default:
            return self._channels.get(self._default)
        if len(self._channels) == 1:
            return next(iter(self._channels.values()))
        return None

    async def send(
        self,
        target: str,
        message: str,
        *,
        channel: str | None = None,
    ) -> str | None:
        """Send a message via the resolved channel and return its message id.

        Raises:
            DeliveryError: CHANNEL_NOT_FOUND when no channel resolves, or
                whatever the channel itself raises.
        """
        ch = self.resolve_channel(channel)
        if ch is None:
            logger.warning("No channel resolved for send (requested=%s)", channel)
            msg = f"No notification channel resolved (requested={channel!r})"
            raise DeliveryError(msg, ErrorCode.CHANNEL_NOT_FOUND)
        return await ch.send(target, message)

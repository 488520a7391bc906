"""NotificationChannel protocol — interface for all post delivery channels."""

from typing import Protocol, runtime_checkable


@runtime_checkable
class NotificationChannel(Protocol):
    """Protocol that all notification channels must satisfy."""

    @property
    def name(self) -> str:
        """Unique channel identifier (e.g. 'telegram')."""
        ...

    async def send(self, target: str, message: str) -> str | None:
        """Deliver *message* to *target* and return the platform message id.

        Raises:
            DeliveryError: with an ErrorCode describing the failure.
        """
        ...

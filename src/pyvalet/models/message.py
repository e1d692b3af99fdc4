"""Inbound message model."""

from __future__ import annotations

from pydantic import Field

from pyvalet.models._base import UtcDatetime, ValetBaseModel


class InboundMessage(ValetBaseModel):
    """A message delivered by the messaging channel.

    Exactly what the core needs from a webhook delivery: who sent it,
    its text and/or image reference, and the channel's message id used
    for duplicate suppression.
    """

    sender: str = Field(min_length=1)
    text: str | None = None
    image_ref: str | None = None
    """Channel media id of an attached image."""
    message_id: str | None = None
    timestamp: UtcDatetime | None = None

"""Messages carried on the voting event channel."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict

ChannelAction = Literal["voting_completed", "send_summary"]


class CompletionMessage(BaseModel):
    """
    A voting completion notification.

    ``voting_completed`` is published when an item leaves ``voting``;
    ``send_summary`` asks for the summary email directly. Both take the
    same dedup + dispatch path on the listener side. Unknown fields are
    rejected so malformed payloads are parked instead of half-trusted.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    action: ChannelAction
    kind: Literal["resolution", "minutes"]
    id: UUID
    timestamp: datetime

    def encode(self) -> str:
        return self.model_dump_json()

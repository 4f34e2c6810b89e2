"""Monitoring events delivered to subscribers."""

import time
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from hotwallet.networks import Network


class MonitoringState(str, Enum):
    """Lifecycle of an address watch."""

    STARTING = "starting"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    LOST = "lost"
    STOPPED = "stopped"


class _Event(BaseModel):
    network: Network
    address: str
    subscription_id: str
    timestamp: float = Field(default_factory=time.time)


class BalanceChangeEvent(_Event):
    """Native balance of a watched address changed."""

    type: Literal["balance_change"] = "balance_change"
    asset: str
    previous: str
    new: str
    previous_raw: int
    new_raw: int


class TokenBalanceChangeEvent(_Event):
    """Balance of a watched token changed."""

    type: Literal["token_balance_change"] = "token_balance_change"
    token: str
    previous: str
    new: str
    previous_raw: int
    new_raw: int


class TransferEvent(_Event):
    """A transfer touching the watched address was observed."""

    type: Literal["transfer"] = "transfer"
    hash: str
    direction: str
    asset: str
    amount: str
    token_id: Optional[int] = None


class MonitoringLostEvent(_Event):
    """Terminal event: reconnection attempts were exhausted."""

    type: Literal["monitoring_lost"] = "monitoring_lost"
    attempts: int
    reason: str


MonitoringEvent = Union[BalanceChangeEvent, TokenBalanceChangeEvent, TransferEvent, MonitoringLostEvent]

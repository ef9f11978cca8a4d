"""Seams to the systems around the recovery engine.

Risk-factor sourcing, account lookup and token dispatch belong to other
services; the engine only sees these interfaces.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from app.services.risk_engine import RiskFactors
from app.utils.identifiers import Identifier, mask_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientContext:
    ip: str = "unknown"
    user_agent: str | None = None


class RiskFactorProvider(ABC):
    @abstractmethod
    async def collect(self, identifier: Identifier, client: ClientContext) -> RiskFactors:
        pass


class StaticRiskFactorProvider(RiskFactorProvider):
    """Reports the same factor vector for every request."""

    def __init__(self, factors: RiskFactors) -> None:
        self.factors = factors

    async def collect(self, identifier: Identifier, client: ClientContext) -> RiskFactors:
        return self.factors


class UserDirectory(ABC):
    @abstractmethod
    async def resolve(self, identifier: Identifier) -> str | None:
        """Return the user id owning ``identifier``, or None if there is no account."""


class IdentifierUserDirectory(UserDirectory):
    """Treats the normalized identifier itself as the user id."""

    async def resolve(self, identifier: Identifier) -> str | None:
        return identifier.value


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, accounts: Mapping[str, str]) -> None:
        self._accounts = dict(accounts)

    async def resolve(self, identifier: Identifier) -> str | None:
        return self._accounts.get(identifier.value)


class TokenDelivery(ABC):
    @abstractmethod
    async def deliver(self, identifier: Identifier, token: str, expires_at: datetime) -> None:
        pass


class LoggingTokenDelivery(TokenDelivery):
    """Stand-in dispatcher: records that a token went out, never the token itself."""

    async def deliver(self, identifier: Identifier, token: str, expires_at: datetime) -> None:
        logger.info(
            "Recovery token dispatched via %s to %s expires_at=%s",
            identifier.kind,
            mask_identifier(identifier.value),
            expires_at.isoformat(),
        )

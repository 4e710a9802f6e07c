"""Per-device delivery outcomes and their aggregation.

Nothing here touches the network or the database: the dispatcher feeds the
results of its sends in and gets counters and an invalidation set out.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from .gateway import DeliveryResult, GatewayResult


@dataclass(frozen=True)
class DeliveryOutcome:
    """What happened to one device during one dispatch."""

    token: str
    result: DeliveryResult
    code: Optional[str] = None
    detail: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.result == DeliveryResult.DELIVERED

    @property
    def invalidates_token(self) -> bool:
        return self.result == DeliveryResult.PERMANENT_FAILURE


def classify(token: str, result: Optional[GatewayResult] = None, error: Optional[BaseException] = None) -> DeliveryOutcome:
    """Turn a gateway result, or the exception raised instead of one, into an outcome.

    Timeouts and unexpected exceptions are always transient: they are never
    enough evidence to retire a token.
    """
    if error is not None:
        if isinstance(error, asyncio.TimeoutError):
            return DeliveryOutcome(token, DeliveryResult.TRANSIENT_FAILURE, "timeout", "Gateway send timed out")
        return DeliveryOutcome(
            token,
            DeliveryResult.TRANSIENT_FAILURE,
            type(error).__name__,
            str(error) or type(error).__name__,
        )
    if result is None or not isinstance(result, GatewayResult):
        return DeliveryOutcome(token, DeliveryResult.TRANSIENT_FAILURE, "invalid-result", repr(result))
    return DeliveryOutcome(token, result.result, result.code, result.detail)


@dataclass
class DispatchTally:
    """Aggregated counters for one dispatch."""

    total: int = 0
    sent: int = 0
    failed: int = 0
    invalid_tokens: Set[str] = field(default_factory=set)
    failures: List[DeliveryOutcome] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return round(self.sent / self.total * 100, 2)


def tally_outcomes(outcomes: Iterable[DeliveryOutcome]) -> DispatchTally:
    """Fold outcomes into counters. Order does not matter."""
    tally = DispatchTally()
    for outcome in outcomes:
        tally.total += 1
        if outcome.delivered:
            tally.sent += 1
            continue
        tally.failed += 1
        tally.failures.append(outcome)
        if outcome.invalidates_token:
            tally.invalid_tokens.add(outcome.token)
    return tally

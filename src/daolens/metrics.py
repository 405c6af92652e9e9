"""Derived governance metrics.

Every function here is pure and deterministic. Token amounts come in as raw integers (18 implied decimals) and
stay integers until the very last step, where a single division in a wide decimal context produces a ratio
quantized to `RATIO_PLACES`. A zero divisor always yields zero.
"""

from __future__ import annotations

from collections.abc import Iterable
from collections.abc import Sequence
from decimal import ROUND_HALF_EVEN
from decimal import Context
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from daolens.models import DelegateAggregate

DECIMALS = 18
RATIO_PLACES = 6

# NOTE: 78 digits hold any uint256 value
_context = Context(prec=78, rounding=ROUND_HALF_EVEN)
_quantum = Decimal(1).scaleb(-RATIO_PLACES)

ZERO = Decimal(0).quantize(_quantum)


def from_wei(raw: int, decimals: int = DECIMALS) -> Decimal:
    """Convert raw fixed-point amount to token units; exact"""
    return Decimal(raw).scaleb(-decimals, _context)


def to_wei(value: Decimal | str | int, decimals: int = DECIMALS) -> int:
    """Convert token units to raw fixed-point amount; digits past `decimals` are truncated"""
    return int(Decimal(value).scaleb(decimals, _context))


def ratio(numerator: int | Decimal, denominator: int | Decimal) -> Decimal:
    if not denominator:
        return ZERO
    return _context.divide(Decimal(numerator), Decimal(denominator)).quantize(_quantum, context=_context)


def percentage_delegated(total_delegated: int, total_supply: int) -> Decimal:
    return ratio(total_delegated, total_supply)


def top_n_concentration(aggregates: Sequence[DelegateAggregate], n: int = 5) -> Decimal:
    """Share of total supply held by the first `n` delegates; expects aggregates sorted by power"""
    return sum((a.percentage for a in aggregates[:n]), ZERO)


def delegate_to_holder_ratio(delegates: int, holders: int) -> Decimal:
    return ratio(delegates, holders)


def tokens_per_delegate(tokens: int, delegates: int) -> Decimal:
    return ratio(from_wei(tokens), delegates)


def tokens_per_holder(tokens: int, holders: int) -> Decimal:
    return ratio(from_wei(tokens), holders)


def voting_turnout(votes: int, total_supply: int) -> Decimal:
    return ratio(votes, total_supply)


def average(values: Iterable[Decimal]) -> Decimal:
    values = tuple(values)
    return ratio(sum(values, Decimal(0)), len(values))


def success_rate(successful: int, total: int, canceled: int) -> Decimal:
    # NOTE: Canceled proposals never reached a vote
    return ratio(successful, max(total - canceled, 0))

"""Impermanent loss as a snapshot diff.

Position value in a bin-based pool is not an analytic function of price, so
IL is measured empirically: the deposited quantities valued at current prices
(the hold value) minus what the position is actually worth now.
"""

from __future__ import annotations

from binpnl.core.models import ImpermanentLoss, PositionSnapshot, UsdValue


def hodl_value_usd(deposit: PositionSnapshot, current: PositionSnapshot) -> float:
    """Worth of the originally deposited quantities at current prices."""
    return deposit.token_x.amount * current.token_x.price + deposit.token_y.amount * current.token_y.price


def compute_impermanent_loss(deposit: PositionSnapshot, current: PositionSnapshot) -> ImpermanentLoss:
    """IL in USD and as a percentage of deposit value (0% on a zero deposit)."""
    il_usd = hodl_value_usd(deposit, current) - current.value_usd
    deposit_value = deposit.value_usd
    il_percent = (il_usd / deposit_value) * 100.0 if deposit_value > 0 else 0.0
    return ImpermanentLoss(usd=UsdValue(il_usd), percent=il_percent)


class ImpermanentLossCalculator:
    """Object form of `compute_impermanent_loss` for injection."""

    def compute(self, deposit: PositionSnapshot, current: PositionSnapshot) -> ImpermanentLoss:
        return compute_impermanent_loss(deposit, current)

"""
Liquidation Helpers for Fluid Protocol.

Pure functions that split a single trove liquidation into the part absorbed by
the Stability Pool, the part redistributed to the other troves, the liquidator's
gas compensation and any collateral surplus left with the owner. No state is
read or written here; the TroveManager feeds in the trove, price and remaining
pool liquidity and applies the result.

Every outcome satisfies:

    entire_debt       == debt_offset_by_pool + debt_to_redistribute
    entire_collateral == gas_compensation + collateral_to_pool
                         + collateral_to_redistribute + collateral_surplus
"""

from dataclasses import dataclass

import fixed_point_math as fpm
from protocol_config import DEFAULT_CONFIG


@dataclass
class LiquidationOutcome:
    """
    Values calculated for the liquidation of one trove.

    For a partial (recovery mode) liquidation, entire_debt is the liquidated part
    of the debt and collateral_surplus is the collateral that stays in the trove.
    """
    entire_debt: int = 0
    entire_collateral: int = 0
    gas_compensation: int = 0             # Collateral paid to the liquidator
    debt_offset_by_pool: int = 0          # Debt cancelled against Stability Pool USDF
    collateral_to_pool: int = 0           # Collateral sent to Stability Pool depositors
    debt_to_redistribute: int = 0         # Debt spread over the remaining troves
    collateral_to_redistribute: int = 0   # Collateral spread over the remaining troves
    collateral_surplus: int = 0           # Collateral returned to the owner
    partial: bool = False


@dataclass
class LiquidationTotals:
    """Running totals over a liquidation batch."""
    total_debt_in_sequence: int = 0
    total_coll_in_sequence: int = 0
    total_gas_compensation: int = 0
    total_debt_to_offset: int = 0
    total_coll_to_send_to_sp: int = 0
    total_debt_to_redistribute: int = 0
    total_coll_to_redistribute: int = 0
    total_coll_surplus: int = 0
    troves_liquidated: int = 0
    troves_partially_liquidated: int = 0

    def add_outcome(self, outcome):
        """Adds the values from a single liquidation to the running totals."""
        self.total_debt_in_sequence += outcome.entire_debt
        self.total_coll_in_sequence += outcome.entire_collateral
        self.total_gas_compensation += outcome.gas_compensation
        self.total_debt_to_offset += outcome.debt_offset_by_pool
        self.total_coll_to_send_to_sp += outcome.collateral_to_pool
        self.total_debt_to_redistribute += outcome.debt_to_redistribute
        self.total_coll_to_redistribute += outcome.collateral_to_redistribute
        self.total_coll_surplus += outcome.collateral_surplus
        if outcome.partial:
            self.troves_partially_liquidated += 1
        else:
            self.troves_liquidated += 1
        return self


def get_coll_gas_compensation(coll, price, config=DEFAULT_CONFIG):
    """
    Collateral paid to the liquidator: half the liquidation reserve, valued at
    the current price, never more than the collateral available.
    """
    compensation = fpm.mul_div(config.gas_compensation, fpm.DECIMAL_PRECISION, price)
    return min(compensation, coll)


def get_offset_and_redistribution_vals(debt, coll_after_compensation, pool_liquidity):
    """
    Splits debt and collateral between the Stability Pool and redistribution.

    Args:
        debt: Debt being liquidated
        coll_after_compensation: Collateral being liquidated, gas compensation excluded
        pool_liquidity: USDF in the Stability Pool still available for offsets

    Returns:
        Tuple of (debt_to_offset, coll_to_send_to_sp, debt_to_redistribute, coll_to_redistribute)
    """
    if pool_liquidity > 0 and debt > 0:
        debt_to_offset = min(debt, pool_liquidity)
        coll_to_send_to_sp = fpm.mul_div(coll_after_compensation, debt_to_offset, debt)
    else:
        debt_to_offset = 0
        coll_to_send_to_sp = 0

    debt_to_redistribute = fpm.sub(debt, debt_to_offset)
    coll_to_redistribute = fpm.sub(coll_after_compensation, coll_to_send_to_sp)
    return debt_to_offset, coll_to_send_to_sp, debt_to_redistribute, coll_to_redistribute


def liquidate_normal_mode(debt, coll, price, pool_liquidity, config=DEFAULT_CONFIG):
    """
    Liquidates a whole trove: gas compensation first, then the pool takes as
    much debt as it can, with collateral in proportion, and the rest is
    redistributed.
    """
    outcome = LiquidationOutcome(entire_debt=debt, entire_collateral=coll)
    outcome.gas_compensation = get_coll_gas_compensation(coll, price, config)
    coll_after_compensation = fpm.sub(coll, outcome.gas_compensation)

    (
        outcome.debt_offset_by_pool,
        outcome.collateral_to_pool,
        outcome.debt_to_redistribute,
        outcome.collateral_to_redistribute,
    ) = get_offset_and_redistribution_vals(debt, coll_after_compensation, pool_liquidity)
    return outcome


def liquidate_recovery_mode(debt, coll, icr, price, pool_liquidity, config=DEFAULT_CONFIG):
    """
    Liquidates a trove while the system is in recovery mode.

    At or below 100% ICR the trove is liquidated exactly as in normal mode.
    Between 100% and MCR only the debt the collateral can back at MCR is
    liquidated; the collateral that debt does not need stays with the owner.
    """
    if icr <= fpm.DECIMAL_PRECISION or icr >= config.mcr:
        return liquidate_normal_mode(debt, coll, price, pool_liquidity, config)

    max_liquidatable_debt = fpm.mul_div(coll, price, config.mcr)
    debt_to_liquidate = min(debt, max_liquidatable_debt)
    coll_to_liquidate = fpm.mul_div(debt_to_liquidate, config.mcr, price)

    outcome = LiquidationOutcome(entire_debt=debt_to_liquidate, entire_collateral=coll, partial=True)
    outcome.collateral_surplus = fpm.sub(coll, coll_to_liquidate)
    outcome.gas_compensation = get_coll_gas_compensation(coll_to_liquidate, price, config)
    coll_after_compensation = fpm.sub(coll_to_liquidate, outcome.gas_compensation)

    (
        outcome.debt_offset_by_pool,
        outcome.collateral_to_pool,
        outcome.debt_to_redistribute,
        outcome.collateral_to_redistribute,
    ) = get_offset_and_redistribution_vals(debt_to_liquidate, coll_after_compensation, pool_liquidity)
    return outcome


def get_liquidation_outcome(debt, coll, price, pool_liquidity, recovery_mode, config=DEFAULT_CONFIG):
    """
    Entry point used by the TroveManager.

    Args:
        debt: Entire trove debt, pending rewards included
        coll: Entire trove collateral, pending rewards included
        price: Current collateral price
        pool_liquidity: Stability Pool USDF still available in this batch
        recovery_mode: Whether the system was in recovery mode at batch start

    Returns:
        LiquidationOutcome
    """
    if recovery_mode:
        icr = fpm.compute_cr(coll, debt, price)
        return liquidate_recovery_mode(debt, coll, icr, price, pool_liquidity, config)
    return liquidate_normal_mode(debt, coll, price, pool_liquidity, config)

"""
Protocol parameters for the Fluid Protocol model.

Module-level constants are the protocol defaults; ProtocolConfig bundles them so
an individual model instance can run with different parameters.
"""

from dataclasses import dataclass

from fixed_point_math import DECIMAL_PRECISION

# Collateral ratios, fixed point
MCR = 11 * DECIMAL_PRECISION // 10                      # 110% - liquidation threshold
CCR = 15 * DECIMAL_PRECISION // 10                      # 150% - recovery mode below this TCR
MIN_COLLATERAL_RATIO = 135 * DECIMAL_PRECISION // 100   # 135% - required to open a trove
_100pct = DECIMAL_PRECISION

# USDF amounts
LIQUIDATION_RESERVE = 200 * DECIMAL_PRECISION   # half of it is paid to liquidators in collateral
MIN_NET_DEBT = 1800 * DECIMAL_PRECISION

# Stability Pool
SCALE_FACTOR = 10**9
DUST_DIVISOR = 10**6   # compounded deposits below initial / DUST_DIVISOR floor to 0

# FLUID issuance
FLUID_SUPPLY_CAP = 32_000_000 * DECIMAL_PRECISION
ISSUANCE_FACTOR = 999998681227695000   # per-minute decay, halves the remainder each year
SECONDS_IN_ONE_MINUTE = 60

SORTED_TROVES_MAX_SIZE = 2**64


@dataclass
class ProtocolConfig:
    mcr: int = MCR
    ccr: int = CCR
    min_collateral_ratio: int = MIN_COLLATERAL_RATIO
    liquidation_reserve: int = LIQUIDATION_RESERVE
    min_net_debt: int = MIN_NET_DEBT

    scale_factor: int = SCALE_FACTOR
    dust_divisor: int = DUST_DIVISOR

    fluid_supply_cap: int = FLUID_SUPPLY_CAP
    issuance_factor: int = ISSUANCE_FACTOR

    sorted_troves_max_size: int = SORTED_TROVES_MAX_SIZE

    @property
    def gas_compensation(self) -> int:
        """USD value paid to the liquidator, in collateral, per liquidated trove."""
        return self.liquidation_reserve // 2

    def validate(self):
        if self.mcr <= DECIMAL_PRECISION:
            raise ValueError("MCR must be above 100%")
        if self.ccr < self.mcr:
            raise ValueError("CCR must not be below MCR")
        if self.min_collateral_ratio < self.mcr:
            raise ValueError("Minimum opening ratio must not be below MCR")
        if self.sorted_troves_max_size <= 0:
            raise ValueError("Sorted troves max size must be positive")
        return self


DEFAULT_CONFIG = ProtocolConfig()

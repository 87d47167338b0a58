"""
Community Issuance Model for Fluid Protocol.

FLUID rewards for Stability Pool depositors are released on a fixed schedule:
the cumulative amount issued after t minutes is

    supply_cap * (1 - ISSUANCE_FACTOR ** t)

so half of the remaining supply is issued every year. The Stability Pool pulls
the newly issued amount whenever it is touched and folds it into its G sum.
"""

import logging
import time

import fixed_point_math as fpm
from protocol_config import DEFAULT_CONFIG, SECONDS_IN_ONE_MINUTE
from protocol_errors import AuthorizationError
from reentrancy_guard import GuardedComponent, non_reentrant

logger = logging.getLogger(__name__)


class CommunityIssuance(GuardedComponent):
    """
    Holds the FLUID reward supply and releases it to the Stability Pool.
    """

    _STATE_FIELDS = ("total_fluid_issued",)

    def __init__(self, fluid_token, config=None, clock=None, journal=None):
        self.address = "CommunityIssuance"
        self.config = config or DEFAULT_CONFIG

        self.fluid_token = fluid_token
        self.stability_pool = None

        # Returns the current time in seconds
        self.clock = clock or (lambda: int(time.time()))
        self.deployment_time = self.clock()

        self.total_fluid_issued = 0

        self._init_guard(journal)

    def fund(self):
        """Mints the whole reward supply to the issuance account."""
        self.fluid_token.mint(self, self.address, self.config.fluid_supply_cap)

    def get_cumulative_issuance_fraction(self):
        """Fraction of the supply cap that should have been issued by now, fixed point."""
        time_passed_in_minutes = (self.clock() - self.deployment_time) // SECONDS_IN_ONE_MINUTE
        power = fpm.dec_pow(self.config.issuance_factor, time_passed_in_minutes)
        return fpm.sub(fpm.DECIMAL_PRECISION, power)

    @non_reentrant
    def issue_fluid(self, caller):
        """
        Records newly released FLUID and returns the amount.

        Args:
            caller: Must be the Stability Pool

        Returns:
            FLUID released since the previous call
        """
        self._require_caller_is_stability_pool(caller)

        latest_total = fpm.mul_div(
            self.config.fluid_supply_cap, self.get_cumulative_issuance_fraction(), fpm.DECIMAL_PRECISION
        )
        issuance = fpm.sub(latest_total, self.total_fluid_issued) if latest_total > self.total_fluid_issued else 0
        self.total_fluid_issued += issuance

        if issuance > 0:
            logger.debug("Issued %d FLUID, total %d", issuance, self.total_fluid_issued)
        return issuance

    @non_reentrant
    def send_fluid(self, caller, account, amount):
        """Pays out a depositor's FLUID gain."""
        self._require_caller_is_stability_pool(caller)
        if amount == 0:
            return
        self.fluid_token.transfer(self.address, account, amount)

    def _require_caller_is_stability_pool(self, caller):
        if caller is not self.stability_pool:
            raise AuthorizationError("Caller is not the Stability Pool")

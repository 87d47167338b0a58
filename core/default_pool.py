"""
Default Pool Model for Fluid Protocol.

This module simulates the DefaultPool contract which holds the collateral and
USDF debt from liquidated troves that could not be offset with the Stability Pool.
Amounts stay here, per asset, until each surviving trove applies its pending
redistribution reward.
"""

from protocol_errors import AuthorizationError, ValidationError
from reentrancy_guard import GuardedComponent, non_reentrant


class DefaultPool(GuardedComponent):
    """
    Simulates the DefaultPool contract which holds redistributed collateral and debt.
    """

    _STATE_FIELDS = ("coll_balances", "usdf_debts")

    def __init__(self, journal=None):
        self.address = "DefaultPool"

        # asset -> collateral / debt awaiting application to troves
        self.coll_balances = {}
        self.usdf_debts = {}

        self.trove_manager = None

        self._init_guard(journal)

    def get_coll_balance(self, asset):
        """Returns the collateral in the Default Pool for an asset."""
        return self.coll_balances.get(asset, 0)

    def get_usdf_debt(self, asset):
        """Returns the USDF debt in the Default Pool for an asset."""
        return self.usdf_debts.get(asset, 0)

    @non_reentrant
    def increase_balances(self, caller, asset, coll, debt):
        """
        Receives redistributed collateral and debt.
        Called by the TroveManager at the end of a liquidation batch.
        """
        self._require_caller_is_trove_manager(caller)
        if coll < 0 or debt < 0:
            raise ValidationError("Invalid redistribution amounts")
        self.coll_balances[asset] = self.coll_balances.get(asset, 0) + coll
        self.usdf_debts[asset] = self.usdf_debts.get(asset, 0) + debt

    @non_reentrant
    def decrease_balances(self, caller, asset, coll, debt):
        """
        Releases collateral and debt to a trove applying its pending rewards.
        """
        self._require_caller_is_trove_manager(caller)
        if coll > self.get_coll_balance(asset) or debt > self.get_usdf_debt(asset):
            raise ValidationError(f"Insufficient Default Pool balance for {asset}")
        self.coll_balances[asset] = self.get_coll_balance(asset) - coll
        self.usdf_debts[asset] = self.get_usdf_debt(asset) - debt

    def _require_caller_is_trove_manager(self, caller):
        if caller is not self.trove_manager:
            raise AuthorizationError("Caller is not TroveManager")

"""
Collateral Surplus Pool Model for Fluid Protocol.

This module simulates the CollSurplusPool contract which holds collateral left
over when a trove is redeemed down to zero debt. The owner can claim it at any
time through BorrowerOperations.
"""

from protocol_errors import AuthorizationError, ValidationError
from reentrancy_guard import GuardedComponent, non_reentrant


class CollSurplusPool(GuardedComponent):
    """
    Simulates the CollSurplusPool contract which manages surplus collateral.
    """

    _STATE_FIELDS = ("coll_balances", "balances")

    def __init__(self, journal=None):
        self.address = "CollSurplusPool"

        # asset -> total collateral stored
        self.coll_balances = {}

        # (account, asset) -> claimable collateral
        self.balances = {}

        self.trove_manager = None
        self.borrower_operations = None

        self._init_guard(journal)

    def get_coll_balance(self, asset):
        """Returns the total collateral held for an asset."""
        return self.coll_balances.get(asset, 0)

    def get_collateral(self, account, asset):
        """Returns the claimable collateral balance for a specific account."""
        return self.balances.get((account, asset), 0)

    @non_reentrant
    def account_surplus(self, caller, account, asset, amount):
        """
        Records a surplus collateral amount for an account.
        Called by TroveManager on full redemption and on partial liquidation.
        """
        if caller is not self.trove_manager:
            raise AuthorizationError("Caller is not TroveManager")
        if amount <= 0:
            raise ValidationError(f"Invalid collateral amount: {amount}")

        self.balances[(account, asset)] = self.get_collateral(account, asset) + amount
        self.coll_balances[asset] = self.get_coll_balance(asset) + amount
        return True

    @non_reentrant
    def claim_coll(self, caller, account, asset):
        """
        Allows a user to claim their surplus collateral.
        Called by BorrowerOperations when a user wants to claim their surplus.
        """
        if caller is not self.borrower_operations:
            raise AuthorizationError("Caller is not BorrowerOperations")

        claimable_coll = self.get_collateral(account, asset)
        if claimable_coll <= 0:
            raise ValidationError("No collateral available to claim")

        del self.balances[(account, asset)]
        self.coll_balances[asset] = self.get_coll_balance(asset) - claimable_coll
        return claimable_coll

"""
Token ledger model for Fluid Protocol.

One Token class serves both the USDF stablecoin and the FLUID reward token.
It handles minting, burning and transfers between account addresses (strings).
"""

import logging

from protocol_errors import AuthorizationError, ValidationError
from reentrancy_guard import GuardedComponent, non_reentrant

logger = logging.getLogger(__name__)


class Token(GuardedComponent):
    """
    Simulates a fungible token contract.

    Only addresses registered as minters may mint or burn; the owner manages the
    minter set.
    """

    _STATE_FIELDS = ("balances", "total_supply")

    def __init__(self, symbol, owner=None, journal=None):
        self.symbol = symbol

        # Mapping of addresses to token balances
        self.balances = {}
        self.total_supply = 0

        # Addresses allowed to mint and burn
        self.minters = set()
        self.owner = owner

        self._init_guard(journal)

    def add_minter(self, caller, minter):
        """Adds an address to the minter set. Only callable by the owner."""
        if self.owner is None or caller != self.owner:
            raise AuthorizationError(f"{self.symbol}: caller is not the owner")
        self.minters.add(minter)

    def balance_of(self, account):
        """Returns the token balance of the given account."""
        return self.balances.get(account, 0)

    @non_reentrant
    def transfer(self, sender, recipient, amount):
        """
        Transfers tokens from sender to recipient.

        Args:
            sender: Address sending the tokens
            recipient: Address receiving the tokens
            amount: Amount of tokens to transfer

        Returns:
            True if successful
        """
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if not recipient:
            raise ValidationError("Invalid recipient")

        sender_balance = self.balances.get(sender, 0)
        if sender_balance < amount:
            raise ValidationError(f"Insufficient {self.symbol} balance")

        self.balances[sender] = sender_balance - amount
        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        return True

    @non_reentrant
    def mint(self, caller, recipient, amount):
        """
        Mints new tokens to the recipient account.
        Only callable by authorized minters.
        """
        self._require_minter(caller)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if not recipient:
            raise ValidationError("Invalid recipient")

        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        self.total_supply += amount
        return True

    @non_reentrant
    def burn(self, caller, from_account, amount):
        """
        Burns tokens from the given account.
        Only callable by authorized minters.
        """
        self._require_minter(caller)
        return self._burn(from_account, amount)

    @non_reentrant
    def burn_from(self, caller, holder, amount):
        """Burns tokens held by a user, e.g. on repayment or redemption."""
        self._require_minter(caller)
        return self._burn(holder, amount)

    def _burn(self, from_account, amount):
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        from_balance = self.balances.get(from_account, 0)
        if from_balance < amount:
            raise ValidationError(f"Insufficient {self.symbol} balance")

        self.balances[from_account] = from_balance - amount
        self.total_supply -= amount
        return True

    def _require_minter(self, caller):
        if caller not in self.minters:
            raise AuthorizationError(f"{self.symbol}: caller is not a minter")

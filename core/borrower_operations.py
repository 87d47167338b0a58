"""
Borrower Operations Model for Fluid Protocol.

Front door for trove owners. Every request is validated here against the
collateral ratio rules, then the TroveManager updates the trove and USDF is
minted or burned to match the debt change.

Rules enforced:
- Net debt of an open trove is at least MIN_NET_DEBT
- Opening in normal mode needs ICR >= MIN_COLLATERAL_RATIO (135%) and must not
  push the TCR below CCR
- Opening in recovery mode needs ICR >= CCR
- Adjustments in normal mode must leave ICR >= MCR and TCR >= CCR
- In recovery mode collateral cannot be withdrawn, and a debt increase must
  leave ICR >= CCR without lowering it

Collateral is tracked as numbers only; the caller is expected to move the
actual tokens.
"""

import logging

import fixed_point_math as fpm
from protocol_config import DEFAULT_CONFIG
from protocol_errors import ValidationError
from reentrancy_guard import GuardedComponent, non_reentrant
from trove_manager import Status

logger = logging.getLogger(__name__)


class BorrowerOperations(GuardedComponent):
    """
    Simulates the BorrowerOperations contract.
    """

    def __init__(self, trove_manager=None, usdf_token=None, price_feed=None,
                 coll_surplus_pool=None, config=None, journal=None):
        self.address = "BorrowerOperations"
        self.config = config or DEFAULT_CONFIG

        self.trove_manager = trove_manager
        self.usdf_token = usdf_token
        self.price_feed = price_feed
        self.coll_surplus_pool = coll_surplus_pool

        self._init_guard(journal)

    @non_reentrant
    def open_trove(self, owner, asset, coll, usdf_amount, prev_id=None, next_id=None):
        """
        Opens a trove and mints the borrowed USDF to the owner.

        Args:
            owner: Address of the trove owner
            asset: Collateral asset
            coll: Amount of collateral to deposit
            usdf_amount: Amount of USDF to borrow
            prev_id: SortedTroves hint
            next_id: SortedTroves hint

        Returns:
            The trove's ICR after opening
        """
        if not owner or not asset:
            raise ValidationError("Invalid owner or asset")
        if self.trove_manager.get_trove_status(owner, asset) == Status.ACTIVE:
            raise ValidationError("Trove is active")
        if coll <= 0:
            raise ValidationError("Collateral must be greater than zero")
        self._require_at_least_min_net_debt(usdf_amount)

        price = self.price_feed.get_price(asset)
        recovery_mode = self.trove_manager.check_recovery_mode(asset, price)
        icr = fpm.compute_cr(coll, usdf_amount, price)

        if recovery_mode:
            self._require_icr_is_above_ccr(icr)
        else:
            if icr < self.config.min_collateral_ratio:
                raise ValidationError(
                    "An operation that would result in ICR < MIN_COLLATERAL_RATIO is not permitted"
                )
            self._require_new_tcr_is_above_ccr(asset, coll, True, usdf_amount, True, price)

        self.trove_manager.open_trove(self, owner, asset, coll, usdf_amount, prev_id, next_id)
        self.usdf_token.mint(self, owner, usdf_amount)

        logger.info("%s opened a %s trove: coll=%d usdf=%d", owner, asset, coll, usdf_amount)
        return icr

    def add_coll(self, owner, asset, amount, prev_id=None, next_id=None):
        """Adds collateral to an active trove."""
        return self.adjust_trove(owner, asset, amount, 0, 0, False, prev_id, next_id)

    def withdraw_coll(self, owner, asset, amount, prev_id=None, next_id=None):
        """Withdraws collateral from an active trove."""
        return self.adjust_trove(owner, asset, 0, amount, 0, False, prev_id, next_id)

    def withdraw_usdf(self, owner, asset, amount, prev_id=None, next_id=None):
        """Borrows more USDF against an active trove."""
        return self.adjust_trove(owner, asset, 0, 0, amount, True, prev_id, next_id)

    def repay_usdf(self, owner, asset, amount, prev_id=None, next_id=None):
        """Repays USDF debt of an active trove."""
        return self.adjust_trove(owner, asset, 0, 0, amount, False, prev_id, next_id)

    @non_reentrant
    def adjust_trove(self, owner, asset, coll_deposit, coll_withdrawal, usdf_change, is_debt_increase,
                     prev_id=None, next_id=None):
        """
        Changes the collateral and/or debt of an active trove.

        Args:
            owner: Address of the trove owner
            asset: Collateral asset
            coll_deposit: Collateral to add
            coll_withdrawal: Collateral to withdraw
            usdf_change: USDF to borrow or repay
            is_debt_increase: True to borrow, False to repay
            prev_id: SortedTroves hint
            next_id: SortedTroves hint

        Returns:
            Tuple of (new_debt, new_coll)
        """
        if coll_deposit < 0 or coll_withdrawal < 0 or usdf_change < 0:
            raise ValidationError("Amounts must not be negative")
        if coll_deposit > 0 and coll_withdrawal > 0:
            raise ValidationError("Cannot withdraw and add coll")
        if coll_deposit == 0 and coll_withdrawal == 0 and usdf_change == 0:
            raise ValidationError("There must be either a collateral change or a debt change")
        if self.trove_manager.get_trove_status(owner, asset) != Status.ACTIVE:
            raise ValidationError("Trove is not active")

        price = self.price_feed.get_price(asset)
        recovery_mode = self.trove_manager.check_recovery_mode(asset, price)

        coll_change = coll_deposit or coll_withdrawal
        is_coll_increase = coll_deposit > 0

        data = self.trove_manager.get_entire_debt_and_coll(owner, asset)
        if coll_withdrawal > data.entire_coll:
            raise ValidationError("Cannot withdraw more collateral than the trove holds")
        if not is_debt_increase and usdf_change > data.entire_debt:
            raise ValidationError("Cannot repay more than the trove's debt")

        new_coll = data.entire_coll + coll_change if is_coll_increase else data.entire_coll - coll_change
        new_debt = data.entire_debt + usdf_change if is_debt_increase else data.entire_debt - usdf_change

        old_icr = fpm.compute_cr(data.entire_coll, data.entire_debt, price)
        new_icr = fpm.compute_cr(new_coll, new_debt, price)

        if recovery_mode:
            if coll_withdrawal > 0:
                raise ValidationError("Collateral withdrawal not permitted in Recovery Mode")
            if is_debt_increase and usdf_change > 0:
                self._require_icr_is_above_ccr(new_icr)
                if new_icr < old_icr:
                    raise ValidationError("Cannot decrease your Trove's ICR in Recovery Mode")
        else:
            if new_icr < self.config.mcr:
                raise ValidationError("An operation that would result in ICR < MCR is not permitted")
            self._require_new_tcr_is_above_ccr(
                asset, coll_change, is_coll_increase, usdf_change, is_debt_increase, price
            )

        if not is_debt_increase and usdf_change > 0:
            self._require_at_least_min_net_debt(new_debt)
            self._require_sufficient_usdf_balance(owner, usdf_change)

        new_debt, new_coll = self.trove_manager.update_trove(
            self, owner, asset, coll_change, is_coll_increase, usdf_change, is_debt_increase, prev_id, next_id
        )

        if usdf_change > 0:
            if is_debt_increase:
                self.usdf_token.mint(self, owner, usdf_change)
            else:
                self.usdf_token.burn_from(self, owner, usdf_change)

        return new_debt, new_coll

    @non_reentrant
    def close_trove(self, owner, asset):
        """
        Closes a trove. The owner repays the entire debt and gets the entire
        collateral back.

        Returns:
            Collateral returned to the owner
        """
        if self.trove_manager.get_trove_status(owner, asset) != Status.ACTIVE:
            raise ValidationError("Trove is not active")

        price = self.price_feed.get_price(asset)
        if self.trove_manager.check_recovery_mode(asset, price):
            raise ValidationError("Operation not permitted during Recovery Mode")

        data = self.trove_manager.get_entire_debt_and_coll(owner, asset)
        self._require_sufficient_usdf_balance(owner, data.entire_debt)
        self._require_new_tcr_is_above_ccr(asset, data.entire_coll, False, data.entire_debt, False, price)

        debt, coll = self.trove_manager.close_trove(self, owner, asset)
        self.usdf_token.burn_from(self, owner, debt)

        logger.info("%s closed their %s trove, repaid %d", owner, asset, debt)
        return coll

    @non_reentrant
    def claim_collateral(self, owner, asset):
        """Claims collateral left in the CollSurplusPool after a full redemption."""
        return self.coll_surplus_pool.claim_coll(self, owner, asset)

    # --- Requirements ---

    def _require_at_least_min_net_debt(self, net_debt):
        if net_debt < self.config.min_net_debt:
            raise ValidationError("Trove's net debt must be greater than minimum")

    def _require_icr_is_above_ccr(self, icr):
        if icr < self.config.ccr:
            raise ValidationError("Operation must leave trove with ICR >= CCR")

    def _require_sufficient_usdf_balance(self, owner, amount):
        if self.usdf_token.balance_of(owner) < amount:
            raise ValidationError("Caller doesnt have enough USDF to make repayment")

    def _require_new_tcr_is_above_ccr(self, asset, coll_change, is_coll_increase, debt_change,
                                      is_debt_increase, price):
        """An operation in normal mode must not push the system into recovery mode."""
        total_coll = self.trove_manager.get_entire_system_coll(asset)
        total_debt = self.trove_manager.get_entire_system_debt(asset)

        total_coll = total_coll + coll_change if is_coll_increase else total_coll - coll_change
        total_debt = total_debt + debt_change if is_debt_increase else total_debt - debt_change

        new_tcr = fpm.compute_cr(total_coll, total_debt, price)
        if new_tcr < self.config.ccr:
            raise ValidationError("An operation that would result in TCR < CCR is not permitted")

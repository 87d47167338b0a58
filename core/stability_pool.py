"""
Stability Pool Model for Fluid Protocol.

This module simulates the StabilityPool contract which holds USDF deposited by
Stability Pool depositors. When a trove is liquidated, the pool cancels the debt
against its USDF and receives the trove's collateral in exchange.

Deposits are never updated one by one. Three running values track every
depositor's share at once:

- P: product of the factors by which liquidations shrank the deposits. A
  deposit made when the product was P_snap is now worth initial * P / P_snap.
- S[asset][epoch][scale]: sum of collateral gained per unit deposited, scaled
  by P at the time of each liquidation.
- G[epoch][scale]: the same sum for FLUID rewards.

When P would fall below SCALE_FACTOR it is multiplied by SCALE_FACTOR and the
scale is incremented, so precision is kept. When a liquidation empties the pool,
every deposit is worth zero: the epoch is incremented and P restarts at 1.
"""

import logging
from dataclasses import dataclass, field

import fixed_point_math as fpm
from protocol_config import DEFAULT_CONFIG
from protocol_errors import AuthorizationError, InvariantViolation, ValidationError
from reentrancy_guard import GuardedComponent, non_reentrant

logger = logging.getLogger(__name__)


@dataclass
class Deposit:
    """Represents a user's deposit in the Stability Pool."""
    initial_value: int = 0  # USDF value at the last deposit change


@dataclass
class Snapshots:
    """Pool state when the deposit was last changed."""
    P: int = fpm.DECIMAL_PRECISION
    G: int = 0
    scale: int = 0
    epoch: int = 0
    S: dict = field(default_factory=dict)  # asset -> S


@dataclass
class DepositChange:
    """Result of a deposit or withdrawal."""
    depositor: str
    initial_deposit: int = 0       # Recorded deposit before the change
    compounded_deposit: int = 0    # Deposit after liquidation losses, before the change
    new_deposit: int = 0
    usdf_loss: int = 0             # initial_deposit - compounded_deposit
    collateral_gains: dict = field(default_factory=dict)  # asset -> collateral paid out
    fluid_gain: int = 0


class StabilityPool(GuardedComponent):
    """
    Simulates the StabilityPool contract which holds USDF deposits and absorbs
    liquidated debt.
    """

    _STATE_FIELDS = (
        "deposits",
        "deposit_snapshots",
        "total_usdf_deposits",
        "coll_balances",
        "P",
        "current_scale",
        "current_epoch",
        "epoch_to_scale_to_sum",
        "epoch_to_scale_to_g",
        "last_coll_error_offset",
        "last_usdf_loss_error_offset",
        "last_fluid_error",
    )

    def __init__(self, usdf_token=None, community_issuance=None, config=None, journal=None):
        self.address = "StabilityPool"
        self.config = config or DEFAULT_CONFIG

        # External contracts
        self.usdf_token = usdf_token
        self.community_issuance = community_issuance
        self.trove_manager = None

        # Tracker for USDF held in the pool
        self.total_usdf_deposits = 0

        # asset -> collateral gained from liquidations, not yet paid out
        self.coll_balances = {}

        # User deposits and snapshots
        self.deposits = {}            # depositor -> Deposit
        self.deposit_snapshots = {}   # depositor -> Snapshots

        # Running product P, starts at 1
        self.P = fpm.DECIMAL_PRECISION
        self.current_scale = 0
        self.current_epoch = 0

        # asset -> epoch -> scale -> S
        self.epoch_to_scale_to_sum = {}
        # epoch -> scale -> G
        self.epoch_to_scale_to_g = {}

        # Division remainders carried into the next offset / issuance
        self.last_coll_error_offset = {}
        self.last_usdf_loss_error_offset = 0
        self.last_fluid_error = 0

        self._init_guard(journal)

    # --- Getters ---

    def get_total_usdf_deposits(self):
        return self.total_usdf_deposits

    def get_collateral_balance(self, asset):
        """Returns the collateral of an asset held for depositors."""
        return self.coll_balances.get(asset, 0)

    def get_deposit(self, depositor):
        return self.deposits.get(depositor, Deposit()).initial_value

    def get_snapshots(self, depositor):
        return self.deposit_snapshots.get(depositor, Snapshots())

    def get_sum(self, asset, epoch, scale):
        return self.epoch_to_scale_to_sum.get(asset, {}).get(epoch, {}).get(scale, 0)

    def get_g(self, epoch, scale):
        return self.epoch_to_scale_to_g.get(epoch, {}).get(scale, 0)

    def get_assets(self):
        """Assets for which the pool has ever received collateral."""
        return list(self.epoch_to_scale_to_sum)

    # --- Depositor functions ---

    @non_reentrant
    def provide_to_sp(self, depositor, amount):
        """
        Allows a user to provide USDF to the Stability Pool.

        Pending collateral and FLUID gains are paid out and the deposit is
        compounded before the new USDF is added.

        Args:
            depositor: Address of the depositor
            amount: Amount of USDF to add to the pool

        Returns:
            DepositChange
        """
        if not depositor:
            raise ValidationError("Invalid depositor")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        self._trigger_fluid_issuance()

        change = self._pay_out_gains(depositor)
        change.new_deposit = change.compounded_deposit + amount

        self.usdf_token.transfer(depositor, self.address, amount)
        self.total_usdf_deposits += amount

        self._update_deposit_and_snapshots(depositor, change.new_deposit)

        logger.debug("%s deposited %d USDF, deposit now %d", depositor, amount, change.new_deposit)
        return change

    @non_reentrant
    def withdraw_from_sp(self, depositor, amount):
        """
        Allows a user to withdraw USDF from the Stability Pool.

        The amount is capped at the compounded deposit. Withdrawing 0 only pays
        out the gains.

        Args:
            depositor: Address of the depositor
            amount: Amount of USDF to withdraw

        Returns:
            DepositChange
        """
        return self._withdraw(depositor, amount)

    @non_reentrant
    def withdraw_all_from_sp(self, depositor):
        """Withdraws the whole compounded deposit and all gains."""
        return self._withdraw(depositor, None)

    def _withdraw(self, depositor, amount):
        if self.get_deposit(depositor) == 0:
            raise ValidationError("User must have a non-zero deposit")
        if amount is not None and amount < 0:
            raise ValidationError("Amount must not be negative")

        self._trigger_fluid_issuance()

        change = self._pay_out_gains(depositor)
        if amount is None:
            usdf_to_withdraw = change.compounded_deposit
        else:
            usdf_to_withdraw = min(amount, change.compounded_deposit)
        change.new_deposit = change.compounded_deposit - usdf_to_withdraw

        if usdf_to_withdraw > 0:
            self.total_usdf_deposits = fpm.sub(self.total_usdf_deposits, usdf_to_withdraw)
            self.usdf_token.transfer(self.address, depositor, usdf_to_withdraw)

        self._update_deposit_and_snapshots(depositor, change.new_deposit)

        logger.debug("%s withdrew %d USDF, deposit now %d", depositor, usdf_to_withdraw, change.new_deposit)
        return change

    def _pay_out_gains(self, depositor):
        """Pays collateral gains for every asset and the FLUID gain."""
        change = DepositChange(depositor=depositor)
        change.initial_deposit = self.get_deposit(depositor)
        change.compounded_deposit = self.get_compounded_usdf_deposit(depositor)
        change.usdf_loss = change.initial_deposit - change.compounded_deposit

        if change.initial_deposit == 0:
            return change

        for asset in self.get_assets():
            gain = self.get_depositor_collateral_gain(depositor, asset)
            if gain > 0:
                self.coll_balances[asset] = fpm.sub(self.get_collateral_balance(asset), gain)
                change.collateral_gains[asset] = gain

        change.fluid_gain = self.get_depositor_fluid_gain(depositor)
        if change.fluid_gain > 0:
            self.community_issuance.send_fluid(self, depositor, change.fluid_gain)

        return change

    def _update_deposit_and_snapshots(self, depositor, new_deposit):
        if new_deposit == 0:
            self.deposits.pop(depositor, None)
            self.deposit_snapshots.pop(depositor, None)
            return

        self.deposits[depositor] = Deposit(initial_value=new_deposit)
        self.deposit_snapshots[depositor] = Snapshots(
            P=self.P,
            G=self.get_g(self.current_epoch, self.current_scale),
            scale=self.current_scale,
            epoch=self.current_epoch,
            S={
                asset: self.get_sum(asset, self.current_epoch, self.current_scale)
                for asset in self.get_assets()
            },
        )

    # --- Liquidation functions ---

    @non_reentrant
    def offset(self, caller, asset, debt_to_offset, coll_to_add):
        """
        Cancels liquidated debt against the USDF in the pool and adds the
        liquidated collateral to the depositors' gains.

        Args:
            caller: Must be the TroveManager
            asset: Collateral asset of the liquidated troves
            debt_to_offset: Debt to cancel with USDF in the pool
            coll_to_add: Collateral to add to the pool
        """
        if caller is None or caller is not self.trove_manager:
            raise AuthorizationError("Caller is not TroveManager")

        total_usdf = self.total_usdf_deposits
        if total_usdf == 0 or debt_to_offset == 0:
            return
        if debt_to_offset > total_usdf:
            raise InvariantViolation("Debt to offset exceeds Stability Pool deposits")

        self._trigger_fluid_issuance()

        coll_gain_per_unit_staked, usdf_loss_per_unit_staked = self._compute_rewards_per_unit_staked(
            asset, coll_to_add, debt_to_offset, total_usdf
        )
        self._update_reward_sum_and_product(asset, coll_gain_per_unit_staked, usdf_loss_per_unit_staked)
        self._move_offset_coll_and_debt(asset, coll_to_add, debt_to_offset)

    def _compute_rewards_per_unit_staked(self, asset, coll_to_add, debt_to_offset, total_usdf):
        """
        Computes the collateral gain and the USDF loss per unit deposited.

        The collateral error is added to the next numerator. The loss is rounded
        up and the excess is subtracted from the next numerator, so depositors
        never claim more USDF than the pool holds. An offset of the whole pool is
        a loss of exactly 1.
        """
        coll_numerator = coll_to_add * fpm.DECIMAL_PRECISION + self.last_coll_error_offset.get(asset, 0)

        if debt_to_offset == total_usdf:
            usdf_loss_per_unit_staked = fpm.DECIMAL_PRECISION
            self.last_usdf_loss_error_offset = 0
        else:
            usdf_loss_numerator = fpm.sub(debt_to_offset * fpm.DECIMAL_PRECISION, self.last_usdf_loss_error_offset)
            usdf_loss_per_unit_staked = fpm.div(usdf_loss_numerator, total_usdf) + 1
            self.last_usdf_loss_error_offset = usdf_loss_per_unit_staked * total_usdf - usdf_loss_numerator

        coll_gain_per_unit_staked = fpm.div(coll_numerator, total_usdf)
        self.last_coll_error_offset[asset] = coll_numerator - coll_gain_per_unit_staked * total_usdf

        return coll_gain_per_unit_staked, usdf_loss_per_unit_staked

    def _update_reward_sum_and_product(self, asset, coll_gain_per_unit_staked, usdf_loss_per_unit_staked):
        """Updates S for the current epoch and scale, then P, scale and epoch."""
        current_p = self.P
        new_product_factor = fpm.sub(fpm.DECIMAL_PRECISION, usdf_loss_per_unit_staked)

        sums = self.epoch_to_scale_to_sum.setdefault(asset, {}).setdefault(self.current_epoch, {})
        sums[self.current_scale] = sums.get(self.current_scale, 0) + coll_gain_per_unit_staked * current_p

        scale_factor = self.config.scale_factor
        if new_product_factor == 0:
            # The pool was emptied: every deposit is worth zero
            self.current_epoch += 1
            self.current_scale = 0
            new_p = fpm.DECIMAL_PRECISION
            logger.info("Stability Pool emptied, starting epoch %d", self.current_epoch)
        elif current_p * new_product_factor // fpm.DECIMAL_PRECISION < scale_factor:
            new_p = current_p * new_product_factor * scale_factor // fpm.DECIMAL_PRECISION
            self.current_scale += 1
            logger.info("Stability Pool scale changed to %d", self.current_scale)
        else:
            new_p = current_p * new_product_factor // fpm.DECIMAL_PRECISION

        if new_p <= 0:
            raise InvariantViolation("P must never decrease to 0")
        self.P = new_p

    def _move_offset_coll_and_debt(self, asset, coll_to_add, debt_to_offset):
        # Cancel the debt with USDF in the pool
        self.total_usdf_deposits = fpm.sub(self.total_usdf_deposits, debt_to_offset)
        self.usdf_token.burn(self, self.address, debt_to_offset)

        self.coll_balances[asset] = self.get_collateral_balance(asset) + coll_to_add

    # --- FLUID issuance ---

    def _trigger_fluid_issuance(self):
        if self.community_issuance is None:
            return
        issuance = self.community_issuance.issue_fluid(self)
        self._update_g(issuance)

    def _update_g(self, fluid_issuance):
        """Adds newly issued FLUID to G. Issuance while the pool is empty is not distributed."""
        total_usdf = self.total_usdf_deposits
        if total_usdf == 0 or fluid_issuance == 0:
            return

        fluid_numerator = fluid_issuance * fpm.DECIMAL_PRECISION + self.last_fluid_error
        fluid_per_unit_staked = fpm.div(fluid_numerator, total_usdf)
        self.last_fluid_error = fluid_numerator - fluid_per_unit_staked * total_usdf

        gs = self.epoch_to_scale_to_g.setdefault(self.current_epoch, {})
        gs[self.current_scale] = gs.get(self.current_scale, 0) + fluid_per_unit_staked * self.P

    # --- Depositor views ---

    def get_compounded_usdf_deposit(self, depositor):
        """
        Calculates a depositor's compounded USDF deposit.

        Args:
            depositor: Address of the depositor

        Returns:
            The deposit after all liquidation losses since the last change
        """
        initial_deposit = self.get_deposit(depositor)
        if initial_deposit == 0:
            return 0

        snapshots = self.get_snapshots(depositor)

        # The pool was emptied after the deposit was made
        if snapshots.epoch < self.current_epoch:
            return 0

        scale_diff = self.current_scale - snapshots.scale
        if scale_diff == 0:
            compounded_deposit = initial_deposit * self.P // snapshots.P
        elif scale_diff == 1:
            compounded_deposit = initial_deposit * self.P // snapshots.P // self.config.scale_factor
        else:
            compounded_deposit = 0

        # Below one millionth of the initial deposit only rounding error is left
        if compounded_deposit < initial_deposit // self.config.dust_divisor:
            return 0
        return compounded_deposit

    def get_depositor_collateral_gain(self, depositor, asset):
        """
        Calculates a depositor's gain in one collateral asset.

        Gains earned in the snapshot's scale count fully; gains from the next
        scale are divided by SCALE_FACTOR. Later scales are negligible.
        """
        initial_deposit = self.get_deposit(depositor)
        if initial_deposit == 0:
            return 0

        snapshots = self.get_snapshots(depositor)
        first_portion = self.get_sum(asset, snapshots.epoch, snapshots.scale) - snapshots.S.get(asset, 0)
        second_portion = self.get_sum(asset, snapshots.epoch, snapshots.scale + 1) // self.config.scale_factor

        gain = initial_deposit * (first_portion + second_portion) // snapshots.P // fpm.DECIMAL_PRECISION
        if gain > self.get_collateral_balance(asset):
            raise InvariantViolation(f"{asset} gain of {depositor} exceeds the pool's collateral balance")
        return gain

    def get_depositor_fluid_gain(self, depositor):
        """Calculates a depositor's FLUID reward, the same way as collateral gains."""
        initial_deposit = self.get_deposit(depositor)
        if initial_deposit == 0:
            return 0

        snapshots = self.get_snapshots(depositor)
        first_portion = self.get_g(snapshots.epoch, snapshots.scale) - snapshots.G
        second_portion = self.get_g(snapshots.epoch, snapshots.scale + 1) // self.config.scale_factor

        return initial_deposit * (first_portion + second_portion) // snapshots.P // fpm.DECIMAL_PRECISION

"""
Trove Manager Model for Fluid Protocol.

This module simulates the TroveManager contract which handles the core logic for
troves: per-trove and per-asset accounting, liquidations, redistribution and
redemptions.

The TroveManager is responsible for:
1. Tracking every trove's debt, collateral and stake, keyed by (owner, asset)
2. Keeping per-asset aggregates (total stakes, collateral and debt)
3. Liquidating undercollateralized troves in normal and recovery mode
4. Redistributing debt and collateral the Stability Pool cannot absorb
5. Redeeming USDF for collateral, starting from the lowest collateral ratio

Redistribution never walks the troves. Each liquidation bumps the per-asset
accumulators L_collateral and L_debt (reward per unit of stake), and each trove
picks up stake * (L - L_snapshot) the next time it is touched.
"""

import logging
from dataclasses import dataclass
from enum import Enum

import fixed_point_math as fpm
import liquidation_helpers
from liquidation_helpers import LiquidationTotals
from protocol_config import DEFAULT_CONFIG, _100pct
from protocol_errors import AuthorizationError, InvariantViolation, ValidationError
from reentrancy_guard import GuardedComponent, non_reentrant

logger = logging.getLogger(__name__)


class Status(Enum):
    """
    Represents the possible states of a trove.

    A trove only leaves ACTIVE for one of the closed states, and only a new
    open brings a closed trove back to ACTIVE.
    """
    NON_EXISTENT = 0
    ACTIVE = 1
    CLOSED_BY_OWNER = 2
    CLOSED_BY_LIQUIDATION = 3
    CLOSED_BY_REDEMPTION = 4


@dataclass
class Trove:
    """A single borrower position for one collateral asset."""
    owner: str
    asset: str
    debt: int = 0      # Recorded USDF debt, pending redistribution excluded
    coll: int = 0      # Recorded collateral, pending redistribution excluded
    stake: int = 0     # Share of redistribution rewards
    status: Status = Status.NON_EXISTENT


@dataclass
class RewardSnapshot:
    """L_collateral and L_debt at the time of the trove's last update."""
    coll: int = 0
    debt: int = 0


@dataclass
class LatestTroveData:
    """Current state of a trove including pending redistribution rewards."""
    recorded_debt: int = 0
    recorded_coll: int = 0
    pending_debt_reward: int = 0
    pending_coll_reward: int = 0
    entire_debt: int = 0
    entire_coll: int = 0


@dataclass
class RedemptionTotals:
    """Result of a redemption."""
    usdf_redeemed: int = 0
    coll_drawn: int = 0
    troves_redeemed: int = 0
    troves_closed: int = 0


class TroveManager(GuardedComponent):
    """
    Simulates the TroveManager contract which handles trove accounting and
    liquidations.

    The TroveManager interacts with:
    - SortedTroves: ordering of active troves by NICR
    - StabilityPool: absorbs liquidated debt in exchange for collateral
    - DefaultPool: holds redistributed debt and collateral until applied
    - CollSurplusPool: holds collateral left after full redemptions
    - USDF token: burned on redemption
    - PriceFeed: collateral prices
    - BorrowerOperations: the only caller allowed to open, adjust and close troves
    """

    _STATE_FIELDS = (
        "troves",
        "reward_snapshots",
        "total_stakes",
        "total_stakes_snapshot",
        "total_collateral_snapshot",
        "total_collateral",
        "total_debt",
        "L_collateral",
        "L_debt",
        "last_coll_error_redistribution",
        "last_debt_error_redistribution",
    )

    def __init__(self, sorted_troves=None, stability_pool=None, default_pool=None,
                 coll_surplus_pool=None, usdf_token=None, price_feed=None,
                 config=None, journal=None):
        self.address = "TroveManager"
        self.config = config or DEFAULT_CONFIG

        # Connected contracts
        self.sorted_troves = sorted_troves
        self.stability_pool = stability_pool
        self.default_pool = default_pool
        self.coll_surplus_pool = coll_surplus_pool
        self.usdf_token = usdf_token
        self.price_feed = price_feed
        self.borrower_operations = None

        # (owner, asset) -> Trove / RewardSnapshot
        self.troves = {}
        self.reward_snapshots = {}

        # Per-asset aggregates
        self.total_stakes = {}
        self.total_collateral = {}
        self.total_debt = {}

        # Stake ratio as of the last liquidation
        self.total_stakes_snapshot = {}
        self.total_collateral_snapshot = {}

        # Accumulated redistribution rewards per unit staked, per asset
        self.L_collateral = {}
        self.L_debt = {}

        # Remainders of the last redistribution division, carried into the next one
        self.last_coll_error_redistribution = {}
        self.last_debt_error_redistribution = {}

        self._init_guard(journal)

    # --- Getter functions ---

    def get_trove_status(self, owner, asset):
        trove = self.troves.get((owner, asset))
        return trove.status if trove else Status.NON_EXISTENT

    def get_trove_debt_and_coll(self, owner, asset):
        """Returns the recorded (debt, coll) of a trove, pending rewards excluded."""
        trove = self.troves.get((owner, asset))
        if trove is None:
            return 0, 0
        return trove.debt, trove.coll

    def get_trove_stake(self, owner, asset):
        trove = self.troves.get((owner, asset))
        return trove.stake if trove else 0

    def get_reward_snapshot(self, owner, asset):
        return self.reward_snapshots.get((owner, asset), RewardSnapshot())

    def get_total_stakes(self, asset):
        return self.total_stakes.get(asset, 0)

    def get_total_collateral(self, asset):
        return self.total_collateral.get(asset, 0)

    def get_total_debt(self, asset):
        return self.total_debt.get(asset, 0)

    def get_l_collateral(self, asset):
        return self.L_collateral.get(asset, 0)

    def get_l_debt(self, asset):
        return self.L_debt.get(asset, 0)

    def get_pending_collateral_reward(self, owner, asset):
        """Collateral redistributed to this trove since its last update."""
        trove = self.troves.get((owner, asset))
        if trove is None or trove.status != Status.ACTIVE:
            return 0
        reward_per_unit_staked = self.get_l_collateral(asset) - self.get_reward_snapshot(owner, asset).coll
        if reward_per_unit_staked == 0:
            return 0
        return fpm.mul_div(trove.stake, reward_per_unit_staked, fpm.DECIMAL_PRECISION)

    def get_pending_debt_reward(self, owner, asset):
        """Debt redistributed to this trove since its last update."""
        trove = self.troves.get((owner, asset))
        if trove is None or trove.status != Status.ACTIVE:
            return 0
        reward_per_unit_staked = self.get_l_debt(asset) - self.get_reward_snapshot(owner, asset).debt
        if reward_per_unit_staked == 0:
            return 0
        return fpm.mul_div(trove.stake, reward_per_unit_staked, fpm.DECIMAL_PRECISION)

    def has_pending_rewards(self, owner, asset):
        """
        A trove has pending rewards if its snapshot is behind the current
        accumulators. Debt can be redistributed with no collateral (everything
        went to gas compensation), so both accumulators are compared.
        """
        if self.get_trove_status(owner, asset) != Status.ACTIVE:
            return False
        snapshot = self.get_reward_snapshot(owner, asset)
        return snapshot.coll < self.get_l_collateral(asset) or snapshot.debt < self.get_l_debt(asset)

    def get_entire_debt_and_coll(self, owner, asset):
        """
        Returns the current state of a trove with pending rewards applied.

        Args:
            owner: Owner of the trove
            asset: Collateral asset

        Returns:
            LatestTroveData
        """
        data = LatestTroveData()
        data.recorded_debt, data.recorded_coll = self.get_trove_debt_and_coll(owner, asset)
        data.pending_debt_reward = self.get_pending_debt_reward(owner, asset)
        data.pending_coll_reward = self.get_pending_collateral_reward(owner, asset)
        data.entire_debt = data.recorded_debt + data.pending_debt_reward
        data.entire_coll = data.recorded_coll + data.pending_coll_reward
        return data

    def get_nominal_icr(self, owner, asset):
        """Price-independent collateral ratio, pending rewards included."""
        data = self.get_entire_debt_and_coll(owner, asset)
        return fpm.compute_nominal_cr(data.entire_coll, data.entire_debt)

    def get_current_icr(self, owner, asset, price=None):
        """
        Calculates the current ICR (Individual Collateral Ratio) of a trove:

            ICR = (entire_coll * price) / entire_debt

        A trove without debt, including one that does not exist, has an
        infinite ratio, reported as MAX_UINT256.

        Args:
            owner: Owner of the trove
            asset: Collateral asset
            price: Collateral price; fetched from the price feed when omitted

        Returns:
            ICR in fixed point (1.5e18 for 150%)
        """
        data = self.get_entire_debt_and_coll(owner, asset)
        if data.entire_debt == 0:
            return fpm.MAX_UINT256
        if price is None:
            price = self.price_feed.get_price(asset)
        return fpm.compute_cr(data.entire_coll, data.entire_debt, price)

    def get_entire_system_coll(self, asset):
        return self.get_total_collateral(asset) + self.default_pool.get_coll_balance(asset)

    def get_entire_system_debt(self, asset):
        return self.get_total_debt(asset) + self.default_pool.get_usdf_debt(asset)

    def get_tcr(self, asset, price=None):
        """Total collateral ratio of all troves of an asset."""
        if price is None:
            price = self.price_feed.get_price(asset)
        return fpm.compute_cr(self.get_entire_system_coll(asset), self.get_entire_system_debt(asset), price)

    def check_recovery_mode(self, asset, price=None):
        return self.get_tcr(asset, price) < self.config.ccr

    # --- Trove lifecycle (BorrowerOperations only) ---

    @non_reentrant
    def open_trove(self, caller, owner, asset, coll, debt, prev_id=None, next_id=None):
        """
        Creates an active trove and inserts it into SortedTroves.

        Returns:
            The new trove's stake
        """
        self._require_caller_is_borrower_operations(caller)
        if not owner or not asset:
            raise ValidationError("Invalid owner or asset")
        if self.get_trove_status(owner, asset) == Status.ACTIVE:
            raise ValidationError("Trove is active")
        if coll <= 0 or debt <= 0:
            raise ValidationError("Collateral and debt must be greater than zero")

        trove = Trove(owner=owner, asset=asset, status=Status.ACTIVE)
        self.troves[(owner, asset)] = trove
        self._set_trove_amounts(trove, coll, debt)
        self._update_stake_and_total_stakes(trove)
        self._update_trove_reward_snapshots(trove)

        self.sorted_troves.insert(self, asset, owner, fpm.compute_nominal_cr(coll, debt), prev_id, next_id)

        logger.info("Opened trove %s/%s: coll=%d debt=%d", owner, asset, coll, debt)
        return trove.stake

    @non_reentrant
    def update_trove(self, caller, owner, asset, coll_delta, coll_up, debt_delta, debt_up,
                     prev_id=None, next_id=None):
        """
        Applies a collateral and/or debt change to an active trove.

        Pending redistribution rewards are applied first, so the change is made
        on the trove's entire debt and collateral.

        Args:
            caller: Must be BorrowerOperations
            owner: Owner of the trove
            asset: Collateral asset
            coll_delta: Collateral change, non-negative
            coll_up: True to add collateral, False to withdraw
            debt_delta: Debt change, non-negative
            debt_up: True to borrow, False to repay
            prev_id: SortedTroves hint
            next_id: SortedTroves hint

        Returns:
            Tuple of (new_debt, new_coll)
        """
        self._require_caller_is_borrower_operations(caller)
        trove = self._require_trove_is_active(owner, asset)
        if coll_delta < 0 or debt_delta < 0:
            raise ValidationError("Deltas must not be negative")

        self._apply_pending_rewards(trove)

        if coll_up:
            new_coll = fpm.add(trove.coll, coll_delta)
        elif coll_delta > trove.coll:
            raise ValidationError("Cannot withdraw more collateral than the trove holds")
        else:
            new_coll = trove.coll - coll_delta

        if debt_up:
            new_debt = fpm.add(trove.debt, debt_delta)
        elif debt_delta > trove.debt:
            raise ValidationError("Cannot repay more than the trove's debt")
        else:
            new_debt = trove.debt - debt_delta

        if new_debt == 0:
            raise ValidationError("Trove debt cannot be zero, close the trove instead")

        self._set_trove_amounts(trove, new_coll, new_debt)
        self._update_stake_and_total_stakes(trove)
        self._update_trove_reward_snapshots(trove)

        self.sorted_troves.re_insert(
            self, asset, owner, fpm.compute_nominal_cr(new_coll, new_debt), prev_id, next_id
        )
        return new_debt, new_coll

    @non_reentrant
    def close_trove(self, caller, owner, asset):
        """
        Closes a trove at its owner's request.

        Returns:
            Tuple of (debt, coll) the owner has to repay / gets back
        """
        self._require_caller_is_borrower_operations(caller)
        trove = self._require_trove_is_active(owner, asset)

        self._apply_pending_rewards(trove)
        debt, coll = trove.debt, trove.coll
        self._close_trove(trove, Status.CLOSED_BY_OWNER)

        logger.info("Closed trove %s/%s by owner", owner, asset)
        return debt, coll

    @non_reentrant
    def apply_pending_rewards(self, owner, asset):
        """Moves a trove's pending redistribution rewards into its recorded state."""
        trove = self._require_trove_is_active(owner, asset)
        self._apply_pending_rewards(trove)

    # --- Liquidation functions ---

    @non_reentrant
    def liquidate(self, owner, asset, liquidator=None):
        """
        Liquidates a single undercollateralized trove.

        Anyone can call this. It is a batch of one, so it fails with
        "Nothing to liquidate" when the trove's ICR is at or above MCR.

        Args:
            owner: Owner of the trove
            asset: Collateral asset
            liquidator: Caller, for reporting

        Returns:
            LiquidationTotals
        """
        self._require_trove_is_active(owner, asset)
        return self._batch_liquidate_troves(asset, [owner], liquidator)

    @non_reentrant
    def liquidate_troves(self, asset, n, liquidator=None):
        """
        Liquidates up to n troves starting from the lowest collateral ratio.

        Walks SortedTroves from the tail and stops at the first trove at or
        above MCR.
        """
        if n <= 0:
            raise ValidationError("Number of troves must be greater than zero")

        price = self.price_feed.get_price(asset)
        owners = []
        owner = self.sorted_troves.get_last(asset)
        while owner is not None and len(owners) < n:
            if self.get_current_icr(owner, asset, price) >= self.config.mcr:
                break
            owners.append(owner)
            owner = self.sorted_troves.get_prev(asset, owner)

        return self._batch_liquidate_troves(asset, owners, liquidator)

    @non_reentrant
    def batch_liquidate_troves(self, asset, owners, liquidator=None):
        """
        Liquidates every undercollateralized trove in the given list.

        Recovery mode is decided once, from the TCR before the first
        liquidation, and applies to the whole batch. Troves that are not active
        or are at or above MCR are skipped.

        Args:
            asset: Collateral asset
            owners: Trove owners to attempt to liquidate, in order
            liquidator: Caller, for reporting

        Returns:
            LiquidationTotals with the combined results

        Raises:
            ValidationError: If the list is empty
            InvariantViolation: If no trove was eligible for liquidation
        """
        if not owners:
            raise ValidationError("Trove array must not be empty")
        return self._batch_liquidate_troves(asset, owners, liquidator)

    def _batch_liquidate_troves(self, asset, owners, liquidator):
        price = self.price_feed.get_price(asset)
        recovery_mode = self.check_recovery_mode(asset, price)
        pool_liquidity = self.stability_pool.get_total_usdf_deposits() if self.stability_pool else 0

        totals = LiquidationTotals()
        for owner in owners:
            trove = self.troves.get((owner, asset))
            if trove is None or trove.status != Status.ACTIVE:
                continue

            icr = self.get_current_icr(owner, asset, price)
            if icr >= self.config.mcr:
                continue

            self._apply_pending_rewards(trove)
            outcome = liquidation_helpers.get_liquidation_outcome(
                trove.debt, trove.coll, price, pool_liquidity, recovery_mode, self.config
            )
            pool_liquidity -= outcome.debt_offset_by_pool

            if outcome.partial:
                self._apply_partial_liquidation(trove, outcome)
            else:
                self._close_trove(trove, Status.CLOSED_BY_LIQUIDATION)

            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Liquidated %s/%s at ICR %d: %s", owner, asset, icr, outcome)
            totals.add_outcome(outcome)

        if totals.total_debt_in_sequence == 0:
            raise InvariantViolation("Nothing to liquidate")

        if totals.total_debt_to_offset > 0:
            self.stability_pool.offset(self, asset, totals.total_debt_to_offset, totals.total_coll_to_send_to_sp)
        self._redistribute_debt_and_coll(asset, totals.total_debt_to_redistribute, totals.total_coll_to_redistribute)
        self._update_system_snapshots(asset)

        logger.info(
            "Liquidated %d troves (%d partially) of %s%s by %s: debt=%d offset=%d redistributed=%d",
            totals.troves_liquidated + totals.troves_partially_liquidated,
            totals.troves_partially_liquidated,
            asset,
            " in recovery mode" if recovery_mode else "",
            liquidator,
            totals.total_debt_in_sequence,
            totals.total_debt_to_offset,
            totals.total_debt_to_redistribute,
        )
        return totals

    def _apply_partial_liquidation(self, trove, outcome):
        """
        Keeps a recovery-mode partially liquidated trove open with the debt that
        was not liquidated. The collateral surplus goes to the CollSurplusPool
        for the owner to claim, so the trove is left with no collateral and no
        stake and takes no part in later redistributions.
        """
        remaining_debt = fpm.sub(trove.debt, outcome.entire_debt)
        self._set_trove_amounts(trove, 0, remaining_debt)
        self._update_stake_and_total_stakes(trove)
        self._update_trove_reward_snapshots(trove)
        if outcome.collateral_surplus > 0:
            self.coll_surplus_pool.account_surplus(self, trove.owner, trove.asset, outcome.collateral_surplus)
        self.sorted_troves.re_insert(
            self, trove.asset, trove.owner, fpm.compute_nominal_cr(trove.coll, trove.debt)
        )

    # --- Redistribution functions ---

    def _redistribute_debt_and_coll(self, asset, debt, coll):
        """
        Redistributes debt and collateral to all active troves of the asset.

        The amounts go to the DefaultPool and L_collateral / L_debt grow by the
        reward per unit staked. The division remainder is kept and added to the
        numerator of the next redistribution, so rounding never accumulates.
        """
        if debt == 0 and coll == 0:
            return

        total_stakes = self.get_total_stakes(asset)
        if total_stakes == 0:
            raise InvariantViolation(f"Cannot redistribute {asset} debt with zero total stakes")

        coll_numerator = coll * fpm.DECIMAL_PRECISION + self.last_coll_error_redistribution.get(asset, 0)
        debt_numerator = debt * fpm.DECIMAL_PRECISION + self.last_debt_error_redistribution.get(asset, 0)

        coll_reward_per_unit_staked = fpm.div(coll_numerator, total_stakes)
        debt_reward_per_unit_staked = fpm.div(debt_numerator, total_stakes)

        self.last_coll_error_redistribution[asset] = coll_numerator - coll_reward_per_unit_staked * total_stakes
        self.last_debt_error_redistribution[asset] = debt_numerator - debt_reward_per_unit_staked * total_stakes

        self.L_collateral[asset] = fpm.add(self.get_l_collateral(asset), coll_reward_per_unit_staked)
        self.L_debt[asset] = fpm.add(self.get_l_debt(asset), debt_reward_per_unit_staked)

        self.default_pool.increase_balances(self, asset, coll, debt)

    def _apply_pending_rewards(self, trove):
        """Adds pending redistribution rewards to the trove and the aggregates."""
        if not self.has_pending_rewards(trove.owner, trove.asset):
            return

        pending_coll = self.get_pending_collateral_reward(trove.owner, trove.asset)
        pending_debt = self.get_pending_debt_reward(trove.owner, trove.asset)

        self._set_trove_amounts(trove, trove.coll + pending_coll, trove.debt + pending_debt)
        self._update_trove_reward_snapshots(trove)
        self.default_pool.decrease_balances(self, trove.asset, pending_coll, pending_debt)

    def _update_trove_reward_snapshots(self, trove):
        self.reward_snapshots[(trove.owner, trove.asset)] = RewardSnapshot(
            coll=self.get_l_collateral(trove.asset),
            debt=self.get_l_debt(trove.asset),
        )

    def _update_system_snapshots(self, asset):
        """
        Records the stake / collateral ratio after a liquidation batch. Gas
        compensation has already left the aggregates, so it is excluded.
        """
        self.total_stakes_snapshot[asset] = self.get_total_stakes(asset)
        self.total_collateral_snapshot[asset] = self.get_entire_system_coll(asset)

    def _compute_new_stake(self, asset, coll):
        coll_snapshot = self.total_collateral_snapshot.get(asset, 0)
        stakes_snapshot = self.total_stakes_snapshot.get(asset, 0)
        if coll_snapshot == 0 or stakes_snapshot == 0:
            return coll
        return fpm.mul_div(coll, stakes_snapshot, coll_snapshot)

    def _update_stake_and_total_stakes(self, trove):
        old_stake = trove.stake
        trove.stake = self._compute_new_stake(trove.asset, trove.coll)
        self.total_stakes[trove.asset] = fpm.sub(self.get_total_stakes(trove.asset), old_stake) + trove.stake
        return trove.stake

    def _set_trove_amounts(self, trove, new_coll, new_debt):
        """Sets a trove's recorded collateral and debt, keeping the aggregates in sync."""
        asset = trove.asset
        self.total_collateral[asset] = fpm.sub(self.get_total_collateral(asset), trove.coll) + new_coll
        self.total_debt[asset] = fpm.sub(self.get_total_debt(asset), trove.debt) + new_debt
        trove.coll = new_coll
        trove.debt = new_debt

    def _close_trove(self, trove, status):
        """
        Zeroes a trove, removes it from the aggregates and SortedTroves and
        sets its terminal status.
        """
        self._set_trove_amounts(trove, 0, 0)
        self.total_stakes[trove.asset] = fpm.sub(self.get_total_stakes(trove.asset), trove.stake)
        trove.stake = 0
        trove.status = status
        self.reward_snapshots.pop((trove.owner, trove.asset), None)
        self.sorted_troves.remove(self, trove.asset, trove.owner)

    # --- Redemption functions ---

    @non_reentrant
    def redeem_collateral(self, redeemer, asset, usdf_amount, max_iterations=0):
        """
        Redeems USDF for collateral at face value.

        Troves are processed from the lowest collateral ratio upward, skipping
        those under 100% at the tail so a redemption never lowers a trove's
        ratio. A trove redeemed down to zero debt is closed and its remaining
        collateral goes to the CollSurplusPool for the owner to claim.

        Args:
            redeemer: Holder of the USDF
            asset: Collateral asset to redeem
            usdf_amount: Amount of USDF to redeem
            max_iterations: Maximum number of troves to process (0 for unlimited)

        Returns:
            RedemptionTotals

        Raises:
            ValidationError: On a zero amount, insufficient balance or TCR < 100%
            InvariantViolation: If nothing could be redeemed
        """
        if usdf_amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if self.usdf_token.balance_of(redeemer) < usdf_amount:
            raise ValidationError("Insufficient USDF balance")

        price = self.price_feed.get_price(asset)
        if self.get_tcr(asset, price) < _100pct:
            raise ValidationError("Cannot redeem when TCR < 100%")

        owner = self.sorted_troves.get_last(asset)
        while owner is not None and self.get_current_icr(owner, asset, price) < _100pct:
            owner = self.sorted_troves.get_prev(asset, owner)

        totals = RedemptionTotals()
        remaining_usdf = usdf_amount
        iterations = 0
        while owner is not None and remaining_usdf > 0:
            if max_iterations and iterations >= max_iterations:
                break
            iterations += 1

            # Save the next trove before this one is possibly removed
            next_owner = self.sorted_troves.get_prev(asset, owner)

            usdf_lot, coll_lot, closed = self._redeem_collateral_from_trove(owner, asset, remaining_usdf, price)
            totals.usdf_redeemed += usdf_lot
            totals.coll_drawn += coll_lot
            totals.troves_redeemed += 1
            totals.troves_closed += int(closed)

            remaining_usdf -= usdf_lot
            owner = next_owner

        if totals.usdf_redeemed == 0:
            raise InvariantViolation("Unable to redeem any amount")

        self.usdf_token.burn_from(self, redeemer, totals.usdf_redeemed)

        logger.info(
            "%s redeemed %d USDF for %d %s from %d troves",
            redeemer, totals.usdf_redeemed, totals.coll_drawn, asset, totals.troves_redeemed,
        )
        return totals

    def _redeem_collateral_from_trove(self, owner, asset, max_usdf_amount, price):
        """
        Redeems as much as possible from one trove.

        Returns:
            Tuple of (usdf_lot, coll_lot, closed)
        """
        trove = self.troves[(owner, asset)]
        self._apply_pending_rewards(trove)

        usdf_lot = min(max_usdf_amount, trove.debt)
        coll_lot = min(fpm.mul_div(usdf_lot, fpm.DECIMAL_PRECISION, price), trove.coll)

        new_debt = trove.debt - usdf_lot
        new_coll = trove.coll - coll_lot

        if new_debt == 0:
            self._set_trove_amounts(trove, new_coll, 0)
            self._close_trove(trove, Status.CLOSED_BY_REDEMPTION)
            if new_coll > 0:
                self.coll_surplus_pool.account_surplus(self, owner, asset, new_coll)
            return usdf_lot, coll_lot, True

        self._set_trove_amounts(trove, new_coll, new_debt)
        self._update_stake_and_total_stakes(trove)
        self._update_trove_reward_snapshots(trove)
        self.sorted_troves.re_insert(self, asset, owner, fpm.compute_nominal_cr(new_coll, new_debt))
        return usdf_lot, coll_lot, False

    # --- Requirements ---

    def _require_caller_is_borrower_operations(self, caller):
        if caller is None or caller is not self.borrower_operations:
            raise AuthorizationError("Caller is not BorrowerOperations")

    def _require_trove_is_active(self, owner, asset):
        trove = self.troves.get((owner, asset))
        if trove is None or trove.status != Status.ACTIVE:
            raise ValidationError("Trove is not active")
        return trove

"""
Economic Model for Fluid Protocol.

This main module combines all the individual components to create a complete
economic model of the Fluid Protocol stablecoin system. It wires one instance of
every contract together, keeps a wallet of the collateral paid out to each
account and can simulate random market scenarios.

All amounts are 18-digit fixed-point ints; use fixed_point_math.to_fixed to
convert human-readable values.
"""

import logging

import numpy as np
import matplotlib.pyplot as plt

import fixed_point_math as fpm
from borrower_operations import BorrowerOperations
from coll_surplus_pool import CollSurplusPool
from community_issuance import CommunityIssuance
from default_pool import DefaultPool
from price_feed import PriceFeed
from protocol_config import ProtocolConfig
from protocol_errors import InvariantViolation
from reentrancy_guard import StateJournal
from sorted_troves import SortedTroves
from stability_pool import StabilityPool
from tokens import Token
from trove_manager import TroveManager

logger = logging.getLogger(__name__)

DEFAULT_ASSET = "ETH"
SECONDS_IN_ONE_DAY = 24 * 60 * 60


class FluidProtocolEconomicModel:
    """
    Complete economic model of the Fluid Protocol.
    Combines all components and provides simulation capabilities.
    """

    def __init__(self, initial_prices=None, config=None, start_time=0):
        self.config = (config or ProtocolConfig()).validate()

        # Current time for simulation, also drives FLUID issuance
        self.current_time = start_time

        # Every component joins one journal so an aborted operation rolls back everywhere
        self.journal = StateJournal()

        # Set up price feed
        if initial_prices is None:
            initial_prices = {DEFAULT_ASSET: fpm.to_fixed(2000)}
        self.price_feed = PriceFeed(initial_prices)
        self.asset = next(iter(initial_prices))

        # Create tokens
        self.usdf_token = Token("USDF", owner=self, journal=self.journal)
        self.fluid_token = Token("FLUID", owner=self, journal=self.journal)

        # Create pools and the sorted list
        self.sorted_troves = SortedTroves(self.config.sorted_troves_max_size, journal=self.journal)
        self.default_pool = DefaultPool(journal=self.journal)
        self.coll_surplus_pool = CollSurplusPool(journal=self.journal)
        self.community_issuance = CommunityIssuance(
            self.fluid_token, self.config, clock=lambda: self.current_time, journal=self.journal
        )
        self.stability_pool = StabilityPool(
            self.usdf_token, self.community_issuance, self.config, journal=self.journal
        )

        # Create trove manager and front door
        self.trove_manager = TroveManager(
            sorted_troves=self.sorted_troves,
            stability_pool=self.stability_pool,
            default_pool=self.default_pool,
            coll_surplus_pool=self.coll_surplus_pool,
            usdf_token=self.usdf_token,
            price_feed=self.price_feed,
            config=self.config,
            journal=self.journal,
        )
        self.borrower_operations = BorrowerOperations(
            trove_manager=self.trove_manager,
            usdf_token=self.usdf_token,
            price_feed=self.price_feed,
            coll_surplus_pool=self.coll_surplus_pool,
            config=self.config,
            journal=self.journal,
        )

        # Link components
        self.sorted_troves.trove_manager = self.trove_manager
        self.default_pool.trove_manager = self.trove_manager
        self.coll_surplus_pool.trove_manager = self.trove_manager
        self.coll_surplus_pool.borrower_operations = self.borrower_operations
        self.stability_pool.trove_manager = self.trove_manager
        self.community_issuance.stability_pool = self.stability_pool
        self.trove_manager.borrower_operations = self.borrower_operations

        # Allowed minters
        self.usdf_token.add_minter(self, self.borrower_operations)
        self.usdf_token.add_minter(self, self.trove_manager)
        self.usdf_token.add_minter(self, self.stability_pool)
        self.fluid_token.add_minter(self, self.community_issuance)
        self.community_issuance.fund()

        # (account, asset) -> collateral paid out by the protocol
        self.collateral_balances = {}

        # History tracking for simulations
        self.price_history = []
        self.total_coll_history = []
        self.total_debt_history = []
        self.active_troves_history = []
        self.tcr_history = []
        self._update_history()

    # --- Wallet ---

    def get_collateral_balance(self, account, asset=None):
        """Collateral the protocol has paid out to an account."""
        return self.collateral_balances.get((account, asset or self.asset), 0)

    def _credit_collateral(self, account, asset, amount):
        if amount > 0:
            key = (account, asset)
            self.collateral_balances[key] = self.collateral_balances.get(key, 0) + amount

    # --- Borrower actions ---

    def get_insert_hints(self, coll, debt, asset=None):
        """Finds (prev_id, next_id) hints for a trove with the given amounts."""
        nicr = fpm.compute_nominal_cr(coll, debt)
        return self.sorted_troves.find_insert_position(asset or self.asset, nicr)

    def open_trove(self, owner, collateral, usdf_amount, asset=None):
        """
        Opens a new trove.

        Args:
            owner: Address of the trove owner
            collateral: Amount of collateral to deposit
            usdf_amount: Amount of USDF to borrow
            asset: Collateral asset, the model's default asset if omitted

        Returns:
            The ICR of the new trove
        """
        asset = asset or self.asset
        prev_id, next_id = self.get_insert_hints(collateral, usdf_amount, asset)
        icr = self.borrower_operations.open_trove(owner, asset, collateral, usdf_amount, prev_id, next_id)

        self._update_history()
        return icr

    def adjust_trove(self, owner, coll_deposit=0, coll_withdrawal=0, usdf_change=0,
                     is_debt_increase=False, asset=None):
        """Adjusts a trove; withdrawn collateral goes to the owner's wallet."""
        asset = asset or self.asset
        result = self.borrower_operations.adjust_trove(
            owner, asset, coll_deposit, coll_withdrawal, usdf_change, is_debt_increase
        )
        self._credit_collateral(owner, asset, coll_withdrawal)

        self._update_history()
        return result

    def close_trove(self, owner, asset=None):
        """Closes a trove; the collateral goes to the owner's wallet."""
        asset = asset or self.asset
        coll = self.borrower_operations.close_trove(owner, asset)
        self._credit_collateral(owner, asset, coll)

        self._update_history()
        return coll

    def claim_collateral(self, owner, asset=None):
        """Claims collateral left after a full redemption."""
        asset = asset or self.asset
        coll = self.borrower_operations.claim_collateral(owner, asset)
        self._credit_collateral(owner, asset, coll)
        return coll

    # --- Stability Pool actions ---

    def provide_to_stability_pool(self, depositor, amount):
        """
        Provides USDF to the Stability Pool.

        Args:
            depositor: Address of the depositor
            amount: Amount of USDF to provide

        Returns:
            DepositChange
        """
        change = self.stability_pool.provide_to_sp(depositor, amount)
        self._credit_gains(change)

        self._update_history()
        return change

    def withdraw_from_stability_pool(self, depositor, amount=None):
        """
        Withdraws USDF from the Stability Pool, everything if amount is None.

        Returns:
            DepositChange
        """
        if amount is None:
            change = self.stability_pool.withdraw_all_from_sp(depositor)
        else:
            change = self.stability_pool.withdraw_from_sp(depositor, amount)
        self._credit_gains(change)

        self._update_history()
        return change

    def _credit_gains(self, change):
        for asset, gain in change.collateral_gains.items():
            self._credit_collateral(change.depositor, asset, gain)

    # --- Liquidations and redemptions ---

    def liquidate_trove(self, owner, liquidator="liquidator", asset=None):
        """
        Liquidates a single trove.

        Returns:
            LiquidationTotals with the results
        """
        asset = asset or self.asset
        results = self.trove_manager.liquidate(owner, asset, liquidator)
        self._credit_collateral(liquidator, asset, results.total_gas_compensation)

        self._update_history()
        return results

    def batch_liquidate_troves(self, owners, liquidator="liquidator", asset=None):
        """
        Liquidates multiple troves in a batch.

        Returns:
            LiquidationTotals with the combined results
        """
        asset = asset or self.asset
        results = self.trove_manager.batch_liquidate_troves(asset, owners, liquidator)
        self._credit_collateral(liquidator, asset, results.total_gas_compensation)

        self._update_history()
        return results

    def redeem_collateral(self, redeemer, usdf_amount, max_iterations=0, asset=None):
        """
        Redeems collateral in exchange for USDF.

        Returns:
            RedemptionTotals
        """
        asset = asset or self.asset
        results = self.trove_manager.redeem_collateral(redeemer, asset, usdf_amount, max_iterations)
        self._credit_collateral(redeemer, asset, results.coll_drawn)

        self._update_history()
        return results

    def get_liquidatable_troves(self, asset=None, price=None):
        """Owners of troves below MCR, lowest ICR first."""
        asset = asset or self.asset
        if price is None:
            price = self.price_feed.get_price(asset)

        liquidatable = []
        owner = self.sorted_troves.get_last(asset)
        while owner is not None:
            if self.trove_manager.get_current_icr(owner, asset, price) >= self.config.mcr:
                break
            liquidatable.append(owner)
            owner = self.sorted_troves.get_prev(asset, owner)
        return liquidatable

    def update_price(self, new_price, asset=None, liquidator="keeper"):
        """
        Updates the collateral price and liquidates every trove below MCR.

        Args:
            new_price: New fixed-point price
            asset: Collateral asset
            liquidator: Receives the gas compensation

        Returns:
            List of liquidated trove owners
        """
        asset = asset or self.asset
        self.price_feed.set_price(asset, new_price)

        liquidatable_troves = self.get_liquidatable_troves(asset, new_price)
        if liquidatable_troves:
            try:
                results = self.trove_manager.batch_liquidate_troves(asset, liquidatable_troves, liquidator)
                self._credit_collateral(liquidator, asset, results.total_gas_compensation)
            except InvariantViolation as e:
                # The batch was rolled back; the troves stay open until it can go through
                logger.warning("Liquidation of %d troves failed: %s", len(liquidatable_troves), e)
                liquidatable_troves = []

        self._update_history()
        return liquidatable_troves

    def update_time(self, seconds):
        """
        Advances the simulation by the specified number of seconds.
        """
        self.current_time += seconds
        self._update_history()

    # --- Reporting ---

    def get_system_state(self, asset=None):
        """
        Returns the current state of the system for one asset.

        Returns:
            Dictionary with system state, amounts as floats
        """
        asset = asset or self.asset
        price = self.price_feed.get_price(asset)
        tcr = self.trove_manager.get_tcr(asset, price)

        return {
            'price': fpm.from_fixed(price),
            'active_coll': fpm.from_fixed(self.trove_manager.get_total_collateral(asset)),
            'active_debt': fpm.from_fixed(self.trove_manager.get_total_debt(asset)),
            'default_coll': fpm.from_fixed(self.default_pool.get_coll_balance(asset)),
            'default_debt': fpm.from_fixed(self.default_pool.get_usdf_debt(asset)),
            'stability_coll': fpm.from_fixed(self.stability_pool.get_collateral_balance(asset)),
            'stability_usdf': fpm.from_fixed(self.stability_pool.get_total_usdf_deposits()),
            'surplus_coll': fpm.from_fixed(self.coll_surplus_pool.get_coll_balance(asset)),
            'total_coll': fpm.from_fixed(self.trove_manager.get_entire_system_coll(asset)),
            'total_debt': fpm.from_fixed(self.trove_manager.get_entire_system_debt(asset)),
            'tcr': float('inf') if tcr == fpm.MAX_UINT256 else fpm.from_fixed(tcr),
            'recovery_mode': tcr < self.config.ccr,
            'active_troves': self.sorted_troves.get_size(asset),
            'fluid_issued': fpm.from_fixed(self.community_issuance.total_fluid_issued),
        }

    def _update_history(self):
        """Updates history tracking for simulations."""
        state = self.get_system_state()

        self.price_history.append(state['price'])
        self.total_coll_history.append(state['total_coll'])
        self.total_debt_history.append(state['total_debt'])
        self.active_troves_history.append(state['active_troves'])
        self.tcr_history.append(state['tcr'])

    def simulate_market_scenario(self, days, price_volatility=0.02, plot_results=True, seed=None):
        """
        Runs a simulation with random price movements over the specified period.

        Args:
            days: Number of days to simulate
            price_volatility: Daily price volatility (standard deviation of log returns)
            plot_results: Whether to plot the results
            seed: Seed for the random price path

        Returns:
            Dictionary with simulation results
        """
        steps = days * 24  # hourly steps
        step_size = SECONDS_IN_ONE_DAY // 24

        # Reset history
        state = self.get_system_state()
        self.price_history = [state['price']]
        self.total_coll_history = [state['total_coll']]
        self.total_debt_history = [state['total_debt']]
        self.active_troves_history = [state['active_troves']]
        self.tcr_history = [state['tcr']]

        # Generate random price movements (log-normal)
        rng = np.random.default_rng(seed)
        price = state['price']
        hourly_volatility = price_volatility / np.sqrt(24)
        log_returns = rng.normal(0, hourly_volatility, steps)
        time_points = np.zeros(steps)

        liquidations = 0
        for i in range(steps):
            price *= np.exp(log_returns[i])
            liquidations += len(self.update_price(fpm.to_fixed(float(price))))

            self.current_time += step_size
            time_points[i] = self.current_time / SECONDS_IN_ONE_DAY

        # update_price records exactly one history entry per step
        if plot_results:
            fig, axs = plt.subplots(5, 1, figsize=(12, 20), sharex=True)

            axs[0].plot(time_points, self.price_history[1:])
            axs[0].set_title(f'{self.asset} Price')
            axs[0].set_ylabel('USD')

            axs[1].plot(time_points, self.total_debt_history[1:])
            axs[1].set_title('Total System Debt')
            axs[1].set_ylabel('USDF')

            axs[2].plot(time_points, self.total_coll_history[1:])
            axs[2].set_title('Total Collateral')
            axs[2].set_ylabel(self.asset)

            axs[3].plot(time_points, self.active_troves_history[1:])
            axs[3].set_title('Active Troves')
            axs[3].set_ylabel('Count')

            axs[4].plot(time_points, self.tcr_history[1:])
            axs[4].set_title('Total Collateralization Ratio')
            axs[4].set_ylabel('Ratio')
            axs[4].set_xlabel('Days')

            plt.tight_layout()
            plt.show()

        final_state = self.get_system_state()
        return {
            'final_price': final_state['price'],
            'final_system_debt': final_state['total_debt'],
            'final_collateral': final_state['total_coll'],
            'active_troves': final_state['active_troves'],
            'liquidations': liquidations,
            'final_tcr': final_state['tcr'],
            'fluid_issued': final_state['fluid_issued'],
        }

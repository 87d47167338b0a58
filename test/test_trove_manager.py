"""
Unit tests for the TroveManager module of the Fluid protocol.

Troves are opened through the full economic model so that every collaborator
(SortedTroves, pools, tokens) is wired exactly as in a simulation.
"""

import unittest
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))

import fixed_point_math as fpm
from economic_model import FluidProtocolEconomicModel
from fixed_point_math import DECIMAL_PRECISION, MAX_UINT256, to_fixed
from protocol_config import MCR
from protocol_errors import AuthorizationError, InvariantViolation, ReentrancyError, ValidationError
from trove_manager import Status

ETH = "ETH"
DP = DECIMAL_PRECISION


class TestTroveManager(unittest.TestCase):
    def setUp(self):
        """Set up the test environment."""
        # Open at $3000 so troves can become liquidatable later
        self.protocol = FluidProtocolEconomicModel({ETH: to_fixed(3000)})
        self.tm = self.protocol.trove_manager
        self.sp = self.protocol.stability_pool
        self.sorted_troves = self.protocol.sorted_troves
        self.default_pool = self.protocol.default_pool
        self.usdf = self.protocol.usdf_token

        # Users for testing
        self.whale = "Whale"
        self.alice = "Alice"
        self.bob = "Bob"
        self.carol = "Carol"

    def open(self, owner, coll, debt):
        self.protocol.open_trove(owner, to_fixed(coll), to_fixed(debt))

    def set_price(self, price):
        self.protocol.price_feed.set_price(ETH, to_fixed(price))

    def assert_stakes_consistent(self):
        active = [o for o in self.sorted_troves.iter_troves(ETH)]
        self.assertEqual(sum(self.tm.get_trove_stake(o, ETH) for o in active), self.tm.get_total_stakes(ETH))

    def test_current_icr(self):
        """ICR is coll * price / debt."""
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 15_000)
        self.set_price(1000)

        expected = fpm.mul_div(10 * DP, 1000 * DP, 15_000 * DP)
        self.assertEqual(self.tm.get_current_icr(self.alice, ETH), expected)
        self.assertLess(expected, MCR)
        self.assertLess(expected, self.protocol.config.ccr)

    def test_icr_of_trove_without_debt_is_max(self):
        self.assertEqual(self.tm.get_current_icr("nobody", ETH), MAX_UINT256)
        self.assertEqual(self.tm.get_nominal_icr("nobody", ETH), MAX_UINT256)
        self.assertEqual(self.tm.get_trove_status("nobody", ETH), Status.NON_EXISTENT)

    def test_liquidation_redistributes_without_stability_pool(self):
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 15_000)
        self.set_price(1000)

        totals = self.tm.liquidate(self.alice, ETH, "keeper")

        gas_compensation = DP // 10  # $100 of ETH at $1000
        self.assertEqual(totals.troves_liquidated, 1)
        self.assertEqual(totals.total_gas_compensation, gas_compensation)
        self.assertEqual(totals.total_debt_to_offset, 0)
        self.assertEqual(totals.total_debt_to_redistribute, 15_000 * DP)
        self.assertEqual(totals.total_coll_to_redistribute, 10 * DP - gas_compensation)

        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.CLOSED_BY_LIQUIDATION)
        self.assertFalse(self.sorted_troves.contains(ETH, self.alice))
        self.assertEqual(self.tm.get_trove_debt_and_coll(self.alice, ETH), (0, 0))

        # The whale holds all remaining stake and gets everything
        self.assertEqual(self.tm.get_pending_debt_reward(self.whale, ETH), 15_000 * DP)
        self.assertEqual(self.tm.get_pending_collateral_reward(self.whale, ETH), 10 * DP - gas_compensation)
        self.assertEqual(self.default_pool.get_usdf_debt(ETH), 15_000 * DP)
        self.assertEqual(self.tm.get_entire_system_debt(ETH), 35_000 * DP)
        self.assertEqual(self.tm.get_entire_system_coll(ETH), 110 * DP - gas_compensation)

        # Stake snapshots exclude the gas compensation
        self.assertEqual(self.tm.total_stakes_snapshot[ETH], 100 * DP)
        self.assertEqual(self.tm.total_collateral_snapshot[ETH], 110 * DP - gas_compensation)
        self.assert_stakes_consistent()

    def test_pending_rewards_are_applied_on_touch(self):
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 15_000)
        self.set_price(1000)
        self.tm.liquidate(self.alice, ETH)

        self.assertTrue(self.tm.has_pending_rewards(self.whale, ETH))
        data = self.tm.get_entire_debt_and_coll(self.whale, ETH)
        self.assertEqual(data.entire_debt, 35_000 * DP)

        self.tm.apply_pending_rewards(self.whale, ETH)

        self.assertFalse(self.tm.has_pending_rewards(self.whale, ETH))
        self.assertEqual(self.tm.get_trove_debt_and_coll(self.whale, ETH), (data.entire_debt, data.entire_coll))
        self.assertEqual(self.default_pool.get_usdf_debt(ETH), 0)
        self.assertEqual(self.default_pool.get_coll_balance(ETH), 0)
        self.assertEqual(self.tm.get_total_debt(ETH), 35_000 * DP)
        snapshot = self.tm.get_reward_snapshot(self.whale, ETH)
        self.assertEqual(snapshot.coll, self.tm.get_l_collateral(ETH))
        self.assertEqual(snapshot.debt, self.tm.get_l_debt(ETH))

    def test_liquidation_offset_by_stability_pool(self):
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 15_000)
        self.protocol.provide_to_stability_pool(self.whale, 20_000 * DP)
        self.set_price(1000)

        totals = self.tm.liquidate(self.alice, ETH)

        self.assertEqual(totals.total_debt_to_offset, 15_000 * DP)
        self.assertEqual(totals.total_debt_to_redistribute, 0)
        self.assertEqual(self.sp.get_total_usdf_deposits(), 5_000 * DP)
        self.assertEqual(self.sp.get_collateral_balance(ETH), 10 * DP - DP // 10)
        self.assertEqual(self.sp.get_depositor_collateral_gain(self.whale, ETH), 10 * DP - DP // 10)
        self.assertLessEqual(self.sp.get_compounded_usdf_deposit(self.whale), 5_000 * DP)
        self.assertAlmostEqual(self.sp.get_compounded_usdf_deposit(self.whale), 5_000 * DP, delta=10**6)

        # Offset USDF was burned: only Alice's borrowed USDF is left outside the pool
        self.assertEqual(self.usdf.total_supply, 20_000 * DP)
        self.assertEqual(self.default_pool.get_usdf_debt(ETH), 0)
        self.assertEqual(self.tm.get_l_debt(ETH), 0)

    def test_cannot_liquidate_healthy_trove(self):
        self.open(self.whale, 100, 20_000)
        with self.assertRaises(InvariantViolation) as context:
            self.tm.liquidate(self.whale, ETH)
        self.assertIn("Nothing to liquidate", str(context.exception))

    def test_cannot_liquidate_inactive_trove(self):
        with self.assertRaises(ValidationError) as context:
            self.tm.liquidate(self.alice, ETH)
        self.assertIn("Trove is not active", str(context.exception))

    def test_batch_liquidation_requires_troves(self):
        with self.assertRaises(ValidationError):
            self.tm.batch_liquidate_troves(ETH, [])

    def test_batch_liquidation_skips_healthy_and_unknown_troves(self):
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 15_000)
        self.open(self.bob, 10, 14_000)
        self.set_price(1000)

        totals = self.tm.batch_liquidate_troves(ETH, [self.whale, "nobody", self.alice, self.bob, self.alice])

        self.assertEqual(totals.troves_liquidated, 2)
        self.assertEqual(totals.total_debt_in_sequence, 29_000 * DP)
        self.assertEqual(self.tm.get_trove_status(self.whale, ETH), Status.ACTIVE)
        self.assertEqual(self.sorted_troves.get_size(ETH), 1)
        self.assert_stakes_consistent()

    def test_liquidate_troves_walks_from_the_lowest_icr(self):
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 15_000)
        self.open(self.bob, 10, 14_000)
        self.open(self.carol, 10, 13_000)
        self.set_price(1000)

        totals = self.tm.liquidate_troves(ETH, 2)

        self.assertEqual(totals.troves_liquidated, 2)
        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.CLOSED_BY_LIQUIDATION)
        self.assertEqual(self.tm.get_trove_status(self.bob, ETH), Status.CLOSED_BY_LIQUIDATION)
        self.assertEqual(self.tm.get_trove_status(self.carol, ETH), Status.ACTIVE)

    def test_l_accumulators_never_decrease(self):
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 15_000)
        self.open(self.bob, 10, 14_000)
        self.set_price(1000)

        previous = (self.tm.get_l_collateral(ETH), self.tm.get_l_debt(ETH))
        for owner in (self.alice, self.bob):
            self.tm.liquidate(owner, ETH)
            current = (self.tm.get_l_collateral(ETH), self.tm.get_l_debt(ETH))
            self.assertGreater(current[0], previous[0])
            self.assertGreater(current[1], previous[1])
            previous = current
        self.assert_stakes_consistent()

    def test_recovery_mode_partial_liquidation(self):
        self.open(self.whale, 100, 110_000)
        self.open(self.alice, 10, 15_000)
        price = to_fixed(1575)
        self.protocol.price_feed.set_price(ETH, price)

        self.assertTrue(self.tm.check_recovery_mode(ETH))
        icr = self.tm.get_current_icr(self.alice, ETH)
        self.assertTrue(DP < icr < MCR)

        totals = self.tm.liquidate(self.alice, ETH)

        debt_to_liquidate = fpm.mul_div(10 * DP, price, MCR)
        coll_to_liquidate = fpm.mul_div(debt_to_liquidate, MCR, price)
        surplus = 10 * DP - coll_to_liquidate
        self.assertEqual(totals.troves_partially_liquidated, 1)
        self.assertEqual(totals.total_debt_in_sequence, debt_to_liquidate)
        self.assertEqual(totals.total_coll_surplus, surplus)

        # The trove stays open with the debt that was not liquidated; the surplus is claimable
        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.ACTIVE)
        self.assertEqual(self.tm.get_trove_debt_and_coll(self.alice, ETH), (15_000 * DP - debt_to_liquidate, 0))
        self.assertEqual(self.tm.get_trove_stake(self.alice, ETH), 0)
        self.assertEqual(self.protocol.coll_surplus_pool.get_collateral(self.alice, ETH), surplus)
        self.assertEqual(self.sorted_troves.get_last(ETH), self.alice)
        self.assert_stakes_consistent()

        # Redistribution does not reach a trove without stake
        self.assertGreater(self.tm.get_l_debt(ETH), 0)
        self.assertEqual(self.tm.get_pending_debt_reward(self.alice, ETH), 0)
        self.assertEqual(self.tm.get_pending_collateral_reward(self.alice, ETH), 0)

        # What is left is liquidated in full on the next pass
        totals = self.tm.liquidate_troves(ETH, 10)
        self.assertEqual(totals.troves_liquidated, 1)
        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.CLOSED_BY_LIQUIDATION)
        self.assertEqual(self.tm.get_trove_status(self.whale, ETH), Status.ACTIVE)
        self.assertEqual(self.tm.get_entire_system_debt(ETH), 125_000 * DP)

        self.assertEqual(self.protocol.claim_collateral(self.alice), surplus)
        self.assertEqual(self.protocol.get_collateral_balance(self.alice), surplus)

    def test_partially_liquidated_troves_keep_registry_order(self):
        self.open(self.whale, 100, 110_000)
        self.open(self.carol, 5, 1800)
        self.open(self.alice, 10, 15_000)
        self.open(self.bob, 10, 14_500)
        price = to_fixed(1575)
        self.protocol.price_feed.set_price(ETH, price)
        self.assertTrue(self.tm.check_recovery_mode(ETH))

        totals = self.tm.batch_liquidate_troves(ETH, [self.alice, self.bob])
        self.assertEqual(totals.troves_partially_liquidated, 2)

        surplus = 10 * DP - fpm.mul_div(fpm.mul_div(10 * DP, price, MCR), MCR, price)
        for owner in (self.alice, self.bob):
            self.assertEqual(self.tm.get_trove_status(owner, ETH), Status.ACTIVE)
            self.assertEqual(self.tm.get_trove_stake(owner, ETH), 0)
            self.assertEqual(self.tm.get_trove_debt_and_coll(owner, ETH)[1], 0)
            self.assertEqual(self.protocol.coll_surplus_pool.get_collateral(owner, ETH), surplus)

        # A second redistribution lands only on troves with stake
        self.set_price(1000)
        self.tm.batch_liquidate_troves(ETH, [self.whale])
        self.assertEqual(self.tm.get_trove_status(self.whale, ETH), Status.CLOSED_BY_LIQUIDATION)

        order = list(self.sorted_troves.iter_troves(ETH))
        self.assertEqual(order, [self.carol, self.alice, self.bob])
        nicrs = [self.tm.get_nominal_icr(owner, ETH) for owner in order]
        self.assertEqual(nicrs, sorted(nicrs, reverse=True))
        self.assertEqual(self.tm.get_trove_debt_and_coll(self.alice, ETH)[1], 0)
        self.assertEqual(self.tm.get_pending_debt_reward(self.bob, ETH), 0)
        self.assertLess(self.tm.get_l_debt(ETH), 10**24)
        self.assert_stakes_consistent()

    def test_recovery_mode_is_decided_once_per_batch(self):
        self.open(self.whale, 60, 20_000)
        self.open(self.alice, 30, 60_000)
        self.open(self.bob, 10, 9500)
        self.protocol.provide_to_stability_pool(self.alice, 60_000 * DP)
        price = to_fixed(1000)
        self.protocol.price_feed.set_price(ETH, price)

        self.assertTrue(self.tm.check_recovery_mode(ETH))
        icr = self.tm.get_current_icr(self.bob, ETH)
        self.assertTrue(DP < icr < MCR)

        totals = self.tm.batch_liquidate_troves(ETH, [self.alice, self.bob])

        # Alice's liquidation lifts the system out of recovery mode, yet Bob is
        # still only partially liquidated, as recovery mode applied at batch start
        self.assertEqual(totals.troves_liquidated, 1)
        self.assertEqual(totals.troves_partially_liquidated, 1)
        self.assertEqual(totals.total_debt_to_offset, 60_000 * DP)
        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.CLOSED_BY_LIQUIDATION)
        self.assertEqual(self.tm.get_trove_status(self.bob, ETH), Status.ACTIVE)
        debt_to_liquidate = fpm.mul_div(10 * DP, price, MCR)
        self.assertEqual(self.tm.get_trove_debt_and_coll(self.bob, ETH), (9500 * DP - debt_to_liquidate, 0))
        self.assertFalse(self.tm.check_recovery_mode(ETH))
        self.assert_stakes_consistent()

    def test_failed_liquidation_is_rolled_back(self):
        # Only one trove: its debt cannot be redistributed to anybody
        self.open(self.alice, 10, 15_000)
        self.set_price(1000)
        stake = self.tm.get_trove_stake(self.alice, ETH)

        with self.assertRaises(InvariantViolation):
            self.tm.liquidate(self.alice, ETH)

        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.ACTIVE)
        self.assertTrue(self.sorted_troves.contains(ETH, self.alice))
        self.assertEqual(self.tm.get_total_stakes(ETH), stake)
        self.assertEqual(self.tm.get_trove_debt_and_coll(self.alice, ETH), (15_000 * DP, 10 * DP))
        self.assertEqual(self.default_pool.get_usdf_debt(ETH), 0)

    def test_failed_batch_rolls_back_every_component(self):
        self.open(self.alice, 10, 15_000)
        self.open(self.bob, 10, 15_000)
        self.protocol.provide_to_stability_pool(self.alice, 5_000 * DP)
        self.set_price(1000)
        supply = self.usdf.total_supply

        with self.assertRaises(InvariantViolation):
            self.tm.batch_liquidate_troves(ETH, [self.alice, self.bob])

        self.assertEqual(self.sp.get_total_usdf_deposits(), 5_000 * DP)
        self.assertEqual(self.sp.P, DP)
        self.assertEqual(self.sp.get_collateral_balance(ETH), 0)
        self.assertEqual(self.usdf.total_supply, supply)
        self.assertEqual(self.sorted_troves.get_size(ETH), 2)
        self.assertEqual(self.tm.get_total_debt(ETH), 30_000 * DP)

    def test_reentrant_call_is_rejected(self):
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 15_000)
        self.set_price(1000)

        get_price = self.protocol.price_feed.get_price

        def reentrant_get_price(asset):
            self.tm.liquidate(self.alice, asset)
            return get_price(asset)

        self.protocol.price_feed.get_price = reentrant_get_price
        with self.assertRaises(ReentrancyError):
            self.tm.liquidate(self.alice, ETH)
        self.protocol.price_feed.get_price = get_price

        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.ACTIVE)
        # The guard is released afterwards
        self.tm.liquidate(self.alice, ETH)
        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.CLOSED_BY_LIQUIDATION)

    def test_redemption(self):
        self.set_price(2000)
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 10_000)
        self.open(self.bob, 10, 12_000)

        results = self.protocol.redeem_collateral(self.whale, 15_000 * DP)

        # Bob has the lowest ICR and is redeemed first, then Alice
        self.assertEqual(results.usdf_redeemed, 15_000 * DP)
        self.assertEqual(results.coll_drawn, 75 * DP // 10)
        self.assertEqual(results.troves_redeemed, 2)
        self.assertEqual(results.troves_closed, 1)

        self.assertEqual(self.tm.get_trove_status(self.bob, ETH), Status.CLOSED_BY_REDEMPTION)
        self.assertEqual(self.protocol.coll_surplus_pool.get_collateral(self.bob, ETH), 4 * DP)
        self.assertEqual(self.tm.get_trove_debt_and_coll(self.alice, ETH), (7_000 * DP, 85 * DP // 10))
        self.assertEqual(self.tm.get_total_debt(ETH), 27_000 * DP)
        self.assertEqual(self.usdf.balance_of(self.whale), 5_000 * DP)
        self.assertEqual(self.protocol.get_collateral_balance(self.whale), 75 * DP // 10)
        self.assertEqual(list(self.sorted_troves.iter_troves(ETH)), [self.whale, self.alice])
        self.assert_stakes_consistent()

        # Bob claims what was left of his collateral
        self.assertEqual(self.protocol.claim_collateral(self.bob), 4 * DP)
        with self.assertRaises(ValidationError):
            self.protocol.claim_collateral(self.bob)

    def test_redemption_max_iterations(self):
        self.set_price(2000)
        self.open(self.whale, 100, 20_000)
        self.open(self.alice, 10, 10_000)
        self.open(self.bob, 10, 12_000)

        results = self.tm.redeem_collateral(self.whale, ETH, 15_000 * DP, max_iterations=1)

        self.assertEqual(results.usdf_redeemed, 12_000 * DP)
        self.assertEqual(self.tm.get_trove_status(self.alice, ETH), Status.ACTIVE)
        self.assertEqual(self.usdf.balance_of(self.whale), 8_000 * DP)

    def test_redemption_requires_balance(self):
        self.open(self.whale, 100, 20_000)
        with self.assertRaises(ValidationError):
            self.tm.redeem_collateral(self.alice, ETH, DP)
        with self.assertRaises(ValidationError):
            self.tm.redeem_collateral(self.whale, ETH, 0)

    def test_lifecycle_entry_points_are_restricted(self):
        self.open(self.whale, 100, 20_000)
        with self.assertRaises(AuthorizationError):
            self.tm.open_trove(self.alice, self.alice, ETH, 10 * DP, 5_000 * DP)
        with self.assertRaises(AuthorizationError):
            self.tm.update_trove(self.whale, self.whale, ETH, DP, True, 0, False)
        with self.assertRaises(AuthorizationError):
            self.tm.close_trove(None, self.whale, ETH)
        with self.assertRaises(AuthorizationError):
            self.default_pool.increase_balances(self.whale, ETH, 1, 1)
        with self.assertRaises(AuthorizationError) as context:
            self.sp.offset(self.whale, ETH, DP, DP)
        self.assertIn("Caller is not TroveManager", str(context.exception))


if __name__ == "__main__":
    unittest.main()

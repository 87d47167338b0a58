"""
Unit tests for the StabilityPool module of the Fluid protocol.

Offsets are driven directly with the wired TroveManager as caller, so the
product/sum arithmetic can be checked against exact values.
"""

import unittest
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))

from economic_model import FluidProtocolEconomicModel
from fixed_point_math import DECIMAL_PRECISION, from_fixed, to_fixed
from protocol_errors import AuthorizationError, InvariantViolation, ValidationError

ETH = "ETH"
DP = DECIMAL_PRECISION
ONE_YEAR = 365 * 24 * 60 * 60


class TestStabilityPool(unittest.TestCase):
    def setUp(self):
        """Set up the test environment."""
        self.protocol = FluidProtocolEconomicModel({ETH: to_fixed(2000)})
        self.sp = self.protocol.stability_pool
        self.tm = self.protocol.trove_manager
        self.usdf = self.protocol.usdf_token
        self.fluid = self.protocol.fluid_token

        self.alice = "Alice"
        self.bob = "Bob"

    def deposit(self, depositor, amount):
        """Mints USDF to the depositor and puts it in the pool."""
        self.usdf.mint(self.protocol.borrower_operations, depositor, amount)
        return self.sp.provide_to_sp(depositor, amount)

    def offset(self, debt, coll):
        self.sp.offset(self.tm, ETH, debt, coll)

    def test_initial_state(self):
        self.assertEqual(self.sp.P, DP)
        self.assertEqual(self.sp.current_epoch, 0)
        self.assertEqual(self.sp.current_scale, 0)
        self.assertEqual(self.sp.get_total_usdf_deposits(), 0)
        self.assertEqual(self.sp.get_compounded_usdf_deposit(self.alice), 0)
        self.assertEqual(self.sp.get_depositor_collateral_gain(self.alice, ETH), 0)
        self.assertEqual(self.sp.get_depositor_fluid_gain(self.alice), 0)

    def test_deposit_and_withdraw(self):
        change = self.deposit(self.alice, 1000 * DP)
        self.assertEqual(change.new_deposit, 1000 * DP)
        self.assertEqual(self.sp.get_compounded_usdf_deposit(self.alice), 1000 * DP)
        self.assertEqual(self.usdf.balance_of(self.sp.address), 1000 * DP)

        change = self.sp.withdraw_from_sp(self.alice, 400 * DP)
        self.assertEqual(change.new_deposit, 600 * DP)
        self.assertEqual(self.sp.get_deposit(self.alice), 600 * DP)
        self.assertEqual(self.usdf.balance_of(self.alice), 400 * DP)

        # Withdrawals are capped at the compounded deposit
        change = self.sp.withdraw_from_sp(self.alice, 10_000 * DP)
        self.assertEqual(change.new_deposit, 0)
        self.assertEqual(self.usdf.balance_of(self.alice), 1000 * DP)
        self.assertEqual(self.sp.get_total_usdf_deposits(), 0)
        self.assertNotIn(self.alice, self.sp.deposit_snapshots)

    def test_losses_and_gains_are_pro_rata(self):
        self.deposit(self.alice, 6000 * DP)
        self.deposit(self.bob, 4000 * DP)

        self.offset(5000 * DP, 5 * DP)

        # Loss per unit is rounded up by one wei, so deposits lose slightly more
        self.assertEqual(self.sp.P, DP // 2 - 1)
        self.assertEqual(self.sp.get_compounded_usdf_deposit(self.alice), 3000 * DP - 6000)
        self.assertEqual(self.sp.get_compounded_usdf_deposit(self.bob), 2000 * DP - 4000)
        self.assertEqual(self.sp.get_depositor_collateral_gain(self.alice, ETH), 3 * DP)
        self.assertEqual(self.sp.get_depositor_collateral_gain(self.bob, ETH), 2 * DP)
        self.assertEqual(self.sp.get_total_usdf_deposits(), 5000 * DP)
        self.assertEqual(self.sp.get_collateral_balance(ETH), 5 * DP)

        # Offset USDF is burned from the pool
        self.assertEqual(self.usdf.balance_of(self.sp.address), 5000 * DP)
        self.assertEqual(self.usdf.total_supply, 5000 * DP)

        change = self.sp.withdraw_all_from_sp(self.alice)
        self.assertEqual(change.compounded_deposit, 3000 * DP - 6000)
        self.assertEqual(change.usdf_loss, 3000 * DP + 6000)
        self.assertEqual(change.collateral_gains, {ETH: 3 * DP})
        self.assertEqual(self.usdf.balance_of(self.alice), 3000 * DP - 6000)
        self.assertEqual(self.sp.get_collateral_balance(ETH), 2 * DP)
        self.assertEqual(self.sp.get_deposit(self.alice), 0)
        self.assertLessEqual(
            self.sp.get_compounded_usdf_deposit(self.bob), self.sp.get_total_usdf_deposits()
        )

    def test_top_up_compounds_and_pays_gains(self):
        self.deposit(self.alice, 1000 * DP)
        self.offset(500 * DP, DP)

        compounded = self.sp.get_compounded_usdf_deposit(self.alice)
        change = self.deposit(self.alice, 100 * DP)

        self.assertEqual(change.compounded_deposit, compounded)
        self.assertEqual(change.new_deposit, compounded + 100 * DP)
        self.assertEqual(change.collateral_gains, {ETH: DP})
        self.assertEqual(self.sp.get_depositor_collateral_gain(self.alice, ETH), 0)
        self.assertEqual(self.sp.get_compounded_usdf_deposit(self.alice), compounded + 100 * DP)
        self.assertEqual(self.sp.get_snapshots(self.alice).S, {ETH: self.sp.get_sum(ETH, 0, 0)})

    def test_emptying_the_pool_starts_a_new_epoch(self):
        self.deposit(self.alice, 1000 * DP)

        self.offset(1000 * DP, DP)

        self.assertEqual(self.sp.current_epoch, 1)
        self.assertEqual(self.sp.current_scale, 0)
        self.assertEqual(self.sp.P, DP)
        self.assertEqual(self.sp.get_total_usdf_deposits(), 0)
        self.assertEqual(self.sp.get_compounded_usdf_deposit(self.alice), 0)
        self.assertEqual(self.sp.get_depositor_collateral_gain(self.alice, ETH), DP)

        # New deposits are unaffected by the previous epoch
        self.deposit(self.bob, 500 * DP)
        self.assertEqual(self.sp.get_compounded_usdf_deposit(self.bob), 500 * DP)
        self.assertEqual(self.sp.get_snapshots(self.bob).epoch, 1)

        change = self.sp.withdraw_all_from_sp(self.alice)
        self.assertEqual(change.compounded_deposit, 0)
        self.assertEqual(change.collateral_gains, {ETH: DP})
        self.assertEqual(self.usdf.balance_of(self.alice), 0)

    def test_scale_change(self):
        self.deposit(self.alice, 10_000 * DP)

        # Leaves 1e14 wei in the pool: P drops to ~1e10 without a scale change
        self.offset(10_000 * DP - 10**14, DP)
        self.assertEqual(self.sp.current_scale, 0)
        self.assertEqual(self.sp.P, 10**10 - 1)
        # Less than a millionth of the deposit is left, which counts as nothing
        self.assertEqual(self.sp.get_compounded_usdf_deposit(self.alice), 0)

        self.deposit(self.bob, 1000 * DP)
        self.offset(950 * DP, DP)

        self.assertEqual(self.sp.current_scale, 1)
        self.assertGreater(self.sp.P, 10**9)
        bob_deposit = self.sp.get_compounded_usdf_deposit(self.bob)
        self.assertLessEqual(bob_deposit, self.sp.get_total_usdf_deposits())
        self.assertAlmostEqual(from_fixed(bob_deposit), 50.0, delta=0.001)
        self.assertAlmostEqual(from_fixed(self.sp.get_depositor_collateral_gain(self.bob, ETH)), 1.0, delta=1e-5)

        # Gains made one scale later still reach the deposit
        self.offset(DP, DP)
        self.assertEqual(self.sp.current_scale, 1)
        self.assertAlmostEqual(from_fixed(self.sp.get_depositor_collateral_gain(self.bob, ETH)), 2.0, delta=1e-5)

    def test_fluid_rewards_are_pro_rata(self):
        self.deposit(self.alice, 6000 * DP)
        self.deposit(self.bob, 4000 * DP)

        self.protocol.update_time(ONE_YEAR)
        change = self.sp.withdraw_from_sp(self.alice, 0)

        issued = self.protocol.community_issuance.total_fluid_issued
        self.assertAlmostEqual(from_fixed(issued) / 1e6, 16.0, places=4)

        bob_gain = self.sp.get_depositor_fluid_gain(self.bob)
        self.assertEqual(change.fluid_gain * 2, bob_gain * 3)
        self.assertLessEqual(change.fluid_gain + bob_gain, issued)
        self.assertEqual(self.fluid.balance_of(self.alice), change.fluid_gain)
        self.assertEqual(self.sp.get_depositor_fluid_gain(self.alice), 0)

    def test_no_issuance_without_time_passing(self):
        self.deposit(self.alice, 1000 * DP)
        self.sp.withdraw_from_sp(self.alice, 0)
        self.assertEqual(self.protocol.community_issuance.total_fluid_issued, 0)
        self.assertEqual(self.fluid.balance_of(self.alice), 0)

    def test_offset_with_empty_pool_or_zero_debt_is_a_no_op(self):
        self.offset(100 * DP, DP)
        self.assertEqual(self.sp.get_collateral_balance(ETH), 0)

        self.deposit(self.alice, 1000 * DP)
        self.offset(0, DP)
        self.assertEqual(self.sp.P, DP)
        self.assertEqual(self.sp.get_collateral_balance(ETH), 0)

    def test_offset_cannot_exceed_deposits(self):
        self.deposit(self.alice, 1000 * DP)
        with self.assertRaises(InvariantViolation):
            self.offset(1001 * DP, DP)
        self.assertEqual(self.sp.get_total_usdf_deposits(), 1000 * DP)

    def test_gain_above_collateral_balance_is_an_error(self):
        self.deposit(self.alice, 1000 * DP)
        self.offset(500 * DP, DP)
        self.assertEqual(self.sp.get_depositor_collateral_gain(self.alice, ETH), DP)

        # Pool short of the collateral it owes
        self.sp.coll_balances[ETH] = DP - 1
        with self.assertRaises(InvariantViolation):
            self.sp.get_depositor_collateral_gain(self.alice, ETH)
        with self.assertRaises(InvariantViolation):
            self.sp.withdraw_all_from_sp(self.alice)
        self.assertEqual(self.sp.get_deposit(self.alice), 1000 * DP)
        self.assertEqual(self.usdf.balance_of(self.alice), 0)

    def test_offset_is_restricted_to_trove_manager(self):
        self.deposit(self.alice, 1000 * DP)
        with self.assertRaises(AuthorizationError) as context:
            self.sp.offset(self.alice, ETH, DP, DP)
        self.assertIn("Caller is not TroveManager", str(context.exception))

    def test_invalid_deposits_and_withdrawals(self):
        with self.assertRaises(ValidationError):
            self.sp.provide_to_sp(self.alice, 0)
        with self.assertRaises(ValidationError):
            self.sp.withdraw_from_sp(self.alice, DP)
        with self.assertRaises(ValidationError):
            self.sp.withdraw_all_from_sp(self.alice)

    def test_failed_deposit_leaves_no_trace(self):
        self.usdf.mint(self.protocol.borrower_operations, self.alice, 100 * DP)
        with self.assertRaises(ValidationError):
            self.sp.provide_to_sp(self.alice, 1000 * DP)

        self.assertEqual(self.sp.get_deposit(self.alice), 0)
        self.assertEqual(self.sp.get_total_usdf_deposits(), 0)
        self.assertEqual(self.usdf.balance_of(self.alice), 100 * DP)


if __name__ == "__main__":
    unittest.main()

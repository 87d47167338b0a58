"""
Simple simulation for Fluid Protocol Economic Model.

This script demonstrates a minimal simulation of the Fluid Protocol: a few
troves, a Stability Pool deposit, a price drop with liquidation and a
redemption.
"""

import logging
import sys
import os

import numpy as np

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from economic_model import FluidProtocolEconomicModel
from fixed_point_math import from_fixed, to_fixed


def print_state(protocol):
    state = protocol.get_system_state()
    print(f"  Total collateral: {state['total_coll']:.2f} ETH")
    print(f"  Total debt: {state['total_debt']:.2f} USDF")
    print(f"  ETH price: ${state['price']:.2f}")
    print(f"  TCR: {state['tcr'] * 100:.1f}%{' (recovery mode)' if state['recovery_mode'] else ''}")
    print(f"  Number of troves: {state['active_troves']}")
    print(f"  Stability pool balance: {state['stability_usdf']:.2f} USDF")
    print(f"  Stability pool collateral: {state['stability_coll']:.4f} ETH")


def run_basic_simulation(seed=42):
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    rng = np.random.default_rng(seed)

    # Initialize the protocol
    protocol = FluidProtocolEconomicModel({"ETH": to_fixed(2000)})

    print("Creating initial troves...")
    # Safest troves first, so the TCR stays above 150% while opening
    for i, target_cr in enumerate([2.0, 1.8, 1.65, 1.5, 1.4]):
        collateral = round(float(rng.uniform(3.0, 8.0)), 4)
        debt = round(collateral * 2000 / target_cr, 2)
        protocol.open_trove(f"user{i}", to_fixed(collateral), to_fixed(debt))
        print(f"Trove user{i}: {collateral:.2f} ETH, {debt:.2f} USDF, CR: {target_cr * 100:.0f}%")

    # Add to stability pool
    print("\nAdding to stability pool...")
    protocol.provide_to_stability_pool("user0", to_fixed(2500))
    print("user0 added 2500 USDF to stability pool")

    print("\nInitial protocol state:")
    print_state(protocol)

    # Simulate a price drop
    new_price = 1500.0
    print(f"\nSimulating price drop to ${new_price:.2f}")
    liquidated = protocol.update_price(to_fixed(new_price))
    if liquidated:
        print(f"Liquidated troves: {liquidated}")
    else:
        print("No troves eligible for liquidation at this price")

    gain = protocol.stability_pool.get_depositor_collateral_gain("user0", "ETH")
    print(f"user0 collateral gain: {from_fixed(gain):.4f} ETH")
    print(f"Keeper gas compensation: {from_fixed(protocol.get_collateral_balance('keeper')):.4f} ETH")

    # Redeem some USDF held by a borrower
    print("\nuser1 redeems 1000 USDF...")
    results = protocol.redeem_collateral("user1", to_fixed(1000))
    print(f"Received {from_fixed(results.coll_drawn):.4f} ETH from {results.troves_redeemed} troves")

    print("\nFinal protocol state:")
    print_state(protocol)


if __name__ == "__main__":
    run_basic_simulation()

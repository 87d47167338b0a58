"""
Visualization simulation for Fluid Protocol Economic Model.

This script runs a 30 day random market scenario and plots the results.
"""

import numpy as np
import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from economic_model import FluidProtocolEconomicModel
from fixed_point_math import to_fixed


def run_visualization_simulation(seed=None):
    rng = np.random.default_rng(seed)

    # Initialize the protocol
    protocol = FluidProtocolEconomicModel({"ETH": to_fixed(2000)})

    print("Creating initial troves...")
    # Target collateralization ratios from 280% down to 136%, safest first
    for i in range(10):
        collateral = round(float(rng.uniform(4.0, 10.0)), 4)
        target_cr = 2.8 - (i * 0.16)
        debt = round(collateral * 2000 / target_cr, 2)
        protocol.open_trove(f"user{i}", to_fixed(collateral), to_fixed(debt))
        print(f"Trove user{i}: {collateral:.2f} ETH, {debt:.2f} USDF, CR: {target_cr * 100:.0f}%")

    # Add to stability pool
    print("\nAdding to stability pool...")
    protocol.provide_to_stability_pool("user0", to_fixed(2000))
    protocol.provide_to_stability_pool("user1", to_fixed(1500))
    print("Added 3500 USDF to stability pool")

    # Run a simulation with price movements and plot results
    print("\nRunning simulation with visualizations...")
    results = protocol.simulate_market_scenario(30, price_volatility=0.03, plot_results=True, seed=seed)

    print("\nSimulation Results:")
    for key, value in results.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    run_visualization_simulation()

"""
Price feed for the Fluid Protocol model.

The ledger trusts whatever this returns. Staleness and deviation checks belong to
the oracle that feeds it, so the model only rejects missing or non-positive
prices.
"""

from protocol_errors import ValidationError


class PriceFeed:
    """Simple per-asset price feed for simulations."""

    def __init__(self, prices=None):
        self.prices = {}
        for asset, price in (prices or {}).items():
            self.set_price(asset, price)

    def get_price(self, asset):
        """Returns the current fixed-point USD price of one unit of asset."""
        price = self.prices.get(asset, 0)
        if price <= 0:
            raise ValidationError(f"No valid price for {asset}")
        return price

    def set_price(self, asset, new_price):
        """Sets a new price."""
        if new_price <= 0:
            raise ValidationError("Price must be greater than zero")
        self.prices[asset] = new_price

"""KudiMarket: marketplace orders, escrow and Paystack payments."""

__version__ = "0.3.0"

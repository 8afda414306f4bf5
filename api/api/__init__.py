"""HTTP surface of the group-buy order platform."""

__version__ = "0.1.0"

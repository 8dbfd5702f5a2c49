"""perpledger: fixed-point accounting core for perpetual futures markets."""

__version__ = "0.1.0"

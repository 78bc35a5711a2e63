"""
Customs Tax Engine - per-item customs valuation and batch tax calculation

Decides the taxable value of quote items (declared price against a
currency-converted statutory minimum), computes customs and destination
taxes, and runs the calculation over many quotes with bounded concurrency.
"""

__version__ = "0.1.0"

from . import batch
from . import tax_calculation
from . import utils

__all__ = ["batch", "tax_calculation", "utils"]

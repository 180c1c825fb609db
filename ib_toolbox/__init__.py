"""
Interactive Brokers data toolbox.

The package downloads historical bars from Interactive Brokers, persists them
in QuantConnect Lean's on-disk layout, tracks asynchronous download jobs and
reads the archives back into paginated snapshots for display.
"""

__version__ = "0.4.0"

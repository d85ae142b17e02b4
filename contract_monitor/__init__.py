"""
Contract Monitor - multi-window open interest, price and funding rate monitor.

Samples perpetual contract metrics from the exchange, keeps rolling
snapshots at fixed lag offsets, ranks instruments by how much they moved
against each snapshot and pushes deduplicated top-N tables to webhook
channels.

A ranking that comes back empty during warm-up is expected, not an error.
"""

__version__ = "0.1.0"
__author__ = "Contract Monitor Team"

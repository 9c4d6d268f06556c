"""Meta Miner: algo switching support for any stratum miner.

Relays an algo-switching pool to a local, protocol-unaware miner and swaps
the miner process whenever the pool changes the hashing algorithm.
"""

__version__ = "0.2.0"

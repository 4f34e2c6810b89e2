"""Multi-chain hot-wallet engine for EVM networks, Bitcoin and Solana."""

__version__ = "0.1.0"

"""Wallet Trace: live aggregation of wallet-open activity across devices."""

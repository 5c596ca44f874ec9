"""
claimview - AppView indexer for verifiable claims.

Consumes a change stream of claim records, verifies embedded proofs,
derives the graph of claims-about-claims and answers queries over it.
"""

__version__ = "0.1.0"

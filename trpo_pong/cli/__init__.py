"""
Command-line interface modules for TRPO.

Entry points:
- trpo-train: Train a recurrent TRPO agent on Pong
- trpo-test: Run the test suite
"""

from trpo_pong.cli import train, test

__all__ = ["train", "test"]

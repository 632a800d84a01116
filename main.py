#!/usr/bin/env python3
"""
Main entry point for recurrent TRPO training on Atari Pong.

Usage:
    python main.py                      # Run with default settings
    python main.py --num-envs 16        # Use 16 parallel environments
    python main.py --help               # Show all options

Press Ctrl+C to stop; the policy is saved before the process exits.
"""

import sys

from trpo_pong.cli.train import main


if __name__ == '__main__':
    sys.exit(main())

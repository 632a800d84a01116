#!/usr/bin/env python3
"""
TRPO Test Suite CLI.

Thin wrapper around pytest that knows the layout of the test suite.

Usage:
    trpo-test                          # Every test, including the real simulator
    trpo-test --no-simulator           # Skip tests that start ALE/Pong
    trpo-test --module trpo rollout    # Only the optimizer and roller tests
    trpo-test --list                   # Show the test modules
"""

import argparse
import sys
import os


TEST_MODULES = [
    ("config", "TRPOConfig defaults, validation and JSON round trip"),
    ("environment", "Delta-encoded frames and the environment pool"),
    ("tape", "Compressed observation tapes"),
    ("model", "Recurrent policy, solid-color projection and sampling"),
    ("rollout", "Roller scenarios and pack_rollout_sets"),
    ("trpo", "Action values, conjugate gradient and the trust region"),
    ("trainer", "Checkpoints, training lock, signals and shutdown"),
    ("integration", "Pool to update pipeline and the command line"),
]


def parse_args(args=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the TRPO Pong test suite",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        '--module', '-m', nargs='+', default=None,
        choices=[name for name, _ in TEST_MODULES],
        help='Test modules to run (default: all of them)'
    )
    parser.add_argument(
        '--pattern', '-k', type=str, default=None,
        help='pytest -k expression'
    )
    parser.add_argument(
        '--no-simulator', action='store_true',
        help='Deselect tests marked slow, which need the Atari simulator'
    )
    parser.add_argument(
        '--verbose', '-v', action='count', default=1,
        help='pytest verbosity, repeat for more'
    )
    parser.add_argument(
        '--log-level', type=str, default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Level of the live log shown while tests run'
    )
    parser.add_argument(
        '--failfast', '-x', action='store_true',
        help='Stop on first failure'
    )
    parser.add_argument(
        '--timeout', type=int, default=600,
        help='Per-test timeout in seconds (pytest-timeout)'
    )
    parser.add_argument(
        '--list', '-l', action='store_true',
        help='List test modules and exit'
    )

    return parser.parse_args(args)


def list_test_modules():
    """Print the test modules with a short description."""
    width = max(len(name) for name, _ in TEST_MODULES)
    for name, description in TEST_MODULES:
        print(f"  {name:<{width}}  {description}")


def build_pytest_args(args, tests_dir: str):
    """Translate parsed options into a pytest argument list."""
    if args.module:
        pytest_args = [os.path.join(tests_dir, f'test_{name}') for name in args.module]
    else:
        pytest_args = [tests_dir]

    pytest_args.append('-' + 'v' * min(args.verbose, 3))
    pytest_args.extend(['--log-cli-level', args.log_level])
    pytest_args.extend(['--timeout', str(args.timeout)])

    if args.pattern:
        pytest_args.extend(['-k', args.pattern])
    if args.no_simulator:
        pytest_args.extend(['-m', 'not slow'])
    if args.failfast:
        pytest_args.append('-x')

    return pytest_args


def find_tests_dir():
    """The tests/ directory of a source checkout, or of the working directory."""
    package_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    for candidate in (os.path.join(package_root, 'tests'), 'tests'):
        if os.path.isdir(candidate):
            return candidate
    return None


def main(args=None):
    """Main entry point for the test runner."""
    args = parse_args(args)

    if args.list:
        list_test_modules()
        return 0

    tests_dir = find_tests_dir()
    if tests_dir is None:
        print("Error: no tests/ directory found; run from a source checkout")
        return 1

    pytest_args = build_pytest_args(args, tests_dir)
    missing = [p for p in pytest_args if p.startswith(tests_dir) and not os.path.exists(p)]
    if missing:
        print(f"Error: test module not found: {missing[0]}")
        return 1

    print(f"pytest {' '.join(pytest_args)}")

    import pytest
    return int(pytest.main(pytest_args))


if __name__ == '__main__':
    sys.exit(main())

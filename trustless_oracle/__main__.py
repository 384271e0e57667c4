"""
Entry point for running the oracle as a module.

Usage:
    python -m trustless_oracle
"""

from trustless_oracle.cli import main

if __name__ == "__main__":
    main()

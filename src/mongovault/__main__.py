"""
Entry point for running mongovault as a module.

Usage:
    python -m mongovault [command] [options]
"""

from mongovault.cli import main

if __name__ == "__main__":
    main()

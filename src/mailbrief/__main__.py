"""Entry point for running mailbrief as a module.

Usage:
    python -m mailbrief validate-config
    python -m mailbrief --help
"""

from mailbrief.cli import main

if __name__ == "__main__":
    main()

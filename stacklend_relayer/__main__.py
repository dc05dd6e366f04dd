"""
Entry point for running the relayer as a module.

Usage:
    python -m stacklend_relayer
"""

from stacklend_relayer.cli import main

if __name__ == "__main__":
    main()

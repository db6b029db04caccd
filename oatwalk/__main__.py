"""
Oatwalk Module Entry Point
===========================

Allows running the Oatwalk CLI via: python -m oatwalk
"""

from oatwalk.cli import main

if __name__ == "__main__":
    main()

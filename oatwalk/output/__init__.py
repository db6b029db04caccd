"""
Oatwalk Output Module
======================

Console display for Oatwalk inspection results.
"""

from oatwalk.output.console import OatwalkConsoleOutput

__all__ = [
    "OatwalkConsoleOutput",
]

"""Application entry points for the focus bridge."""

from .runner import build_parser, main

__all__ = ["build_parser", "main"]

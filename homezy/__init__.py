"""Homezy lead lifecycle and credit-gated claim engine"""

__version__ = "0.1.0"

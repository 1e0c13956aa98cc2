"""Replicate built machine images into destination accounts and regions."""

__version__ = "0.1.0"

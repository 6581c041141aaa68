"""Apparel Design Pipeline - image-to-design generation service."""

__version__ = "1.0.0"

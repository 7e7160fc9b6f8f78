"""
Edit-and-sync core for correcting email classifications.
"""

from .core.config import VERSION

__version__ = VERSION

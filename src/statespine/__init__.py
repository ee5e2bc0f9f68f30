"""
StateSpine - reactive state primitives.

Observe plain Python objects for path-qualified changes and share one
canonical, weakly-held instance per constructor and argument key.
"""

__version__ = "0.1.0"

# Re-export everything from the actual implementation
from statespine.core import *  # noqa

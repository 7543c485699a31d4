"""nodekeeper: keeps a tree of long-running worker processes alive."""

__version__ = "0.1.0"

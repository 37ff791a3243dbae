"""ralph: runs a feature's ready work items through a fresh-context worker, one at a time."""

__version__ = "0.1.0"

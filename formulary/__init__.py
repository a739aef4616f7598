"""
formulary — fetch, verify, build and install programs from formula files.
"""

__version__ = "0.1.0"

"""
StateFlow - An async-first state graph engine.

Build agent loops and pipelines from nodes sharing a typed state, with
reducer-based merging, conditional routing, cycles and step streaming.
"""

__version__ = "1.0.0"

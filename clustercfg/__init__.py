"""
clustercfg - cluster configuration distribution

A locator holds cluster-wide and group-scoped configuration (regions,
properties, deployed artifacts) and hands it to members as they join.
"""

__version__ = "0.1.0"

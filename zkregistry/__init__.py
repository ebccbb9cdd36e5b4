"""
zkregistry - service registry client over ZooKeeper-style coordination stores
"""

__version__ = "0.1.0"

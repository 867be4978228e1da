"""
Orqus node installer: bootstraps and upgrades a CometBFT + orqusbft + orqus-reth node.
"""

__version__ = "0.3.0"

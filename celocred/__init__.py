"""
CeloCred — Contribution Scoring & On-Chain Execution Pipeline
"""
__version__ = "1.0.0"

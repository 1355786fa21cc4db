"""
RigWarden single-node mining rig agent
Supervises the local miner, reconciles its flightsheet and reports telemetry.
"""

__version__ = "0.4.0"

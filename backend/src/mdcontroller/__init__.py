"""
MachineDeployment controller: rolling upgrades for groups of machines.
"""

__version__ = "1.0.0"

"""
lbm27 - D3Q27 Lattice-Boltzmann 流場求解器 (Taichi 並行核心)
"""

__version__ = "0.1.0"

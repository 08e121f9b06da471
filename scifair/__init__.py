"""
scifair
Judging, arbitration, ranking and level-promotion engine for the science fair.
"""
__version__ = "1.0.0"

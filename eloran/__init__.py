"""
e-Loran Simulation Engine

This package models hyperbolic radio-navigation (LORAN-C / e-LORAN)
transmitting stations. It computes time-difference-of-arrival (TDOA)
fields over a geographic grid, traces lines of position, solves receiver
positions from TDOA observations and monitors their integrity.
"""

__version__ = "0.3.0"

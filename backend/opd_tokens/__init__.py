"""
OPD token allocation engine.

Priority-aware, capacity-bounded token allocation for hospital
outpatient slots, with preemption and reallocation of displaced tokens.
"""

__version__ = "0.1.0"

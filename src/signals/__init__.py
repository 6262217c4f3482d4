"""Signal module for effective delta estimation.

This module derives an option's effective delta from observed
co-movement of option and underlying prices.
"""

from .effective_delta import DELTA_BOUNDS, DeltaSample, EffectiveDeltaEngine, OptionType

__all__ = [
    'EffectiveDeltaEngine',
    'DeltaSample',
    'OptionType',
    'DELTA_BOUNDS',
]

__version__ = '1.0.0'

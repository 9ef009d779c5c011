"""CONFLUENCE Utilities"""

from .numeric import (
    clamp,
    sign,
    is_finite_number,
    finite_values,
    median,
    mean
)

__all__ = [
    'clamp',
    'sign',
    'is_finite_number',
    'finite_values',
    'median',
    'mean'
]

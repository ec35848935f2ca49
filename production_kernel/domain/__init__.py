"""
Pure domain layer for the kernel.

No ORM, database or I/O dependencies.  The only sanctioned source of
wall-clock time is ``SystemClock``.
"""

from production_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
]

"""
sweeplab - Prompt parameter sweeps.

Run one prompt across a grid of sampling parameters, score every response,
find the settings that work.
"""

from sweeplab.aggregate import summarize
from sweeplab.grid import SweepConfig, expand
from sweeplab.scheduler import Scheduler
from sweeplab.scoring import score

__version__ = "0.1.0"
__all__ = ["Scheduler", "SweepConfig", "expand", "score", "summarize", "__version__"]

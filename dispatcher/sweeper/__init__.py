"""
Sweeper module.
Contains the retention sweeper for pruning finished jobs.
"""

from dispatcher.sweeper.main import RetentionSweeper

__all__ = ["RetentionSweeper"]

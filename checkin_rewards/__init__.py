"""
Daily check-in reward engine

Streak tracking, multiplier policies, XP calculation and the ledger that
commits rewards, orchestrated by CheckinService.
"""

__version__ = "0.1.0"

"""
Check-in gamification

- Streak tracking derived from the activity log
- Multiplier policies (tiered, linear, exponential, seasonal)
- XP calculators (standard, progressive, tiered, event, contextual)
- XP ledgers (direct, batched, cached, in-memory)
"""

from checkin_rewards.gamification.streak_system import StreakTracker
from checkin_rewards.gamification.multipliers import MultiplierPolicy, create_multiplier_policy
from checkin_rewards.gamification.xp_system import RewardCalculator, create_reward_calculator
from checkin_rewards.gamification.ledger import RewardLedger, DirectRewardLedger, InMemoryRewardLedger

__all__ = [
    "StreakTracker",
    "MultiplierPolicy",
    "create_multiplier_policy",
    "RewardCalculator",
    "create_reward_calculator",
    "RewardLedger",
    "DirectRewardLedger",
    "InMemoryRewardLedger",
]

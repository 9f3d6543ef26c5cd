"""
Runtime layer for the Director critic.

This module coordinates the flow:
Director response → Action Parser → Critic → ScoredAction sub-scores
"""

from runtime.main import score_director_response, run_critic

__all__ = ["score_director_response", "run_critic"]

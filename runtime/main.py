"""
Critic runner for Director responses.

Decodes a Director response, asks the Critic about every action, and prints
the sub-scores. Combining sub-scores into total_score is left to the caller.
"""

import asyncio
import os
import sys
import time
import logging
from dataclasses import dataclass
from typing import List, Optional

# Add project root to path for imports
project_root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from backend.director.action_parser import decode_director_response
from backend.critic.critic_evaluator import CriticEvaluator
from backend.critic.llama_server import LlamaServerManager
from models.action import ScoredAction


logger = logging.getLogger(__name__)


@dataclass
class PreviousAction:
    """What the player did last turn, for context scoring."""

    action_text: str
    succeeded: bool
    outcome: str


@dataclass
class LocationContext:
    """Where the player currently stands, for location scoring."""

    location_type: str
    sublocation_name: str
    sublocation_description: str


def setup_logging(debug: bool = False) -> None:
    """Set up logging for the runner."""
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler("critic.log")],
    )


def load_director_response(director_file: str) -> str:
    """Read a saved Director response."""
    try:
        with open(director_file, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        logging.error(f"Director response file not found: {director_file}")
        raise


async def score_director_response(
    raw_text: str,
    critic: CriticEvaluator,
    previous_action: Optional[PreviousAction] = None,
    location: Optional[LocationContext] = None,
) -> Optional[List[ScoredAction]]:
    """
    Decode a Director response and fill in Critic sub-scores per action.

    Context and location scores are only evaluated when that context is
    given; otherwise they stay None. total_score is never set here.

    Returns:
        ScoredActions in original order, or None if nothing decoded
    """
    result = decode_director_response(raw_text)
    if not result.success:
        logger.warning(f"Director response rejected: {result.error_message}")
        return None

    scored_actions = []
    for action in result.actions:
        start_time = time.perf_counter()
        scored = ScoredAction(action=action)

        scored.skill_score = await critic.evaluate_action_skill_coherence(
            action.action_text, action.skill
        )
        scored.consequence_score = await critic.evaluate_action_consequence_plausibility(
            action.action_text, action.success_consequence
        )

        if previous_action is not None:
            scored.context_score = await critic.evaluate_context_coherence(
                action.action_text,
                previous_action.action_text,
                previous_action.succeeded,
                previous_action.outcome,
            )

        if location is not None:
            scored.location_score = await critic.evaluate_location_coherence(
                action.action_text,
                location.location_type,
                location.sublocation_name,
                location.sublocation_description,
            )

        scored.specificity_score = await critic.evaluate_action_specificity(
            action.action_text
        )

        scored.evaluation_duration_ms = (time.perf_counter() - start_time) * 1000
        scored_actions.append(scored)

    return scored_actions


def print_scores(scored_actions: List[ScoredAction]) -> None:
    print("=" * 70)
    print("CRITIC SUB-SCORES")
    print("=" * 70)
    for scored in scored_actions:
        action = scored.action
        print(f"\n[{action.original_index}] {action.action_text} ({action.skill or 'no skill'})")
        for name, score in scored.sub_scores.items():
            shown = f"{score:.3f}" if score is not None else "-"
            print(f"   {name:<18} {shown}")
        print(f"   duration           {scored.evaluation_duration_ms:.0f}ms")
    print("\n" + "=" * 70)


async def run_critic(
    director_file: str,
    server_url: Optional[str] = None,
    debug: bool = False,
) -> Optional[List[ScoredAction]]:
    """
    Score a saved Director response against a running llama.cpp server.

    Args:
        director_file: JSON file holding the Director's response
        server_url: Override for config.LLAMA_SERVER_URL
        debug: Enable debug logging
    """
    setup_logging(debug)

    raw_text = load_director_response(director_file)

    llama_server = LlamaServerManager(base_url=server_url)
    try:
        if not await llama_server.connect():
            print("⚠️  llama.cpp server unreachable, scores will be neutral")

        async with CriticEvaluator(llama_server) as critic:
            scored_actions = await score_director_response(raw_text, critic)
    finally:
        await llama_server.close()

    if scored_actions is None:
        print(f"❌ Could not decode any actions from {director_file}")
        return None

    print_scores(scored_actions)
    return scored_actions


def main(argv: Optional[List[str]] = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Score Director actions with the Critic")
    parser.add_argument("director_file", help="Director response JSON file")
    parser.add_argument("--server-url", default=None, help="llama.cpp server /v1 URL")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    args = parser.parse_args(argv)

    asyncio.run(run_critic(args.director_file, server_url=args.server_url, debug=args.debug))


if __name__ == "__main__":
    main()

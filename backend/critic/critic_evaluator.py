"""
Critic Evaluator - stateless yes/no judge backed by token probabilities.

Instead of parsing generated prose, the Critic asks the model a yes/no
question with the answer constrained by grammar to exactly "yes" or "no",
then scores it as p(yes) / (p(yes) + p(no)).

The Critic holds a single inference-server slot. The slot's conversation is
reset after every question so each score is an independent sample, and a
lock keeps concurrent callers from interleaving queries and resets.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Sequence, Tuple


logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5

CANDIDATE_TOKENS = ("yes", "no")

# GBNF grammar accepting exactly "yes" or "no" as the whole response
YES_NO_GRAMMAR = 'root ::= response\nresponse ::= "yes" | "no"'

CRITIC_SYSTEM_PROMPT = """You are a CRITIC evaluating game content for coherence and quality.

Your role is simple:
- Answer yes/no questions about game actions, skills, consequences, and narratives
- Evaluate coherence, plausibility, and appropriateness
- Respond ONLY with 'yes' or 'no' - nothing else

Guidelines:
- Be strict but fair in your evaluations
- Consider logical consistency
- Value plausibility over creativity
- Focus on the specific question asked

You must answer with exactly one word: 'yes' or 'no'."""


class InferenceServer(Protocol):
    """Slot operations the Critic needs from an inference server."""

    @property
    def is_server_ready(self) -> bool: ...

    async def create_instance(self, system_prompt: str) -> int: ...

    async def get_next_token_probabilities(
        self,
        slot_id: int,
        prompt: str,
        candidate_tokens: Sequence[str],
        grammar: Optional[str] = None,
    ) -> Dict[str, float]: ...

    def reset_instance(self, slot_id: int) -> None: ...


class TelemetrySink(Protocol):
    def log_critic_evaluation(
        self,
        slot_id: int,
        question: str,
        ratio: float,
        p_yes: float,
        p_no: float,
        duration_ms: float,
    ) -> None: ...

    def log_instance_created(
        self,
        slot_id: int,
        role: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None: ...


@dataclass
class CriticEvaluation:
    """Result of one yes/no evaluation."""

    score: float
    degraded: bool = False  # True when score is a fallback, not a model answer
    p_yes: float = 0.0
    p_no: float = 0.0
    duration_ms: float = 0.0
    error_message: Optional[str] = None


def probability_ratio(p_yes: float, p_no: float) -> float:
    """p(yes) / (p(yes) + p(no)), or neutral when neither answer has mass."""
    p_yes = max(0.0, p_yes)
    p_no = max(0.0, p_no)
    total = p_yes + p_no
    if total <= 0:
        return NEUTRAL_SCORE
    return max(0.0, min(1.0, p_yes / total))


class CriticEvaluator:
    """LLM-based critic that scores yes/no questions from token probabilities."""

    def __init__(
        self,
        llama_server: InferenceServer,
        telemetry: Optional[TelemetrySink] = None,
    ):
        if llama_server is None:
            raise ValueError("llama_server is required")

        if telemetry is None:
            from backend.critic.llm_logger import LLMLogger

            telemetry = LLMLogger()

        self._llama_server = llama_server
        self._telemetry = telemetry
        self._slot_id = -1
        self._is_initialized = False
        self._slot_lock = asyncio.Lock()

        # Statistics
        self._total_evaluations = 0
        self._total_duration_ms = 0.0

    @property
    def slot_id(self) -> int:
        return self._slot_id

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    @property
    def is_usable(self) -> bool:
        return (
            self._is_initialized
            and self._llama_server.is_server_ready
            and self._slot_id >= 0
        )

    async def initialize(self) -> None:
        """Reserve the Critic slot. Safe to call more than once; never raises."""
        if self._is_initialized:
            return

        try:
            logger.info("CriticEvaluator: Initializing Critic slot...")
            self._slot_id = await self._llama_server.create_instance(
                CRITIC_SYSTEM_PROMPT
            )
            self._is_initialized = True
            logger.info(f"CriticEvaluator: Created Critic slot {self._slot_id}")
            self._log_instance_created(self._slot_id, True)
        except Exception as e:
            logger.error(f"CriticEvaluator: Failed to initialize: {e}")
            self._slot_id = -1
            self._is_initialized = False
            self._log_instance_created(-1, False, str(e))

    def _log_instance_created(
        self, slot_id: int, success: bool, error_message: Optional[str] = None
    ) -> None:
        try:
            self._telemetry.log_instance_created(
                slot_id, "CriticEvaluator", success, error_message
            )
        except Exception as e:
            logger.warning(f"CriticEvaluator: Failed to log instance creation: {e}")

    async def evaluate(self, question: str) -> CriticEvaluation:
        """
        Ask one yes/no question.

        Returns:
            CriticEvaluation with the probability ratio. Unusable evaluator or
            any query error yields a degraded neutral score instead of raising.
        """
        if not self.is_usable:
            logger.warning("CriticEvaluator: Not initialized or server not ready")
            return CriticEvaluation(
                score=NEUTRAL_SCORE,
                degraded=True,
                error_message="Critic not initialized or server not ready",
            )

        async with self._slot_lock:
            start_time = time.perf_counter()
            try:
                probabilities = await self._llama_server.get_next_token_probabilities(
                    self._slot_id,
                    question,
                    CANDIDATE_TOKENS,
                    YES_NO_GRAMMAR,
                )

                p_yes = float(probabilities.get("yes", 0.0))
                p_no = float(probabilities.get("no", 0.0))
                ratio = probability_ratio(p_yes, p_no)

                duration_ms = (time.perf_counter() - start_time) * 1000
                self._total_evaluations += 1
                self._total_duration_ms += duration_ms

                try:
                    # Sinks may do file I/O; keep it off the event loop
                    await asyncio.to_thread(
                        self._telemetry.log_critic_evaluation,
                        self._slot_id,
                        question,
                        ratio,
                        p_yes,
                        p_no,
                        duration_ms,
                    )
                except Exception as e:
                    logger.warning(f"CriticEvaluator: Failed to log evaluation: {e}")

                return CriticEvaluation(
                    score=ratio,
                    p_yes=p_yes,
                    p_no=p_no,
                    duration_ms=duration_ms,
                )

            except Exception as e:
                logger.error(f"CriticEvaluator: Error evaluating question: {e}")
                return CriticEvaluation(
                    score=NEUTRAL_SCORE,
                    degraded=True,
                    duration_ms=(time.perf_counter() - start_time) * 1000,
                    error_message=str(e),
                )

            finally:
                # Stale context would make the next answer depend on this question
                try:
                    self._llama_server.reset_instance(self._slot_id)
                except Exception as e:
                    logger.error(f"CriticEvaluator: Error resetting instance: {e}")

    async def evaluate_yes_no_question(self, question: str) -> float:
        """Score between 0.0 (no) and 1.0 (yes)."""
        evaluation = await self.evaluate(question)
        return evaluation.score

    async def evaluate_action_skill_coherence(self, action: str, skill: str) -> float:
        """How well the action fits the skill (0.0 to 1.0)."""
        question = f"Is the action '{action}' coherent with and appropriate for the skill '{skill}'?"
        return await self.evaluate_yes_no_question(question)

    async def evaluate_action_consequence_plausibility(
        self, action: str, consequence: str
    ) -> float:
        """How plausibly the action leads to the consequence (0.0 to 1.0)."""
        question = f"Could the action '{action}' plausibly lead to the consequence '{consequence}'?"
        return await self.evaluate_yes_no_question(question)

    async def evaluate_narrative_quality(self, narrative: str, criterion: str) -> float:
        """
        Evaluate narrative quality against a criterion.

        Args:
            narrative: The narrative text to evaluate
            criterion: What to evaluate (e.g., "atmospheric", "concise", "coherent")
        """
        question = f'Is this narrative {criterion}? "{narrative}"'
        return await self.evaluate_yes_no_question(question)

    async def evaluate_context_coherence(
        self,
        action: str,
        previous_action: str,
        previous_succeeded: bool,
        previous_outcome: str,
    ) -> float:
        """Does the action make sense as a follow-up to the previous one?"""
        outcome = "Success" if previous_succeeded else "Failure"
        question = (
            f"Previous action: {previous_action}\n"
            f"Previous outcome: {outcome} - {previous_outcome}\n"
            f"\n"
            f"Current action being considered: {action}\n"
            f"\n"
            f"Does this new action make logical sense as a follow-up to the previous action and its outcome?"
        )
        return await self.evaluate_narrative_quality(
            question, "logical and coherent sequence"
        )

    async def evaluate_location_coherence(
        self,
        action: str,
        location_type: str,
        sublocation_name: str,
        sublocation_description: str,
    ) -> float:
        """Does the action make sense in the current sublocation?"""
        question = (
            f"Location: {location_type}\n"
            f"Sublocation: {sublocation_name} - {sublocation_description}\n"
            f"\n"
            f"Action being considered: {action}\n"
            f"\n"
            f"Does this action make sense in this specific location and its surroundings?"
        )
        return await self.evaluate_yes_no_question(question)

    async def evaluate_action_specificity(self, action: str) -> float:
        """Higher for concrete actions, lower for vague or abstract ones."""
        question = (
            f"Action: {action}\n"
            f"\n"
            f"Is this action specific and concrete (rather than abstract or overly general)?"
        )
        return await self.evaluate_yes_no_question(question)

    def get_statistics(self) -> Tuple[int, float]:
        """(total evaluations, total duration in ms)"""
        return self._total_evaluations, self._total_duration_ms

    def close(self) -> None:
        """Report evaluation statistics. Never raises."""
        try:
            if self._total_evaluations > 0:
                avg_duration = self._total_duration_ms / self._total_evaluations
                logger.info(
                    f"CriticEvaluator: {self._total_evaluations} evaluations, "
                    f"avg duration: {avg_duration:.1f}ms"
                )
        except Exception as e:
            logger.warning(f"CriticEvaluator: Failed to report statistics: {e}")

    async def __aenter__(self) -> "CriticEvaluator":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

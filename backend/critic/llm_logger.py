"""
Critic telemetry logging.

Records every Critic evaluation and slot creation to a shared JSON file so
scoring behaviour can be analysed after a session (see check_critic_stats.py).
"""

import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

# Platform-specific imports for file locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


logger = logging.getLogger(__name__)


class LLMLogger:
    """Appends Critic telemetry records to a JSON statistics file."""

    def __init__(self, stats_file: Optional[str] = None):
        import config

        self.stats_file = stats_file or config.CRITIC_STATS_FILE
        self.lock_file = self.stats_file + ".lock"

    def log_critic_evaluation(
        self,
        slot_id: int,
        question: str,
        ratio: float,
        p_yes: float,
        p_no: float,
        duration_ms: float,
    ) -> None:
        """
        Log one yes/no evaluation.

        Args:
            slot_id: Inference-server slot that answered
            question: The question asked
            ratio: p_yes / (p_yes + p_no), or 0.5 when both were zero
            p_yes: Raw probability mass on "yes"
            p_no: Raw probability mass on "no"
            duration_ms: Wall-clock duration of the query
        """
        logger.debug(
            f"CRITIC EVALUATION (slot {slot_id}): ratio={ratio:.4f} "
            f"yes={p_yes:.4f} no={p_no:.4f} ({duration_ms:.0f}ms)"
        )
        self._append(
            {
                "event": "critic_evaluation",
                "slot_id": slot_id,
                "question": question,
                "ratio": ratio,
                "p_yes": p_yes,
                "p_no": p_no,
                "duration_ms": duration_ms,
            }
        )

    def log_instance_created(
        self,
        slot_id: int,
        role: str,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Log the outcome of a slot creation request."""
        if success:
            logger.info(f"{role}: created slot {slot_id}")
        else:
            logger.warning(f"{role}: slot creation failed - {error_message}")
        self._append(
            {
                "event": "instance_created",
                "slot_id": slot_id,
                "role": role,
                "success": success,
                "error_message": error_message,
            }
        )

    def _append(self, entry: Dict[str, Any]) -> None:
        """Append a record under an exclusive file lock and save atomically."""
        entry = {"timestamp": datetime.now().isoformat(), **entry}

        lock_handle = open(self.lock_file, "w")
        try:
            # Acquire exclusive lock (platform-specific)
            if sys.platform == "win32":
                msvcrt.locking(lock_handle.fileno(), msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)

            records = self._read_records()
            records.append(entry)

            temp_file = self.stats_file + ".tmp"
            with open(temp_file, "w") as f:
                json.dump(records, f, indent=2)
            os.replace(temp_file, self.stats_file)
        finally:
            if sys.platform == "win32":
                msvcrt.locking(lock_handle.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
            lock_handle.close()

    def _read_records(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.stats_file):
            return []
        with open(self.stats_file, "r") as f:
            return json.load(f)

    def get_evaluation_summary(self) -> Dict[str, Any]:
        """
        Summarise recorded Critic activity.

        Returns:
            dict with total_evaluations, average_ratio, average_duration_ms,
            degenerate_evaluations, failed_instances and a per-slot breakdown,
            or {"error": ...} when nothing can be read
        """
        if not os.path.exists(self.stats_file):
            return {"error": "No critic statistics file found"}

        try:
            records = self._read_records()
        except (OSError, json.JSONDecodeError) as e:
            return {"error": f"Failed to read critic stats: {e}"}

        evaluations = [r for r in records if r.get("event") == "critic_evaluation"]
        instances = [r for r in records if r.get("event") == "instance_created"]

        if not evaluations and not instances:
            return {"error": "No critic statistics recorded"}

        total = len(evaluations)

        by_slot: Dict[int, Dict[str, Any]] = {}
        for record in evaluations:
            slot = by_slot.setdefault(
                record["slot_id"], {"evaluations": 0, "ratio_sum": 0.0, "duration_sum": 0.0}
            )
            slot["evaluations"] += 1
            slot["ratio_sum"] += record["ratio"]
            slot["duration_sum"] += record["duration_ms"]

        for slot in by_slot.values():
            slot["average_ratio"] = slot.pop("ratio_sum") / slot["evaluations"]
            slot["average_duration_ms"] = slot.pop("duration_sum") / slot["evaluations"]

        return {
            "total_evaluations": total,
            "average_ratio": (
                sum(r["ratio"] for r in evaluations) / total if total > 0 else 0.0
            ),
            "average_duration_ms": (
                sum(r["duration_ms"] for r in evaluations) / total if total > 0 else 0.0
            ),
            # Both probabilities zero: the model put no mass on either answer
            "degenerate_evaluations": sum(
                1 for r in evaluations if r["p_yes"] + r["p_no"] == 0
            ),
            "instances_created": sum(1 for r in instances if r["success"]),
            "failed_instances": sum(1 for r in instances if not r["success"]),
            "by_slot": by_slot,
        }

"""
Quick script to check Critic statistics.

Run this after a session to see how the Critic scored and how long it took.
"""

import sys

from backend.critic.llm_logger import LLMLogger


def main(stats_file=None):
    print("=" * 70)
    print("CRITIC STATISTICS SUMMARY")
    print("=" * 70 + "\n")

    try:
        summary = LLMLogger(stats_file).get_evaluation_summary()
    except Exception as e:
        print(f"❌ Error retrieving critic summary: {e}")
        sys.exit(1)

    if "error" in summary:
        print(f"❌ Error: {summary['error']}")
        sys.exit(1)

    print(f"📊 OVERALL STATISTICS:")
    print(f"   Total evaluations: {summary.get('total_evaluations', 0)}")
    print(f"   Average yes-ratio: {summary.get('average_ratio', 0):.3f}")
    print(f"   Average duration: {summary.get('average_duration_ms', 0):.1f}ms")
    print(f"   Uninformative answers: {summary.get('degenerate_evaluations', 0)}")
    print(
        f"   Slots created: {summary.get('instances_created', 0)} "
        f"(failed: {summary.get('failed_instances', 0)})\n"
    )

    by_slot = summary.get("by_slot", {})
    if by_slot:
        print(f"📋 BREAKDOWN BY SLOT:")
        print("-" * 70)

        for slot_id in sorted(by_slot.keys()):
            stats = by_slot[slot_id]
            print(f"\nSlot {slot_id}:")
            print(f"   Evaluations: {stats.get('evaluations', 0)}")
            print(f"   Average ratio: {stats.get('average_ratio', 0):.3f}")
            print(f"   Average duration: {stats.get('average_duration_ms', 0):.1f}ms")

    print("\n" + "=" * 70 + "\n")


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)

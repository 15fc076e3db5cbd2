"""
Check resolutions against expected labels.

Ground truth is a list of {"candidate_id": ..., "expected_resolution": ...}.

Usage: uv run python scripts/evaluate.py [ground_truth.json]
"""

import json
import sys
from pathlib import Path


def evaluate(ground_truth_path: str = "data/ground_truth.json"):
    run = json.loads(Path("outputs/resolutions.json").read_text())
    ground_truth = json.loads(Path(ground_truth_path).read_text())

    got_by_id = {
        r["candidate_id"]: (r["record"]["resolution"] if r["record"] else "REJECTED")
        for r in run["results"]
    }

    print(f"\n{'='*50}")
    print(f" Evaluation: {len(ground_truth)} candidates")
    print(f"{'='*50}\n")

    correct = 0
    for gt in ground_truth:
        expected = gt["expected_resolution"]
        got = got_by_id.get(gt["candidate_id"], "MISSING")
        # SKIP-FTS5 and SKIP-LLM are both "duplicate"; the path taken doesn't matter
        match = expected == got or {expected, got} <= {"SKIP-FTS5", "SKIP-LLM"}
        correct += match
        print(f"{gt['candidate_id']}: expected {expected}, got {got}{'' if match else '  <-- MISMATCH'}")

    total = len(ground_truth)
    accuracy = correct / total if total else 0
    print(f"\n  Result: {correct}/{total} correct ({accuracy:.0%})\n")
    return accuracy


if __name__ == "__main__":
    evaluate(*sys.argv[1:2])

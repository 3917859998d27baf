"""Consensus scoring for results of agents dispatched on the same task."""

from __future__ import annotations

from typing import Sequence

from .models import AgentResult

# Seconds after which an agent no longer earns a speed bonus.
SPEED_HORIZON = 60.0


def calculate_score(result: AgentResult) -> float:
    """0 for failures; 0.5 base plus bonuses for output, speed and artifacts."""
    if not result.success:
        return 0.0
    score = 0.5
    if result.output:
        score += 0.2
    score += max(0.0, min(0.2, (SPEED_HORIZON - result.execution_time) / SPEED_HORIZON * 0.2))
    if result.artifacts:
        score += 0.1
    return min(1.0, score)


def calculate_confidence(result: AgentResult, results: Sequence[AgentResult]) -> float:
    """How close this agent's runtime is to the mean of the successful agents."""
    if not result.success:
        return 0.0
    successful = [r for r in results if r.success]
    if len(successful) <= 1:
        return 1.0
    mean = sum(r.execution_time for r in successful) / len(successful)
    if mean <= 0:
        return 1.0
    return max(0.0, 1.0 - abs(result.execution_time - mean) / mean)


def explain(result: AgentResult, score: float, confidence: float) -> str:
    if not result.success:
        return f"Agent failed: {result.error}"
    reasons = []
    if score > 0.8:
        reasons.append("High quality output")
    elif score > 0.6:
        reasons.append("Good output quality")
    else:
        reasons.append("Basic output quality")

    if confidence > 0.8:
        reasons.append("high confidence")
    elif confidence > 0.6:
        reasons.append("medium confidence")
    else:
        reasons.append("low confidence")

    if result.execution_time < 30:
        reasons.append("fast execution")
    elif result.execution_time < 60:
        reasons.append("reasonable execution time")
    else:
        reasons.append("slow execution")
    return ", ".join(reasons)


def score_results(results: Sequence[AgentResult]) -> list[AgentResult]:
    """Fill ``score``, ``confidence`` and ``reasoning`` on each result in place."""
    for result in results:
        result.score = calculate_score(result)
        result.confidence = calculate_confidence(result, results)
        result.reasoning = explain(result, result.score, result.confidence)
    return list(results)


def best_result(results: Sequence[AgentResult]) -> AgentResult | None:
    """Highest scored successful result; ties go to the earlier agent."""
    candidates = [r for r in results if r.success and r.score is not None]
    if not candidates:
        return None
    return max(candidates, key=lambda r: (r.score, r.confidence or 0.0))

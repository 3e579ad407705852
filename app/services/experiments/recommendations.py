from datetime import datetime
from typing import List

from app.services.experiments.domain import Arm, ExperimentSnapshot

# Winning conversion rate above which the approach is worth rolling out more widely
EXPANSION_RATE = 0.8


def build_recommendations(snapshot: ExperimentSnapshot, now: datetime) -> List[str]:
    recommendations: List[str] = []

    if snapshot.winner is not None:
        winner_config = snapshot.variant_configs.get(snapshot.winner) or {}
        label = winner_config.get("name") or snapshot.winner.value
        recommendations.append(
            f"Implement the {label} arm as the default for '{snapshot.name}' "
            f"({snapshot.target_metric})"
        )
        if snapshot.counts[snapshot.winner].conversion_rate > EXPANSION_RATE:
            recommendations.append("Consider expanding this approach to other assessment types")
        return recommendations

    recommendations.append("No clear winner identified - consider extending experiment duration")

    short_arms = [
        arm.value
        for arm in Arm
        if snapshot.counts[arm].exposed < snapshot.min_sample_size
    ]
    if short_arms:
        recommendations.append(
            f"Increase traffic allocation to reach the minimum sample size of "
            f"{snapshot.min_sample_size} per arm (short: {', '.join(short_arms)})"
        )

    if snapshot.is_overdue(now):
        recommendations.append(
            "Experiment is past its scheduled end time without a decision - "
            "review experiment design and success metrics"
        )

    return recommendations

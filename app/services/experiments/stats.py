import math
from typing import Tuple

from scipy import stats as scipy_stats

from app.services.experiments.domain import SignificanceResult
from app.services.experiments.errors import InsufficientData

SQRT_2 = math.sqrt(2.0)


def normal_cdf(x: float) -> float:
    # erfc keeps full precision in the lower tail where 1 + erf(x) would cancel
    return 0.5 * math.erfc(-x / SQRT_2)


def two_sided_p_value(z_score: float) -> float:
    """P(|Z| >= |z|) for a standard normal Z, i.e. 2 * (1 - Phi(|z|))."""
    return math.erfc(abs(z_score) / SQRT_2)


def z_critical(confidence_level: float) -> float:
    if not 0 < confidence_level < 1:
        raise ValueError(f"confidence_level must be in (0, 1), got {confidence_level}")
    alpha = 1 - confidence_level
    return float(scipy_stats.norm.ppf(1 - alpha / 2))


def _check_counts(successes: int, n: int) -> None:
    if n < 0 or successes < 0:
        raise ValueError("Counts must be non-negative")
    if successes > n:
        raise ValueError(f"Successes ({successes}) cannot exceed trials ({n})")


def calculate_pooled_proportion(successes_a: int, n_a: int, successes_b: int, n_b: int) -> float:
    total = n_a + n_b
    if total == 0:
        return 0.0
    return (successes_a + successes_b) / total


def calculate_standard_error(
    successes_a: int, n_a: int, successes_b: int, n_b: int, pooled: bool = True
) -> float:
    if pooled:
        p_pooled = calculate_pooled_proportion(successes_a, n_a, successes_b, n_b)
        se = math.sqrt(p_pooled * (1 - p_pooled) * (1 / n_a + 1 / n_b))
    else:
        # Unpooled SE for confidence intervals
        p_a = successes_a / n_a
        p_b = successes_b / n_b
        se = math.sqrt((p_a * (1 - p_a) / n_a) + (p_b * (1 - p_b) / n_b))

    return se


def calculate_confidence_interval(
    successes_a: int,
    n_a: int,
    successes_b: int,
    n_b: int,
    confidence_level: float = 0.95,
) -> Tuple[float, float]:
    """Wald interval on pA - pB, in proportion units."""
    diff = successes_a / n_a - successes_b / n_b
    margin_of_error = z_critical(confidence_level) * calculate_standard_error(
        successes_a, n_a, successes_b, n_b, pooled=False
    )
    return diff - margin_of_error, diff + margin_of_error


def calculate_rate_interval(
    successes: int, n: int, confidence_level: float = 0.95
) -> Tuple[float, float]:
    _check_counts(successes, n)
    if n == 0:
        return 0.0, 0.0

    rate = successes / n
    margin = z_critical(confidence_level) * math.sqrt(rate * (1 - rate) / n)

    return max(0.0, rate - margin), min(1.0, rate + margin)


def two_proportion_test(
    successes_a: int,
    n_a: int,
    successes_b: int,
    n_b: int,
    threshold: float = 0.05,
    confidence_level: float = 0.95,
) -> SignificanceResult:
    """
    Two-sided two-proportion z-test of arm A against arm B.

    The z-score is positive when A converts better than B. The confidence
    interval is reported alongside the test whether or not it is significant.

    Raises:
        InsufficientData: if either arm has no trials
        ValueError: on negative counts or more successes than trials
    """
    if n_a == 0 or n_b == 0:
        raise InsufficientData(f"Both arms need at least one trial (n_a={n_a}, n_b={n_b})")
    _check_counts(successes_a, n_a)
    _check_counts(successes_b, n_b)

    p_a = successes_a / n_a
    p_b = successes_b / n_b

    se = calculate_standard_error(successes_a, n_a, successes_b, n_b, pooled=True)

    if se == 0:
        # Both arms at 0% or both at 100%: no evidence of a difference
        z_score, p_value = 0.0, 1.0
    else:
        z_score = (p_a - p_b) / se
        p_value = two_sided_p_value(z_score)

    return SignificanceResult(
        z_score=z_score,
        p_value=p_value,
        confidence_interval=calculate_confidence_interval(
            successes_a, n_a, successes_b, n_b, confidence_level
        ),
        is_significant=p_value < threshold,
    )


def calculate_lift(control_rate: float, variant_rate: float) -> Tuple[float, float]:
    # Absolute lift in percentage points
    absolute_lift = (variant_rate - control_rate) * 100

    # Relative lift as percentage improvement
    if control_rate == 0:
        relative_lift = float("inf") if variant_rate > 0 else 0.0
    else:
        relative_lift = ((variant_rate - control_rate) / control_rate) * 100

    return absolute_lift, relative_lift


def calculate_sample_size_requirement(
    baseline_rate: float, minimum_detectable_effect: float, alpha: float = 0.05, power: float = 0.80
) -> int:
    """Per-arm sample size to detect ``minimum_detectable_effect`` percentage points."""
    if baseline_rate <= 0 or baseline_rate >= 1:
        return 0

    # Convert MDE from percentage points to proportion
    mde = minimum_detectable_effect / 100
    p1 = baseline_rate
    p2 = baseline_rate + mde

    if p2 <= 0 or p2 >= 1:
        return 0

    z_alpha = scipy_stats.norm.ppf(1 - alpha / 2)
    z_beta = scipy_stats.norm.ppf(power)

    p_pooled = (p1 + p2) / 2

    numerator = (
        z_alpha * math.sqrt(2 * p_pooled * (1 - p_pooled))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2

    denominator = (p2 - p1) ** 2

    if denominator == 0:
        return 0

    return math.ceil(numerator / denominator)

import pytest
from scipy import stats as scipy_stats

from app.services.experiments.errors import InsufficientData
from app.services.experiments.stats import (
    calculate_confidence_interval,
    calculate_lift,
    calculate_pooled_proportion,
    calculate_rate_interval,
    calculate_sample_size_requirement,
    normal_cdf,
    two_proportion_test,
    two_sided_p_value,
    z_critical,
)


class TestNormalCdf:
    def test_center(self):
        assert normal_cdf(0.0) == pytest.approx(0.5)

    @pytest.mark.parametrize("x", [-8.0, -4.5, -1.96, -0.5, 0.25, 1.0, 1.96, 3.3, 6.0])
    def test_matches_scipy(self, x):
        assert normal_cdf(x) == pytest.approx(scipy_stats.norm.cdf(x), rel=1e-9, abs=1e-15)

    def test_symmetry(self):
        for x in (0.1, 1.0, 2.5, 5.0):
            assert normal_cdf(x) + normal_cdf(-x) == pytest.approx(1.0, abs=1e-12)

    def test_lower_tail_keeps_precision(self):
        """Far tail must not collapse to zero the way 0.5 * (1 + erf(x)) does."""
        assert normal_cdf(-10.0) > 0
        assert normal_cdf(-10.0) == pytest.approx(scipy_stats.norm.cdf(-10.0), rel=1e-9)


class TestPValue:
    def test_two_sided(self):
        assert two_sided_p_value(1.959964) == pytest.approx(0.05, rel=1e-4)
        assert two_sided_p_value(-1.959964) == pytest.approx(0.05, rel=1e-4)

    def test_zero_z(self):
        assert two_sided_p_value(0.0) == pytest.approx(1.0)

    def test_matches_two_times_upper_tail(self):
        for z in (0.3, 1.2, 2.7, 4.0):
            assert two_sided_p_value(z) == pytest.approx(2 * scipy_stats.norm.sf(z), rel=1e-9)


class TestPooledProportion:
    def test_basic_pooled_proportion(self):
        assert calculate_pooled_proportion(20, 100, 30, 100) == pytest.approx(0.25)

    def test_unequal_sample_sizes(self):
        assert calculate_pooled_proportion(50, 200, 25, 100) == pytest.approx(0.25)

    def test_no_trials(self):
        assert calculate_pooled_proportion(0, 0, 0, 0) == 0.0


class TestTwoProportionTest:
    def test_significant_difference(self):
        # variant 40/100 against control 20/100
        result = two_proportion_test(40, 100, 20, 100)

        assert result.z_score == pytest.approx(3.0861, rel=1e-3)
        assert result.p_value < 0.05
        assert result.p_value == pytest.approx(0.00203, rel=0.01)
        assert result.is_significant

    def test_no_significant_difference(self):
        result = two_proportion_test(22, 100, 20, 100)

        assert result.z_score > 0
        assert result.p_value > 0.05
        assert not result.is_significant

    def test_z_sign_follows_argument_order(self):
        forward = two_proportion_test(150, 500, 100, 500)
        reverse = two_proportion_test(100, 500, 150, 500)

        assert forward.z_score == pytest.approx(-reverse.z_score)
        assert forward.p_value == pytest.approx(reverse.p_value)

    def test_deterministic(self):
        first = two_proportion_test(33, 120, 21, 118)
        second = two_proportion_test(33, 120, 21, 118)

        assert first == second

    def test_threshold_controls_significance(self):
        # p is roughly 0.037 here
        assert two_proportion_test(33, 100, 20, 100, threshold=0.05).is_significant
        assert not two_proportion_test(33, 100, 20, 100, threshold=0.01).is_significant

    def test_interval_reported_when_not_significant(self):
        result = two_proportion_test(22, 100, 20, 100)
        lower, upper = result.confidence_interval

        assert lower < 0.02 < upper

    def test_zero_trials_raises_insufficient_data(self):
        with pytest.raises(InsufficientData):
            two_proportion_test(0, 0, 5, 100)
        with pytest.raises(InsufficientData):
            two_proportion_test(5, 100, 0, 0)

    def test_more_successes_than_trials(self):
        with pytest.raises(ValueError):
            two_proportion_test(101, 100, 5, 100)

    def test_negative_counts(self):
        with pytest.raises(ValueError):
            two_proportion_test(-1, 100, 5, 100)

    def test_identical_zero_rates(self):
        """Zero pooled variance means no evidence either way."""
        result = two_proportion_test(0, 100, 0, 100)

        assert result.z_score == 0.0
        assert result.p_value == 1.0
        assert not result.is_significant

    def test_identical_full_rates(self):
        result = two_proportion_test(50, 50, 80, 80)

        assert result.p_value == 1.0


class TestConfidenceInterval:
    def test_wald_interval(self):
        lower, upper = calculate_confidence_interval(40, 100, 20, 100, 0.95)

        assert lower == pytest.approx(0.2 - 0.12396, abs=1e-4)
        assert upper == pytest.approx(0.2 + 0.12396, abs=1e-4)

    def test_narrower_interval_with_larger_sample(self):
        lower_small, upper_small = calculate_confidence_interval(25, 100, 20, 100)
        lower_large, upper_large = calculate_confidence_interval(250, 1000, 200, 1000)

        assert upper_large - lower_large < upper_small - lower_small

    def test_higher_confidence_is_wider(self):
        lower_95, upper_95 = calculate_confidence_interval(30, 200, 20, 200, 0.95)
        lower_99, upper_99 = calculate_confidence_interval(30, 200, 20, 200, 0.99)

        assert upper_99 - lower_99 > upper_95 - lower_95

    def test_z_critical(self):
        assert z_critical(0.95) == pytest.approx(1.959964, rel=1e-6)
        with pytest.raises(ValueError):
            z_critical(1.0)


class TestRateInterval:
    def test_basic(self):
        lower, upper = calculate_rate_interval(20, 100)

        assert lower == pytest.approx(0.2 - 1.959964 * 0.04, rel=1e-5)
        assert upper == pytest.approx(0.2 + 1.959964 * 0.04, rel=1e-5)

    def test_clamped_to_unit_range(self):
        lower, upper = calculate_rate_interval(1, 50)
        assert lower == 0.0
        assert upper < 1.0

    def test_no_trials(self):
        assert calculate_rate_interval(0, 0) == (0.0, 0.0)


class TestLiftCalculations:
    def test_positive_lift(self):
        absolute, relative = calculate_lift(0.20, 0.25)
        assert absolute == pytest.approx(5.0, rel=0.01)
        assert relative == pytest.approx(25.0, rel=0.01)

    def test_negative_lift(self):
        absolute, relative = calculate_lift(0.25, 0.20)
        assert absolute == pytest.approx(-5.0, rel=0.01)
        assert relative == pytest.approx(-20.0, rel=0.01)

    def test_zero_control_rate(self):
        absolute, relative = calculate_lift(0.0, 0.10)
        assert absolute == pytest.approx(10.0, rel=0.01)
        assert relative == float("inf")


class TestSampleSizeRequirement:
    def test_basic_sample_size(self):
        n = calculate_sample_size_requirement(
            baseline_rate=0.20, minimum_detectable_effect=5.0, alpha=0.05, power=0.80
        )

        assert isinstance(n, int)
        # Standard tables put this at roughly 1,100 per arm
        assert 1000 < n < 1200

    def test_smaller_effect_needs_more_samples(self):
        assert calculate_sample_size_requirement(0.20, 2.0) > calculate_sample_size_requirement(
            0.20, 10.0
        )

    def test_higher_power_needs_more_samples(self):
        assert calculate_sample_size_requirement(
            0.20, 5.0, power=0.95
        ) > calculate_sample_size_requirement(0.20, 5.0, power=0.80)

    def test_invalid_baseline(self):
        assert calculate_sample_size_requirement(0.0, 5.0) == 0
        assert calculate_sample_size_requirement(0.98, 5.0) == 0

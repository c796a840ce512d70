"""
Tests for TMM normalization factors.
"""

import numpy as np
import pandas as pd
import pytest
from scipy.stats import rankdata

from expression_container import ExpressionContainer, Sample
from normalization import TMMNormalizer, calc_norm_factors, choose_reference, tmm_factor
from pipeline_errors import ConfigurationError, DegenerateNormalizationError


def _container(counts: pd.DataFrame, groups) -> ExpressionContainer:
    samples = [Sample(code=c, name=c, group=g) for c, g in zip(counts.columns, groups)]
    return ExpressionContainer.from_counts(counts, samples)


@pytest.fixture
def base_counts(rng):
    """200 genes × 4 Poisson samples sharing one expression profile."""
    profile = rng.uniform(100, 1000, size=200)
    data = rng.poisson(profile[:, None], size=(200, 4))
    return pd.DataFrame(
        data,
        index=[f"g{i}" for i in range(200)],
        columns=["s0", "s1", "s2", "s3"],
    )


def test_factors_have_geometric_mean_one(normalized_container):
    factors = normalized_container.norm_factors.to_numpy()
    assert np.exp(np.mean(np.log(factors))) == pytest.approx(1.0)
    assert (factors > 0).all()


def test_identical_profiles_give_unit_factors():
    profile = np.array([10, 50, 100, 500, 1000, 3])
    counts = pd.DataFrame({"a": profile, "b": profile * 2, "c": profile * 5})
    factors = calc_norm_factors(counts)
    np.testing.assert_allclose(factors.to_numpy(), 1.0)


def test_tmm_factor_of_sample_against_itself_is_one():
    obs = np.array([5, 10, 20, 40, 80])
    assert tmm_factor(obs, obs) == 1.0


def test_composition_bias_is_corrected(base_counts):
    """
    Boosting 20 genes 20x in one sample inflates its library; TMM pulls the
    CPM of the unchanged genes back in line with the other samples.
    """
    counts = base_counts.copy()
    boosted = counts.index[:20]
    counts.loc[boosted, "s3"] *= 20
    container = _container(counts, ["A", "A", "B", "B"])
    normalized = TMMNormalizer().normalize(container)

    factors = normalized.norm_factors
    assert factors["s3"] < 0.6 * factors["s0"]

    unchanged = counts.index[20:]
    raw = np.log2(container.cpm().loc[unchanged, "s3"] / container.cpm().loc[unchanged, "s0"])
    tmm = np.log2(normalized.cpm().loc[unchanged, "s3"] / normalized.cpm().loc[unchanged, "s0"])
    assert abs(np.median(raw)) > 1.0
    assert abs(np.median(tmm)) < 0.1


def test_tenfold_library_with_identical_composition(base_counts):
    """
    A sample that is an exact 10x copy of another has the same composition:
    its TMM factor matches the original's, its effective library is 10x larger
    and its CPM ranking is unchanged.
    """
    counts = base_counts.copy()
    counts["big"] = counts["s0"] * 10
    container = _container(counts, ["A", "A", "B", "B", "B"])
    normalized = TMMNormalizer().normalize(container)

    factors = normalized.norm_factors
    assert abs(np.log2(factors["big"] / factors["s0"])) < 0.1
    assert np.exp(np.mean(np.log(factors))) == pytest.approx(1.0)

    effective = normalized.effective_lib_size
    assert 9.0 < effective["big"] / effective["s0"] < 11.0

    cpm = normalized.cpm()
    np.testing.assert_array_equal(rankdata(cpm["big"]), rankdata(cpm["s0"]))


def test_disjoint_samples_raise_degenerate_error():
    counts = pd.DataFrame(
        {
            "A": [50] * 5 + [0] * 5,
            "B": [0] * 5 + [50] * 5,
        },
        index=[f"g{i}" for i in range(10)],
    )
    with pytest.raises(DegenerateNormalizationError) as excinfo:
        calc_norm_factors(counts)
    assert excinfo.value.details["sample"] == "B"
    assert excinfo.value.details["reference"] == "A"


def test_zero_library_raises_degenerate_error():
    counts = pd.DataFrame({"A": [1, 2, 3], "B": [0, 0, 0]})
    with pytest.raises(DegenerateNormalizationError, match="zero library size"):
        calc_norm_factors(counts)


def test_explicit_reference_sample(base_counts):
    factors = calc_norm_factors(base_counts, ref_column="s2")
    assert list(factors.index) == list(base_counts.columns)
    with pytest.raises(ConfigurationError):
        calc_norm_factors(base_counts, ref_column="nope")


def test_reference_is_closest_to_mean_upper_quartile():
    counts = np.array([[1, 1, 1], [2, 2, 9], [3, 4, 9], [4, 5, 9]], dtype=float)
    lib = counts.sum(axis=0)
    assert choose_reference(counts, lib) in (0, 1, 2)
    f75 = np.quantile(counts / lib, 0.75, axis=0)
    assert choose_reference(counts, lib) == int(np.argmin(np.abs(f75 - f75.mean())))


def test_normalize_keeps_counts(container):
    normalized = TMMNormalizer().normalize(container)
    pd.testing.assert_frame_equal(normalized.counts, container.counts)
    pd.testing.assert_series_equal(normalized.lib_size, container.lib_size)
    assert not np.allclose(normalized.norm_factors, 1.0)

import numpy as np
import pytest

from memoir.Bootstrap import Resampler, ESTIMATES
from memoir.Records import MemoirWarning


class TestResampler:
    def test_standard_errors(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        resampler = Resampler(records, effort, wear_rates, breeding_age=2)
        errors = resampler.bootstrap(iterations=8, seed=3)

        assert list(errors.columns) == [f'{name}_SE' for name in ESTIMATES]
        assert len(resampler.estimates) + len(resampler.failed_iterations) == 8
        assert len(resampler.estimates) >= 2
        for name in ESTIMATES:
            expected = resampler.estimates[name].std(ddof=1)
            assert errors[f'{name}_SE'].iloc[0] == pytest.approx(expected, nan_ok=True)
        assert (errors.fillna(0).to_numpy() >= 0).all()

    def test_reproducible(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        first = Resampler(records, effort, wear_rates, breeding_age=2)
        second = Resampler(records, effort, wear_rates, breeding_age=2)
        first.bootstrap(iterations=3, seed=10)
        second.bootstrap(iterations=3, seed=10)
        np.testing.assert_array_equal(first.estimates.to_numpy(), second.estimates.to_numpy())

    def test_failed_iterations_are_omitted(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        resampler = Resampler(records, effort, wear_rates, breeding_age=2, min_records=10 ** 6)
        with pytest.warns(MemoirWarning):
            errors = resampler.bootstrap(iterations=3, seed=1)
        assert sorted(resampler.failed_iterations) == [1, 2, 3]
        assert resampler.estimates.empty
        assert errors.isna().all().all()

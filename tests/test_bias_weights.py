import numpy as np
import pandas as pd
import pytest

from memoir.Bias_weights import (
    BiasWeightEstimator, age_coverage, inverse_ratio_weights, fit_recoveries_on_effort, linear_model,
)
from memoir.Records import (
    GROUP, ELAPSED_YEARS, WEIGHT_COLUMNS, ITERATION, YEAR, MARKED, AGE_CLASS, AT_RISK,
    LOCATION, FitResult, IterationId, InputMismatchError, MemoirWarning,
)
import memoir.Bias_weights
from memoir.Simulation import PopulationSimulator

from conftest import TEST_SPECIES, build_records, build_effort


class TestHelpers:
    def test_age_coverage_oldest_age_smallest(self):
        np.testing.assert_array_equal(age_coverage([5, 0, 10, 2]), [17, 15, 5, 5])

    def test_inverse_ratio_carries_forward_zero_exposure(self):
        np.testing.assert_allclose(inverse_ratio_weights([10, 5, 0, 2]), [1.0, 2.0, 2.0, 5.0])

    def test_regression_recovers_line(self):
        marked = np.array([10, 20, 40, 80, 160], dtype=float)
        result = fit_recoveries_on_effort(marked, linear_model(marked, 2.0, 0.05))
        assert result.ok
        np.testing.assert_allclose(result.value, [2.0, 0.05], rtol=1e-4)

    def test_regression_respects_bounds(self):
        marked = np.array([10, 20, 40, 80], dtype=float)
        result = fit_recoveries_on_effort(marked, [8, 6, 4, 2])
        assert result.ok
        assert result.value[0] >= 0.01
        assert result.value[1] >= 0


class TestEstimator:
    def test_weight_columns(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        fitted = BiasWeightEstimator(records, effort, wear_rates).estimate_weights([TEST_SPECIES])
        assert len(fitted) == len(records)
        for column in [GROUP, ELAPSED_YEARS] + WEIGHT_COLUMNS:
            assert column in fitted.columns
        assert (fitted[WEIGHT_COLUMNS] > 0).all().all()
        np.testing.assert_allclose(fitted['Waib'], fitted['Wa'] * fitted['Wi'] * fitted['Wb'])
        np.testing.assert_allclose(fitted['Wail'], fitted['Wal'] * fitted['Wil'])
        np.testing.assert_allclose(fitted['Wbail'], fitted['Wb'] * fitted['Wal'] * fitted['Wil'])

    def test_idempotent(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        estimator = BiasWeightEstimator(records, effort, wear_rates, verbose=False)
        first = estimator.estimate_weights([TEST_SPECIES])
        second = estimator.estimate_weights([TEST_SPECIES])
        np.testing.assert_array_equal(first[WEIGHT_COLUMNS].to_numpy(), second[WEIGHT_COLUMNS].to_numpy())
        again = BiasWeightEstimator(records, effort, wear_rates, verbose=False).estimate_weights([TEST_SPECIES])
        np.testing.assert_array_equal(first[WEIGHT_COLUMNS].to_numpy(), again[WEIGHT_COLUMNS].to_numpy())

    def test_inputs_not_modified(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        before = records.copy()
        BiasWeightEstimator(records, effort, wear_rates, verbose=False).estimate_weights()
        pd.testing.assert_frame_equal(records, before)

    def test_age_weight_monotone(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        fitted = BiasWeightEstimator(records, effort, wear_rates).estimate_weights([TEST_SPECIES])
        assert fitted['Wa'].min() == pytest.approx(1.0)
        assert (fitted['Wa'] >= 1).all()
        by_age = fitted.groupby(ELAPSED_YEARS)['Wa'].first().sort_index()
        assert by_age.is_monotonic_increasing

    def test_effort_weight_reference_is_one(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        fitted = BiasWeightEstimator(records, effort, wear_rates).estimate_weights([TEST_SPECIES])
        assert (fitted['Wi'] >= 1 - 1e-12).all()

    def test_single_location_matches_global(self, wear_rates):
        marked = {(year, 1): 40 + 10 * (year % 3) for year in range(1960, 1970)}
        rows = [(year, 1, recovery, 0, 1 + (recovery - year) % 2)
                for year in range(1960, 1970) for recovery in range(year, 1970)]
        records, effort = build_records(rows), build_effort(marked)
        fitted = BiasWeightEstimator(records, effort, wear_rates).estimate_weights([TEST_SPECIES])
        np.testing.assert_allclose(fitted['Wal'], fitted['Wa'])
        np.testing.assert_allclose(fitted['Wil'], fitted['Wi'])

    def test_no_bias_across_uniform_locations(self, single_cohort_three_locations, wear_rates):
        records, effort = single_cohort_three_locations
        fitted = BiasWeightEstimator(records, effort, wear_rates).estimate_weights([TEST_SPECIES])
        assert sorted(fitted['Mark_location'].unique()) == ['1', '2', '3']
        np.testing.assert_allclose(fitted['Wal'], 1.0, atol=1e-6)
        np.testing.assert_allclose(fitted['Wil'], 1.0, atol=1e-3)
        np.testing.assert_allclose(fitted['Wa'], 1.0, atol=1e-6)

    def test_wide_effort_accepted(self, single_cohort_three_locations, wear_rates):
        records, effort = single_cohort_three_locations
        wide = effort.pivot_table(index=[YEAR, 'Species'], columns='Location', values=MARKED).reset_index()
        wide.columns.name = None
        long_fit = BiasWeightEstimator(records, effort, wear_rates).estimate_weights([TEST_SPECIES])
        wide_fit = BiasWeightEstimator(records, wide, wear_rates).estimate_weights([TEST_SPECIES])
        np.testing.assert_allclose(long_fit[WEIGHT_COLUMNS].to_numpy(), wide_fit[WEIGHT_COLUMNS].to_numpy())

    def test_side_outputs(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        estimator = BiasWeightEstimator(records, effort, wear_rates)
        estimator.estimate_weights([TEST_SPECIES])
        totals = estimator.applications[estimator.applications['Location'] == 'all']
        assert totals['Recovered'].sum() == len(records)
        assert (estimator.applications['Predicted'] > 0).all()
        life = estimator.life_tables
        assert life[AGE_CLASS].tolist() == list(range(1, len(life) + 1))
        assert life[AT_RISK].notna().all()


class TestExclusion:
    @staticmethod
    def scheme(n_records):
        effort = build_effort({(1970, 1): 50, (1971, 1): 50})
        rows = [(1970, 1, 1970 + i % 2, 0, 1) for i in range(n_records)]
        return build_records(rows), effort

    def test_nineteen_records_excluded(self, wear_rates):
        records, effort = self.scheme(19)
        estimator = BiasWeightEstimator(records, effort, wear_rates)
        fitted = estimator.estimate_weights([TEST_SPECIES])
        assert fitted.empty
        assert TEST_SPECIES in estimator.excluded_groups

    def test_twenty_records_included(self, wear_rates):
        records, effort = self.scheme(20)
        estimator = BiasWeightEstimator(records, effort, wear_rates)
        fitted = estimator.estimate_weights([TEST_SPECIES])
        assert len(fitted) == 20
        assert estimator.excluded_groups == {}

    def test_records_before_first_effort_year_do_not_count(self, wear_rates):
        early = build_records([(1969, 1, 1969, 0, 1)])
        records, effort = self.scheme(20)
        estimator = BiasWeightEstimator(pd.concat([records, early], ignore_index=True), effort, wear_rates)
        fitted = estimator.estimate_weights([TEST_SPECIES])
        assert len(fitted) == 20
        assert (fitted['Recovery_year'] >= 1970).all()

        records, effort = self.scheme(19)
        estimator = BiasWeightEstimator(pd.concat([records, early], ignore_index=True), effort, wear_rates)
        assert estimator.estimate_weights([TEST_SPECIES]).empty
        assert TEST_SPECIES in estimator.excluded_groups

    def test_unmarked_location_records_do_not_qualify(self, wear_rates):
        records, effort = self.scheme(20)
        stray = build_records([(1970, 9, 1971, 0, 5)])
        estimator = BiasWeightEstimator(pd.concat([records.iloc[:15], stray], ignore_index=True),
                                        effort, wear_rates)
        assert estimator.estimate_weights([TEST_SPECIES]).empty

    def test_group_missing_from_effort(self, wear_rates):
        records, effort = self.scheme(25)
        estimator = BiasWeightEstimator(records, effort, wear_rates)
        assert estimator.estimate_weights(['Other species']).empty
        assert 'Other species' in estimator.excluded_groups

    def test_missing_wear_rate_excludes_with_warning(self):
        records, effort = self.scheme(25)
        wear_rates = pd.DataFrame({'Species': ['Other species'], 'Wear_rate': [1.0]})
        estimator = BiasWeightEstimator(records, effort, wear_rates)
        with pytest.warns(MemoirWarning):
            assert estimator.estimate_weights([TEST_SPECIES]).empty


class TestGroupKeys:
    def test_iteration_keys_need_iteration_column(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        with pytest.raises(InputMismatchError):
            BiasWeightEstimator(records, effort, wear_rates).estimate_weights([1])

    def test_mixed_keys_rejected(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        with pytest.raises(InputMismatchError):
            BiasWeightEstimator(records, effort, wear_rates).estimate_weights([TEST_SPECIES, 1])

    def test_missing_columns_rejected(self, ten_year_scheme, wear_rates):
        records, effort = ten_year_scheme
        with pytest.raises(InputMismatchError):
            BiasWeightEstimator(records.drop(columns=['Censored']), effort, wear_rates)

    def test_simulated_iterations(self):
        sim = PopulationSimulator(num_locations=3, history_years=40, mean_batches_per_year=1.0, iterations=3)
        records, effort, wear_rates = sim.simulate(seed=12)
        estimator = BiasWeightEstimator(records, effort, wear_rates)
        fitted = estimator.estimate_weights()
        assert set(fitted[GROUP]) | set(estimator.excluded_groups) == set(records[ITERATION])
        assert (fitted[WEIGHT_COLUMNS] > 0).all().all()
        assert (fitted.groupby(GROUP)['Wa'].min() >= 1.0).all()


def failed_regression(marked, recovered):
    return FitResult.failure('singular design')


class TestRegressionFallback:
    def test_mean_recoveries_for_location(self, ten_year_scheme, wear_rates, monkeypatch):
        records, effort = ten_year_scheme
        monkeypatch.setattr(memoir.Bias_weights, 'fit_recoveries_on_effort', failed_regression)
        estimator = BiasWeightEstimator(records, effort, wear_rates, verbose=False)
        marked = np.array([30, 60, 90, 120], dtype=float)
        recovered = np.array([1, 4, 2, 5], dtype=float)
        with pytest.warns(MemoirWarning, match='location 2'):
            predicted = estimator.predict_recoveries(marked, recovered, IterationId(3), location='2')
        np.testing.assert_allclose(predicted, np.full(4, 3.0))

    def test_failed_fits_keep_weights_finite(self, ten_year_scheme, wear_rates, monkeypatch):
        records, effort = ten_year_scheme
        monkeypatch.setattr(memoir.Bias_weights, 'fit_recoveries_on_effort', failed_regression)
        estimator = BiasWeightEstimator(records, effort, wear_rates, verbose=False)
        with pytest.warns(MemoirWarning) as caught:
            fitted = estimator.estimate_weights([TEST_SPECIES])
        messages = [str(w.message) for w in caught]
        assert any('location 1' in m for m in messages)
        assert any('location 2' in m for m in messages)

        applications = estimator.applications
        for location in ('1', '2'):
            rows = applications[applications[LOCATION] == location]
            np.testing.assert_allclose(rows['Predicted'], rows['Recovered'].mean())
        assert np.isfinite(fitted['Wil']).all()
        assert (fitted['Wil'] >= 1).all()
        np.testing.assert_allclose(fitted['Wi'], 1.0)

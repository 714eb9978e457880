import numpy as np
import pandas as pd
from sklearn.utils import resample

from memoir.Bias_weights import BiasWeightEstimator
from memoir.Records import SPECIES, warn
from memoir.Simulation import make_streams
from memoir.Survival_curves import SurvivalCurveAggregator, NON_PARAMETRIC
from memoir.Survival_rates import AgeClassSurvivalSummarizer


ESTIMATES = ['Juvenile', 'Adult', 'First_year']


class Resampler:
    """
    Bootstrap standard errors of juvenile, adult and first-year survival for
    one species: records are resampled with replacement and the whole chain
    (bias weights, pooled Kaplan-Meier curve, age-class rates) is rerun on each
    resample. Effort and wear rates are not resampled.
    """

    def __init__(self, records, effort, wear_rates, breeding_age, flip_censoring=True,
                 dead_only=False, min_records=20):
        self.records = records
        self.effort = effort
        self.wear_rates = wear_rates
        self.breeding_age = breeding_age
        self.flip_censoring = flip_censoring
        self.dead_only = dead_only
        self.min_records = min_records

        self.estimates = None
        self.failed_iterations = {}

    def replicate(self, sample):
        species = sample[SPECIES].iloc[0]
        estimator = BiasWeightEstimator(sample, self.effort, self.wear_rates,
                                        min_records=self.min_records, verbose=False)
        fitted = estimator.estimate_weights(groups=[species])
        aggregator = SurvivalCurveAggregator(flip_censoring=self.flip_censoring, dead_only=self.dead_only)
        curve = aggregator.aggregate(fitted, NON_PARAMETRIC)
        _, rates = AgeClassSurvivalSummarizer(self.breeding_age).summarize(curve)
        return rates.iloc[0][ESTIMATES].to_dict()

    def bootstrap(self, iterations=1000, seed=None):
        """
        Returns a one-row table with the sample standard deviation (ddof=1) of
        each estimate across the replicates that completed. Failed replicates
        are listed in self.failed_iterations; per-replicate estimates are kept
        in self.estimates.
        """
        streams = make_streams(seed, iterations)
        rows = []
        self.failed_iterations = {}
        for i, rng in enumerate(streams, start=1):
            sample = resample(self.records, replace=True, n_samples=len(self.records),
                              random_state=int(rng.integers(2 ** 32 - 1)))
            try:
                row = self.replicate(sample.reset_index(drop=True))
            except Exception as e:
                self.failed_iterations[i] = str(e)
                warn(f"Bootstrap iteration {i} failed and was omitted: {e}")
                continue
            row['Iteration'] = i
            rows.append(row)

        self.estimates = pd.DataFrame(rows, columns=['Iteration'] + ESTIMATES)
        errors = {f'{name}_SE': (self.estimates[name].std(ddof=1) if self.estimates[name].notna().sum() > 1
                                 else np.nan)
                  for name in ESTIMATES}
        standard_errors = pd.DataFrame([errors])

        print(f"Bootstrap: {len(rows)} of {iterations} iterations completed.")
        print(standard_errors.to_string(index=False))
        return standard_errors

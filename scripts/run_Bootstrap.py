"""
Automated MEMOIR analysis of field mark-recovery data for one species.

Reads records, annual marking effort and band wear rates from Data/Recoveries,
fits the bias weights, builds the pooled survival curves, estimates age-class
and juvenile/adult survival with senescence, and bootstraps standard errors.
Results are written to Output/Results_Bootstrap.
"""


from pathlib import Path
import sys

import pandas as pd

# Path handling: repository-root relative
repo_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(repo_root))

from memoir.Bias_weights import BiasWeightEstimator
from memoir.Bootstrap import Resampler
from memoir.Records import MARKED_DATE, RECOVERED_DATE
from memoir.Survival_curves import SurvivalCurveAggregator
from memoir.Survival_rates import AgeClassSurvivalSummarizer, SenescenceEstimator

# Fixed paths
records_path = repo_root / 'Data' / 'Recoveries' / 'Records.csv'
effort_path = repo_root / 'Data' / 'Recoveries' / 'Effort.csv'
wear_path = repo_root / 'Data' / 'Recoveries' / 'Wear_rates.csv'
output_dir = repo_root / 'Output' / 'Results_Bootstrap'

species = 'Puffinus tenuirostris'
breeding_age = 5
flip_censoring = False                # field records: Censored == 1 is a dead recovery
dead_only = False
parametric_family = 'weibull'
bootstrap_iterations = 1000
seed = 1

records = pd.read_csv(records_path, parse_dates=[MARKED_DATE, RECOVERED_DATE])
effort = pd.read_csv(effort_path)
wear_rates = pd.read_csv(wear_path)
records = records[records['Species'] == species]

print("\n--------------------------Bias weights-----------------------------------------")
estimator = BiasWeightEstimator(records, effort, wear_rates)
fitted = estimator.estimate_weights(groups=[species])
print(fitted.head().to_string())

print("\n--------------------------Survival curves and rates-----------------------------------------")
aggregator = SurvivalCurveAggregator(flip_censoring=flip_censoring, dead_only=dead_only)
km_curve, parametric_curve = aggregator.aggregate_all(fitted, family=parametric_family)

age_classes, rates = AgeClassSurvivalSummarizer(breeding_age).summarize(km_curve)
print(age_classes.to_string(index=False))
print(rates.to_string(index=False))

senescence = SenescenceEstimator(start_age=breeding_age)
coefficients = senescence.fit(age_classes)

print("\n--------------------------Bootstrap-----------------------------------------")
resampler = Resampler(records, effort, wear_rates, breeding_age,
                      flip_censoring=flip_censoring, dead_only=dead_only)
standard_errors = resampler.bootstrap(iterations=bootstrap_iterations, seed=seed)

try:
    output_dir.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(output_dir / 'MEMOIR_results.xlsx') as writer:
        fitted.to_excel(writer, sheet_name='Fitted_records', index=False)
        estimator.applications.to_excel(writer, sheet_name='Applications', index=False)
        estimator.life_tables.to_excel(writer, sheet_name='Life_table', index=False)
        age_classes.to_excel(writer, sheet_name='Age_classes', index=False)
        rates.to_excel(writer, sheet_name='Rates', index=False)
        coefficients.to_excel(writer, sheet_name='Senescence', index=False)
        resampler.estimates.to_excel(writer, sheet_name='Bootstrap_estimates', index=False)
        standard_errors.to_excel(writer, sheet_name='Bootstrap_SE', index=False)
    km_curve.to_csv(output_dir / 'KM_curve.csv', index=False)
    parametric_curve.to_csv(output_dir / 'Parametric_curve.csv', index=False)
    print(f"Saved results to {output_dir}")
except Exception as e:
    print(f"Warning: could not save results: {e}")

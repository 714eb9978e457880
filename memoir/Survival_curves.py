import warnings

import numpy as np
import pandas as pd
from autograd import numpy as anp
from autograd.scipy.stats import norm as anorm
from lifelines import (KaplanMeierFitter, WeibullFitter, ExponentialFitter, LogNormalFitter,
                       LogLogisticFitter)
from lifelines.exceptions import ConvergenceError
from lifelines.fitters import ParametricUnivariateFitter

from memoir.Records import (
    DAYS_PER_YEAR, ELAPSED_DAYS, MARK_YEAR, MARK_LOCATION, RECOVERY_YEAR, CENSORED, GROUP,
    FitResult, InputMismatchError, require_columns, warn,
)


DENSE_CURVE_STEPS = 1000
NON_PARAMETRIC = 'non-parametric'
PARAMETRIC = 'parametric'
CURVE_COLUMNS = [GROUP, 'Age_days', 'Number_alive', 'Prop_alive']


class GaussianFitter(ParametricUnivariateFitter):
    """Normally distributed lifetimes: S(t) = 1 - Phi((t - mu) / sigma)."""
    _fitted_parameter_names = ['mu_', 'sigma_']
    _bounds = [(None, None), (0, None)]

    def _cumulative_hazard(self, params, times):
        mu_, sigma_ = params
        return -anorm.logcdf((mu_ - times) / sigma_)


class LogisticFitter(ParametricUnivariateFitter):
    """Logistically distributed lifetimes: S(t) = 1 / (1 + exp((t - mu) / s))."""
    _fitted_parameter_names = ['mu_', 's_']
    _bounds = [(None, None), (0, None)]

    def _cumulative_hazard(self, params, times):
        mu_, s_ = params
        return anp.logaddexp(0, (times - mu_) / s_)


PARAMETRIC_FAMILIES = {
    'weibull': WeibullFitter,
    'exponential': ExponentialFitter,
    'gaussian': GaussianFitter,
    'logistic': LogisticFitter,
    'lognormal': LogNormalFitter,
    'loglogistic': LogLogisticFitter,
}


def initial_point(family, durations):
    """Starting values for the location-scale families, which lifelines cannot guess."""
    if family == 'gaussian':
        return np.array([np.mean(durations), max(np.std(durations), 1.0)])
    if family == 'logistic':
        return np.array([np.mean(durations), max(np.std(durations) * np.sqrt(3) / np.pi, 1.0)])
    return None


def fit_parametric(family, durations, events, weights):
    fitter = PARAMETRIC_FAMILIES[family]()
    try:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            fitter.fit(durations, event_observed=events, weights=weights,
                       initial_point=initial_point(family, durations))
    except (ConvergenceError, ValueError, np.linalg.LinAlgError) as e:
        return FitResult.failure(e)
    if not np.all(np.isfinite(fitter.params_.to_numpy())):
        return FitResult.failure(f"non-finite parameters {fitter.params_.to_dict()}")
    return FitResult(value=fitter)


def observation_history_days(location_records, group_records):
    """Days between the first marking year at a location and the end of the last recovery year."""
    return (group_records[RECOVERY_YEAR].max() - location_records[MARK_YEAR].min() + 1) * DAYS_PER_YEAR


class SurvivalCurveAggregator:
    """
    Pools per-location survival curves of weighted records into one dense
    survival-by-age curve per group.

    Each location is fitted separately, the fitted curve is sampled at evenly
    spaced ages from 0 to the oldest elapsed time in the group, and the samples
    are averaged across locations weighted by the number of records at each
    location. Number_alive is the weighted sum, Prop_alive the weighted mean.
    """

    def __init__(self, flip_censoring=True, dead_only=False, weight_column='Wbail',
                 steps=DENSE_CURVE_STEPS):
        """
        Parameters:
        - flip_censoring: treat Censored == 0 as the death event (simulated and
          MEMOIR-coded records). When False, Censored == 1 is the death event.
        - dead_only: keep only records ending in a death.
        - weight_column: bias weight used as (rounded) frequency weight.
        - steps: number of intervals between sampled ages.
        """
        self.flip_censoring = flip_censoring
        self.dead_only = dead_only
        self.weight_column = weight_column
        self.steps = steps
        self.skipped_locations = []

    def prepare(self, fitted):
        require_columns(fitted, [GROUP, ELAPSED_DAYS, MARK_YEAR, MARK_LOCATION, RECOVERY_YEAR, CENSORED,
                                 self.weight_column], 'fitted records')
        data = fitted.copy()
        data['Event'] = 1 - data[CENSORED] if self.flip_censoring else data[CENSORED]
        if self.dead_only:
            data = data[data['Event'] == 1]
        data['Frequency'] = np.round(data[self.weight_column]).astype(int)
        return data

    def aggregate(self, fitted, mode=NON_PARAMETRIC, family='weibull'):
        """
        Dense survival curve per group, with CURVE_COLUMNS.

        mode is NON_PARAMETRIC (weighted Kaplan-Meier per location) or PARAMETRIC
        (a lifelines univariate fitter of the given family per location, fitted
        only where a location has at least two records and an observation
        history at least as long as the oldest elapsed time in the group).

        The pooled Kaplan-Meier curve is normalised by the records of every
        location. The pooled parametric curve is normalised by the records of
        the locations that were fitted, so locations that were skipped do not
        pull it towards zero.
        """
        if mode not in (NON_PARAMETRIC, PARAMETRIC):
            raise InputMismatchError(f"Unknown curve mode {mode!r}; use {NON_PARAMETRIC!r} or {PARAMETRIC!r}.")
        if mode == PARAMETRIC and family not in PARAMETRIC_FAMILIES:
            raise InputMismatchError(f"Unknown distribution family {family!r}; "
                                     f"choose from {sorted(PARAMETRIC_FAMILIES)}.")

        data = self.prepare(fitted)
        self.skipped_locations = []
        curves = []
        for group, group_records in data.groupby(GROUP, sort=False):
            curve = self.group_curve(group, group_records, mode, family)
            if curve is not None:
                curves.append(curve)

        if not curves:
            return pd.DataFrame(columns=CURVE_COLUMNS)
        return pd.concat(curves, ignore_index=True)

    def aggregate_all(self, fitted, family='weibull'):
        """Both curve types, as (non-parametric, parametric)."""
        return (self.aggregate(fitted, NON_PARAMETRIC),
                self.aggregate(fitted, PARAMETRIC, family))

    def group_curve(self, group, group_records, mode, family):
        if group_records.empty:
            return None
        max_elapsed = float(group_records[ELAPSED_DAYS].max())
        ages = np.linspace(0, max_elapsed, self.steps + 1)

        number_alive = np.zeros(len(ages))
        total = 0
        for location, records in group_records.groupby(MARK_LOCATION, sort=True):
            if mode == NON_PARAMETRIC:
                survival = self.location_km(records, ages)
            else:
                survival = self.location_parametric(group, location, records, group_records, family, ages)
            if survival is None:
                continue
            number_alive += len(records) * survival
            total += len(records)

        if total == 0:
            return None
        return pd.DataFrame({GROUP: group, 'Age_days': ages, 'Number_alive': number_alive,
                             'Prop_alive': number_alive / total})

    def location_km(self, records, ages):
        kmf = KaplanMeierFitter()
        kmf.fit(records[ELAPSED_DAYS], event_observed=records['Event'], weights=records['Frequency'])
        return kmf.survival_function_at_times(ages).to_numpy()

    def location_parametric(self, group, location, records, group_records, family, ages):
        if len(records) < 2:
            return None
        if observation_history_days(records, group_records) < ages[-1]:
            return None
        if records['Event'].sum() == 0:
            self.skip(group, location, 'no deaths recorded')
            return None

        result = fit_parametric(family, records[ELAPSED_DAYS].to_numpy(dtype=float),
                                records['Event'].to_numpy(), records['Frequency'].to_numpy())
        if not result.ok:
            self.skip(group, location, result.error)
            return None
        survival = result.value.survival_function_at_times(ages).to_numpy()
        if not np.all(np.isfinite(survival)):
            self.skip(group, location, 'undefined predicted survival')
            return None
        return np.clip(survival, 0, 1)

    def skip(self, group, location, reason):
        self.skipped_locations.append((group, location, reason))
        warn(f"The parametric survival fit failed for group {group}, location {location} ({reason}); "
             f"the location was left out of the pooled curve.")

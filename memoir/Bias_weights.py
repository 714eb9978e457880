"""
Observation-bias weights for mark-recovery records.

Each record gets the odds of it having been missed, relative to the stratum in
which detection was most likely, for three independent sources of bias:

- Wa / Wal: age coverage. Old ages can only be reached by animals marked long
  enough ago, so fewer marked animals were ever available to be found at them.
- Wi / Wil: research effort. Recoveries follow the number of animals being
  marked in a year; years of low effort are under-represented.
- Wb: band wear. Older bands are more likely to have been lost before the
  animal was found.

The location-stratified forms (Wal, Wil) are fitted separately for each
marking location. Combined weights: Waib = Wa*Wi*Wb, Wail = Wal*Wil and
Wbail = Wb*Wal*Wil, the last being the one used for survival fitting.
"""

import warnings

import numpy as np
import pandas as pd
from scipy.optimize import curve_fit
from lifelines import KaplanMeierFitter

from memoir.Band_wear import BandWearModel, WEAR_LOSS_THRESHOLD, wear_rate_lookup
from memoir.Records import (
    DAYS_PER_YEAR, ITERATION, SPECIES, YEAR, LOCATION, MARKED, ELAPSED_DAYS, MARK_YEAR,
    MARK_LOCATION, RECOVERY_YEAR, CENSORED, GROUP, ELAPSED_YEARS, AGE_CLASS, PROP_SURV, AT_RISK,
    RECORD_COLUMNS, IterationId, FitResult, InputMismatchError,
    resolve_group_keys, require_columns, normalize_effort, carry_forward, warn,
)


MIN_RECORDS = 20
REGRESSION_START = (5.0, 0.1)
REGRESSION_LOWER = (0.01, 0.0)
REGRESSION_MAXFEV = 10000


def linear_model(marked, a, b):
    return a + b * marked


def fit_recoveries_on_effort(marked, recovered):
    """
    Bounded least-squares fit of annual recoveries on annual marking effort,
    recovered = a + b * marked with a >= 0.01 and b >= 0.
    """
    marked = np.asarray(marked, dtype=float)
    recovered = np.asarray(recovered, dtype=float)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            params, _ = curve_fit(linear_model, marked, recovered, p0=REGRESSION_START,
                                  bounds=(REGRESSION_LOWER, (np.inf, np.inf)),
                                  method='trf', maxfev=REGRESSION_MAXFEV)
    except (RuntimeError, ValueError, TypeError) as e:
        return FitResult.failure(e)
    if not np.all(np.isfinite(params)):
        return FitResult.failure(f"non-finite parameters {params}")
    return FitResult(value=params)


def age_coverage(marked_by_year):
    """
    Number of marked animals that could have reached each age (in whole years)
    by the last year: exposure[e] is everything marked at least e years before
    it, so exposure[0] is the total and the oldest age has the smallest exposure.
    """
    return np.cumsum(np.asarray(marked_by_year, dtype=float))[::-1]


def inverse_ratio_weights(values):
    """
    1 / (value / max(value)). Undefined entries (zero values) take the last
    defined weight before them.
    """
    values = np.asarray(values, dtype=float)
    if values.size == 0 or values.max() <= 0:
        return np.full(values.shape, np.nan)
    with np.errstate(divide='ignore', invalid='ignore'):
        weights = values.max() / values
    return carry_forward(weights)


class BiasWeightEstimator:
    def __init__(self, records, effort, wear_rates, min_records=MIN_RECORDS,
                 wear_loss_threshold=WEAR_LOSS_THRESHOLD, verbose=True):
        """
        Parameters:
        - records: recovery records (RECORD_COLUMNS, plus Iteration for simulated data).
        - effort: marking effort, long or wide (see normalize_effort).
        - wear_rates: Species / Wear_rate table, percent band mass lost per year.
        - min_records: groups with fewer qualifying records are not modelled.
        - wear_loss_threshold: percent mass loss at which a band is lost.
        """
        require_columns(records, RECORD_COLUMNS, 'records')
        require_columns(effort, [YEAR, SPECIES], 'effort')
        self.records = records.copy()
        self.records[MARK_LOCATION] = self.records[MARK_LOCATION].astype(str)
        self.effort = normalize_effort(effort)
        self.wear_rates = wear_rates
        self.min_records = min_records
        self.wear_loss_threshold = wear_loss_threshold
        self.verbose = verbose

        self.fitted = None
        self.applications = None
        self.life_tables = None
        self.excluded_groups = {}

    def default_groups(self):
        if ITERATION in self.records.columns:
            return [int(i) for i in self.records[ITERATION].unique()]
        return list(self.records[SPECIES].unique())

    def group_data(self, key):
        column = key.column
        if column not in self.records.columns or column not in self.effort.columns:
            raise InputMismatchError(f"Grouping by {column} needs a {column} column in both records and effort.")
        records = self.records[self.records[column] == key.value]
        effort = self.effort[self.effort[column] == key.value]
        return records, effort

    def qualifying_records(self, records, effort):
        """
        Records with a positive elapsed time, recovered no earlier than the first
        effort year, marked at a location with marking effort before the last
        recovery.
        """
        records = records[records[ELAPSED_DAYS] > 0]
        if records.empty:
            return records
        effort = effort[effort[YEAR] <= records[RECOVERY_YEAR].max()]
        if effort.empty:
            return records.iloc[:0]
        records = records[records[RECOVERY_YEAR] >= effort[YEAR].min()]
        marked_at = effort.groupby(LOCATION)[MARKED].sum()
        locations = set(marked_at.index[marked_at > 0])
        return records[records[MARK_LOCATION].isin(locations)]

    def estimate_weights(self, groups=None):
        """
        Computes Wa, Wal, Wi, Wil, Wb, Waib, Wail and Wbail for every record of
        every modelled group, returned as a new DataFrame.

        Groups are species labels (str) or iteration numbers (int). Groups with
        fewer than min_records qualifying records, no effort rows or no wear
        rate are left out and listed in self.excluded_groups.
        """
        keys = resolve_group_keys(self.default_groups() if groups is None else groups)
        fitted, applications, life_tables = [], [], []
        self.excluded_groups = {}

        for key in keys:
            records, effort = self.group_data(key)
            if effort.empty or records.empty:
                self.excluded_groups[key.value] = 'not present in both records and effort'
                continue
            records = self.qualifying_records(records, effort)
            if len(records) < self.min_records:
                self.excluded_groups[key.value] = f'{len(records)} qualifying records (< {self.min_records})'
                continue

            species = records[SPECIES].iloc[0]
            wear_rate = wear_rate_lookup(self.wear_rates, species)
            if wear_rate is None:
                warn(f"No band wear rate listed for {species!r}; group {key} was not modelled.")
                self.excluded_groups[key.value] = 'no wear rate'
                continue

            group_fit, group_applications = self.fit_group(key, records, effort, BandWearModel(
                wear_rate, self.wear_loss_threshold))
            fitted.append(group_fit)
            applications.append(group_applications)
            life_tables.append(self.life_table(group_fit, key))

        self.fitted = pd.concat(fitted, ignore_index=True) if fitted else pd.DataFrame()
        self.applications = pd.concat(applications, ignore_index=True) if applications else pd.DataFrame()
        self.life_tables = pd.concat(life_tables, ignore_index=True) if life_tables else pd.DataFrame()

        if self.verbose:
            print(f"Bias weights fitted for {len(fitted)} of {len(keys)} groups "
                  f"({len(self.fitted)} records); {len(self.excluded_groups)} groups excluded.")
        return self.fitted

    def fit_group(self, key, records, effort, band_wear):
        records = records.copy()
        present_year = int(records[RECOVERY_YEAR].max())
        effort = effort[effort[YEAR] <= present_year]
        first_year = int(effort[YEAR].min())

        years = np.arange(first_year, present_year + 1)
        locations = sorted(records[MARK_LOCATION].unique())
        max_age = present_year - first_year

        marked = (effort.pivot_table(index=YEAR, columns=LOCATION, values=MARKED, aggfunc='sum', fill_value=0)
                  .reindex(index=years, columns=locations, fill_value=0))
        recovered = (records.groupby([RECOVERY_YEAR, MARK_LOCATION]).size().unstack(fill_value=0)
                     .reindex(index=years, columns=locations, fill_value=0))

        elapsed_years = np.clip(records[ELAPSED_DAYS].to_numpy() // DAYS_PER_YEAR, 0, max_age).astype(int)
        year_index = (records[RECOVERY_YEAR].to_numpy() - first_year).astype(int)
        record_locations = records[MARK_LOCATION].to_numpy()

        # Part one: age coverage
        wa_by_age = inverse_ratio_weights(age_coverage(marked.sum(axis=1)))
        wa = wa_by_age[elapsed_years]
        wal = np.empty(len(records))
        for location in locations:
            at_location = record_locations == location
            wal_by_age = inverse_ratio_weights(age_coverage(marked[location]))
            wal[at_location] = wal_by_age[elapsed_years[at_location]]

        # Part two: research effort
        predicted = self.predict_recoveries(marked.sum(axis=1), recovered.sum(axis=1), key, location=None)
        wi = predicted.max() / predicted[year_index]
        predicted_by_location = {}
        wil = np.empty(len(records))
        for location in locations:
            at_location = record_locations == location
            local = self.predict_recoveries(marked[location], recovered[location], key, location=location)
            predicted_by_location[location] = local
            wil[at_location] = local.max() / local[year_index[at_location]]

        # Part three: band wear
        wb = band_wear.weight(records[RECOVERY_YEAR].to_numpy() - records[MARK_YEAR].to_numpy())

        records.insert(0, GROUP, key.value)
        records[ELAPSED_YEARS] = elapsed_years
        records['Wa'] = wa
        records['Wal'] = wal
        records['Wi'] = wi
        records['Wil'] = wil
        records['Wb'] = wb
        records['Waib'] = wa * wi * wb
        records['Wail'] = wal * wil
        records['Wbail'] = wb * wal * wil

        applications = pd.DataFrame({
            GROUP: key.value,
            YEAR: years,
            LOCATION: 'all',
            MARKED: marked.sum(axis=1).to_numpy(),
            'Recovered': recovered.sum(axis=1).to_numpy(),
            'Predicted': predicted,
        })
        local_rows = [pd.DataFrame({GROUP: key.value, YEAR: years, LOCATION: location,
                                    MARKED: marked[location].to_numpy(),
                                    'Recovered': recovered[location].to_numpy(),
                                    'Predicted': predicted_by_location[location]})
                      for location in locations]
        applications = pd.concat([applications] + local_rows, ignore_index=True)
        return records.reset_index(drop=True), applications

    def predict_recoveries(self, marked, recovered, key, location=None):
        """
        Expected recoveries per year from the effort regression. When the fit
        fails, every year gets the mean observed number of recoveries.
        """
        result = fit_recoveries_on_effort(marked, recovered)
        if result.ok:
            return linear_model(np.asarray(marked, dtype=float), *result.value)

        where = f"iteration {key.value}" if isinstance(key, IterationId) else f"species {key.value!r}"
        if location is not None:
            where += f", location {location}"
        warn(f"The recoveries-on-effort model failed to resolve ({result.error}) for {where}. "
             f"The expected number of recoveries for each year is taken as the mean annual number of recoveries.")
        return np.full(len(recovered), float(np.mean(recovered)))

    def life_table(self, group_fit, key):
        """
        Unweighted survival through each year of elapsed time from a Kaplan-Meier
        fit, where dead recoveries (Censored == 0) are the events. Years without
        any recorded death carry the number at risk forward from the year before.
        """
        kmf = KaplanMeierFitter()
        kmf.fit(group_fit[ELAPSED_DAYS], event_observed=1 - group_fit[CENSORED])
        table = kmf.event_table
        times = table.index.to_numpy()

        n_years = int(np.ceil(times.max() / DAYS_PER_YEAR))
        n_risk, n_event = [], []
        for year in range(1, n_years + 1):
            in_year = (times > (year - 1) * DAYS_PER_YEAR) & (times < year * DAYS_PER_YEAR)
            n_risk.append(table['at_risk'].to_numpy()[in_year].max() if in_year.any() else np.nan)
            n_event.append(table['observed'].to_numpy()[in_year].sum())

        n_risk = np.asarray(n_risk, dtype=float)
        if np.isnan(n_risk[0]):
            n_risk[0] = np.nanmax(n_risk)
        n_risk = carry_forward(n_risk)
        n_event = np.asarray(n_event, dtype=float)
        return pd.DataFrame({GROUP: key.value, AGE_CLASS: np.arange(1, n_years + 1),
                             AT_RISK: n_risk, 'Deaths': n_event,
                             PROP_SURV: 1 - n_event / n_risk})

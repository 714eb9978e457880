"""
Shared record types, column names and small table helpers used across the
simulation and fitting pipeline.

Records, effort and wear-rate tables are exchanged as pandas DataFrames with
the column names defined here. Group keys are resolved once, at the API
boundary, into either a species label or an iteration number.
"""

from dataclasses import dataclass
from datetime import date, timedelta
import warnings

import numpy as np
import pandas as pd


DAYS_PER_YEAR = 365
STUDY_START_YEAR = 1900
SIMULATED_SPECIES = 'Animalis artificialis'

# Records
BAND = 'Band'
SPECIES = 'Species'
ITERATION = 'Iteration'
MARKED_DATE = 'Marked_date'
RECOVERED_DATE = 'Recovered_date'
ELAPSED_DAYS = 'Elapsed_days'
MARK_YEAR = 'Mark_year'
MARK_LOCATION = 'Mark_location'
RECOVERY_YEAR = 'Recovery_year'
CENSORED = 'Censored'

RECORD_COLUMNS = [BAND, SPECIES, MARKED_DATE, RECOVERED_DATE, ELAPSED_DAYS,
                  MARK_YEAR, MARK_LOCATION, RECOVERY_YEAR, CENSORED]

# Effort
YEAR = 'Year'
LOCATION = 'Location'
MARKED = 'Marked'

EFFORT_COLUMNS = [YEAR, LOCATION, SPECIES, MARKED]
# carried by older effort exports, never locations
EFFORT_EXTRA_COLUMNS = ('CAVS', 'eRepNo')

# Wear rates
WEAR_RATE = 'Wear_rate'

# Fitted records
GROUP = 'Group'
ELAPSED_YEARS = 'Elapsed_years'
WEIGHT_COLUMNS = ['Wa', 'Wal', 'Wi', 'Wil', 'Wb', 'Waib', 'Wail', 'Wbail']

# Age classes
AGE_CLASS = 'Age_class'
PROP_SURV = 'Prop_surv'
AT_RISK = 'At_risk'


class InputMismatchError(ValueError):
    """Input tables or grouping keys cannot be interpreted."""


class MemoirWarning(UserWarning):
    """Diagnostic notice for a recovered, per-unit failure."""


@dataclass(frozen=True)
class SpeciesLabel:
    label: str

    column = SPECIES

    @property
    def value(self):
        return self.label

    def __str__(self):
        return self.label


@dataclass(frozen=True)
class IterationId:
    number: int

    column = ITERATION

    @property
    def value(self):
        return self.number

    def __str__(self):
        return str(self.number)


@dataclass(frozen=True)
class FitResult:
    """Outcome of a single regression or survival fit: a value or an error."""
    value: object = None
    error: str = None

    @property
    def ok(self):
        return self.error is None

    @classmethod
    def failure(cls, error):
        return cls(value=None, error=str(error))


@dataclass
class Individual:
    """One simulated animal. Days are counted from the start of the study."""
    id: int
    year_marked: int
    day_marked: float
    location: int
    longevity_days: float
    recapture_draw: float = 0.0
    dead_recovered: bool = False
    latest_live_day: float = 0.0
    censored: int = 0
    recorded_longevity: float = 0.0

    @property
    def death_day(self):
        return self.day_marked + self.longevity_days

    @property
    def death_year(self):
        return int(self.death_day // DAYS_PER_YEAR) + 1

    @property
    def final_observation_day(self):
        return self.day_marked + self.recorded_longevity


@dataclass
class Record:
    band: int
    species: str
    marked_date: date
    recovered_date: date
    elapsed_days: int
    mark_year: int
    mark_location: str
    recovery_year: int
    censored: int
    iteration: int = None

    def to_row(self):
        row = {
            BAND: self.band,
            SPECIES: self.species,
            MARKED_DATE: self.marked_date,
            RECOVERED_DATE: self.recovered_date,
            ELAPSED_DAYS: self.elapsed_days,
            MARK_YEAR: self.mark_year,
            MARK_LOCATION: self.mark_location,
            RECOVERY_YEAR: self.recovery_year,
            CENSORED: self.censored,
        }
        if self.iteration is not None:
            row[ITERATION] = self.iteration
        return row


@dataclass
class EffortRecord:
    year: int
    location: str
    species: str
    marked: int
    iteration: int = None

    def to_row(self):
        row = {YEAR: self.year, LOCATION: self.location, SPECIES: self.species, MARKED: self.marked}
        if self.iteration is not None:
            row[ITERATION] = self.iteration
        return row


@dataclass
class AgeClassSurvival:
    group: str
    age_class: int
    prop_surv: float
    at_risk: float

    def to_row(self):
        return {GROUP: self.group, AGE_CLASS: self.age_class, PROP_SURV: self.prop_surv, AT_RISK: self.at_risk}


def resolve_group_keys(groups):
    """
    Turns caller-supplied grouping keys into SpeciesLabel / IterationId values.

    Strings are species labels, integers are iteration numbers. Mixing the two
    kinds, or passing anything else, raises InputMismatchError.
    """
    if isinstance(groups, (str, int, np.integer, SpeciesLabel, IterationId)):
        groups = [groups]
    keys = []
    for g in groups:
        if isinstance(g, (SpeciesLabel, IterationId)):
            key = g
        elif isinstance(g, (bool, np.bool_)):
            raise InputMismatchError(f"Grouping key {g!r} is neither a species label nor an iteration number.")
        elif isinstance(g, str):
            key = SpeciesLabel(g)
        elif isinstance(g, (int, np.integer)):
            key = IterationId(int(g))
        elif isinstance(g, (float, np.floating)) and float(g).is_integer():
            key = IterationId(int(g))
        else:
            raise InputMismatchError(f"Grouping key {g!r} is neither a species label nor an iteration number.")
        keys.append(key)

    if len({type(k) for k in keys}) > 1:
        raise InputMismatchError("Grouping keys mix species labels and iteration numbers.")
    # unique, order preserved
    return list(dict.fromkeys(keys))


def require_columns(df, columns, name):
    if df is None or len(df) == 0:
        raise InputMismatchError(f"The {name} table is empty.")
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise InputMismatchError(f"The {name} table is missing columns: {missing}")


def normalize_effort(effort, ignore=EFFORT_EXTRA_COLUMNS):
    """
    Returns effort as one row per (iteration, year, location, species).

    Accepts the long shape (a Location column) or the wide shape with one
    numeric column per location and an optional total Marked column, which is
    dropped before melting. Columns named in ignore and non-numeric columns
    are not locations.
    """
    id_vars = [c for c in (ITERATION, YEAR, SPECIES) if c in effort.columns]
    if LOCATION in effort.columns:
        long_df = effort[id_vars + [LOCATION, MARKED]].copy()
    else:
        location_cols = [c for c in effort.columns
                         if c not in id_vars + [MARKED] and c not in ignore
                         and pd.api.types.is_numeric_dtype(effort[c])]
        if not location_cols:
            raise InputMismatchError("The effort table has neither a Location column nor location columns.")
        long_df = effort.drop(columns=[MARKED], errors='ignore').melt(
            id_vars=id_vars, value_vars=location_cols, var_name=LOCATION, value_name=MARKED)

    long_df[LOCATION] = long_df[LOCATION].astype(str)
    long_df[YEAR] = long_df[YEAR].astype(int)
    long_df[MARKED] = pd.to_numeric(long_df[MARKED]).fillna(0)
    if (long_df[MARKED] < 0).any():
        raise InputMismatchError("The effort table has negative marked counts.")

    keys = [c for c in (ITERATION, YEAR, LOCATION, SPECIES) if c in long_df.columns]
    return long_df.groupby(keys, as_index=False, sort=True)[MARKED].sum()


def carry_forward(values):
    """
    Replaces undefined entries (NaN or +/-inf) with the last defined value
    before them. Leading undefined entries stay NaN.
    """
    series = pd.Series(np.asarray(values, dtype=float))
    series[~np.isfinite(series)] = np.nan
    return series.ffill().to_numpy()


def study_date(day_index, start_year=STUDY_START_YEAR):
    """Calendar date of a study day, with 365-day study years starting on 1 January."""
    year_index = int(day_index // DAYS_PER_YEAR)
    within = int(np.floor(day_index - year_index * DAYS_PER_YEAR))
    return date(start_year + year_index, 1, 1) + timedelta(days=within)


def warn(message):
    warnings.warn(message, MemoirWarning, stacklevel=3)

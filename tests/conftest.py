from datetime import date

import numpy as np
import pandas as pd
import pytest

from memoir.Records import (
    BAND, SPECIES, MARKED_DATE, RECOVERED_DATE, ELAPSED_DAYS, MARK_YEAR, MARK_LOCATION,
    RECOVERY_YEAR, CENSORED, YEAR, LOCATION, MARKED, WEAR_RATE, RECORD_COLUMNS,
)


TEST_SPECIES = 'Testus exemplaris'


def build_records(rows, species=TEST_SPECIES):
    """
    Records from (mark_year, location, recovery_year, censored, count) tuples.
    Animals are marked on 1 March and recovered on 1 June.
    """
    out = []
    for mark_year, location, recovery_year, censored, count in rows:
        marked = date(mark_year, 3, 1)
        recovered = date(recovery_year, 6, 1)
        for _ in range(count):
            out.append({
                BAND: 1_000_000 + len(out),
                SPECIES: species,
                MARKED_DATE: marked,
                RECOVERED_DATE: recovered,
                ELAPSED_DAYS: (recovered - marked).days,
                MARK_YEAR: mark_year,
                MARK_LOCATION: str(location),
                RECOVERY_YEAR: recovery_year,
                CENSORED: censored,
            })
    return pd.DataFrame(out, columns=RECORD_COLUMNS)


def build_effort(marked, species=TEST_SPECIES):
    """Long effort table from a {(year, location): marked} mapping."""
    return pd.DataFrame([{YEAR: year, LOCATION: str(location), SPECIES: species, MARKED: n}
                         for (year, location), n in marked.items()])


@pytest.fixture
def wear_rates():
    return pd.DataFrame({SPECIES: [TEST_SPECIES], WEAR_RATE: [2.22]})


@pytest.fixture
def single_cohort_three_locations():
    """
    100 animals marked at each of three locations in 1950 only, and three
    recoveries per location in every year 1950-1959: no location or year is
    favoured, so every coverage and effort weight should be 1.
    """
    effort = build_effort({(1950, loc): 100 for loc in (1, 2, 3)})
    rows = [(1950, loc, year, 0, 3) for loc in (1, 2, 3) for year in range(1950, 1960)]
    return build_records(rows), effort


@pytest.fixture
def ten_year_scheme():
    """
    Marking at two locations every year 1950-1959 with uneven effort, and
    recoveries of each cohort over the following years, mostly dead.
    """
    rng = np.random.default_rng(7)
    marked = {}
    for year in range(1950, 1960):
        for loc in (1, 2):
            marked[(year, loc)] = int(rng.integers(20, 120))
    rows = []
    for (year, loc), n in marked.items():
        for recovery_year in range(year, 1960):
            count = int(rng.poisson(n / 40))
            if count:
                rows.append((year, loc, recovery_year, int(rng.random() < 0.2), count))
    return build_records(rows), build_effort(marked)

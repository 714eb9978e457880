import numpy as np
import pandas as pd
from scipy.stats import lognorm

from memoir.Records import SPECIES, WEAR_RATE, InputMismatchError


WEAR_LOSS_THRESHOLD = 65.0   # percent mass loss at which a band falls off (Ludwig 1981)
WEAR_RATE_SPREAD = 2 / 3     # +/- fraction of the mean wear rate taken as the 95% range
Z_95 = 1.96


class BandWearModel:
    """
    Lognormal model of the time (in years) until a band has worn down to the
    loss threshold.

    The mean wear rate gives the median years-to-loss (threshold / rate). The
    fastest and slowest plausible wear rates, mean +/- 2/3 of the mean, are
    treated as a 95% range on years-to-loss; the two half-widths are converted
    to log-space and averaged into the lognormal sdlog.
    """

    def __init__(self, wear_rate, loss_threshold=WEAR_LOSS_THRESHOLD, spread=WEAR_RATE_SPREAD):
        if wear_rate <= 0:
            raise ValueError(f"Wear rate must be positive, got {wear_rate}.")
        if not 0 < spread < 1:
            raise ValueError(f"Wear-rate spread must lie in (0, 1), got {spread}.")
        self.wear_rate = wear_rate
        self.loss_threshold = loss_threshold

        max_rate = wear_rate + spread * wear_rate
        min_rate = wear_rate - spread * wear_rate

        self.median_years = loss_threshold / wear_rate
        min_years = loss_threshold / max_rate
        max_years = loss_threshold / min_rate

        self.meanlog = np.log(self.median_years)
        self.sdlog = ((np.log(max_years) - self.meanlog) / Z_95 +
                      (self.meanlog - np.log(min_years)) / Z_95) / 2
        self.distribution = lognorm(s=self.sdlog, scale=self.median_years)

    def loss_probability(self, years):
        """Probability that a band has been lost by the given band age (years)."""
        years = np.clip(np.asarray(years, dtype=float), 0, None)
        return self.distribution.cdf(years)

    def retention_probability(self, years):
        years = np.clip(np.asarray(years, dtype=float), 0, None)
        return self.distribution.sf(years)

    def weight(self, years):
        """Inverse retention: odds-of-missing weight for a band of the given age."""
        return 1.0 / self.retention_probability(years)


def wear_rate_lookup(wear_rates, species):
    """Returns the mean annual wear rate listed for a species, or None."""
    if wear_rates is None or len(wear_rates) == 0:
        raise InputMismatchError("The wear-rate table is empty.")
    if SPECIES not in wear_rates.columns or WEAR_RATE not in wear_rates.columns:
        raise InputMismatchError(f"The wear-rate table needs columns {SPECIES!r} and {WEAR_RATE!r}.")
    match = wear_rates.loc[wear_rates[SPECIES] == species, WEAR_RATE]
    if match.empty or pd.isna(match.iloc[0]):
        return None
    return float(match.iloc[0])

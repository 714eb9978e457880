"""
Simulation of national-scale mark-recovery data.

Simulates the records collected by a marking scheme for one species with several
populations and limited movement between them: research trips ("batches") mark
animals at random locations, each animal dies according to a chosen 'true'
mortality curve, and animals are later recovered dead or resighted alive with
probabilities that follow the research effort at their location. Bands wear off
following a lognormal band-loss model, so some recoveries are never made.

The 'true' mortality curves A-E follow Baylis et al. (2014).
"""

import numpy as np
import pandas as pd

from memoir.Band_wear import BandWearModel, WEAR_LOSS_THRESHOLD
from memoir.Records import (
    DAYS_PER_YEAR, STUDY_START_YEAR, SIMULATED_SPECIES, ITERATION, YEAR, LOCATION,
    SPECIES, MARKED, WEAR_RATE, RECORD_COLUMNS, EFFORT_COLUMNS,
    Individual, Record, EffortRecord, study_date, warn,
)


MAX_LIFESPAN_YEARS = 20
META_BATCH_PROBABILITY = 0.1
META_BATCH_MEAN_LENGTH = 3
CASUAL_RECOVERY_RATE = 0.1
CENSORING_MODES = ('recapture', 'random')

# Each curve maps a uniform draw x in [0, 1] to the fraction of the maximum
# lifespan reached, f(0) = 1 and f(1) = 0.
MORTALITY_CURVES = {
    'A': lambda x: 1 - x,
    'B': lambda x: 1 - x ** 2,
    'C': lambda x: 1 - x + (x ** 2 - x),
    'D': lambda x: (2 / np.pi) * np.arcsin(1 - 2 * x) + x,
    'E': lambda x: 0.5 - 0.5 * np.sign(2 * x - 1) * np.abs(2 * x - 1) ** (1 / 3),
}


def longevity_from_draws(draws, curve='A', max_lifespan_years=MAX_LIFESPAN_YEARS):
    """
    Transforms uniform draws into true longevities (days) through the quantile
    function of a mortality curve. Unknown curves fall back to curve A.
    """
    if curve not in MORTALITY_CURVES:
        warn(f"The requested curve {curve!r} is not one of the known mortality curves "
             f"{sorted(MORTALITY_CURVES)}; using curve A as a placeholder.")
        curve = 'A'
    draws = np.asarray(draws, dtype=float)
    fraction = np.clip(MORTALITY_CURVES[curve](draws), 0.0, 1.0)
    return fraction * max_lifespan_years * DAYS_PER_YEAR


def make_streams(seed, n):
    """One independent random stream per iteration, all derived from a single seed."""
    if isinstance(seed, np.random.Generator):
        seed = int(seed.integers(2 ** 63))
    seed_seq = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    return [np.random.default_rng(child) for child in seed_seq.spawn(n)]


class PopulationSimulator:
    def __init__(self, num_locations=5, mortality_curve='A', history_years=64,
                 mean_batches_per_year=0.4, max_catch_size=50, research_recapture_weight=0.5,
                 mean_wear_rate=2.22, wear_loss_threshold=WEAR_LOSS_THRESHOLD,
                 censoring_probability=0.4, live_recapture_deflator=0.5, iterations=1000,
                 censoring_mode='recapture', species=SIMULATED_SPECIES):
        """
        Parameters:
        - num_locations: number of marking locations (populations).
        - mortality_curve: 'true' mortality curve, one of 'A'-'E'.
        - history_years: years between the first possible marking and the end of data collection.
        - mean_batches_per_year: Poisson mean of research trips started per year.
        - max_catch_size: animals marked per trip ~ floor(Uniform(1, max_catch_size)).
        - research_recapture_weight: scales how strongly dead recovery follows local research effort.
        - mean_wear_rate: mean band wear, percent of band mass lost per year.
        - wear_loss_threshold: percent mass loss at which a band is lost.
        - censoring_probability: censoring rate used when censoring_mode='random'.
        - live_recapture_deflator: odds of resighting a live animal relative to finding it dead.
        - iterations: number of simulated datasets.
        """
        if num_locations < 1:
            raise ValueError("At least one location is needed.")
        if history_years < 1:
            raise ValueError("The marking history must last at least one year.")
        if censoring_mode not in CENSORING_MODES:
            raise ValueError(f"censoring_mode must be one of {CENSORING_MODES}.")

        self.num_locations = num_locations
        self.mortality_curve = mortality_curve
        self.history_years = history_years
        self.mean_batches_per_year = mean_batches_per_year
        self.max_catch_size = max_catch_size
        self.research_recapture_weight = research_recapture_weight
        self.mean_wear_rate = mean_wear_rate
        self.wear_loss_threshold = wear_loss_threshold
        self.censoring_probability = censoring_probability
        self.live_recapture_deflator = live_recapture_deflator
        self.iterations = iterations
        self.censoring_mode = censoring_mode
        self.species = species

        self.band_wear = BandWearModel(mean_wear_rate, wear_loss_threshold)
        self.years = None
        self.location_detection = None
        self.empty_iterations = []

    # 1) research trips per year and location, including multi-year trips

    def mark_batches(self, rng):
        batches = np.zeros((self.history_years, self.num_locations), dtype=int)
        for year in range(self.history_years):
            new_batches = rng.poisson(self.mean_batches_per_year)
            for location in rng.integers(0, self.num_locations, size=new_batches):
                batches[year, location] += 1
                if rng.random() < META_BATCH_PROBABILITY:
                    meta_length = rng.poisson(META_BATCH_MEAN_LENGTH)
                    if meta_length >= 2:
                        # rows past the end of the history are dropped by the slice
                        batches[year + 1:year + 1 + meta_length, location] += 1
        return batches

    # 2) animals marked on those trips

    def mark_counts(self, batches, rng):
        marked = np.zeros_like(batches)
        for (year, location), n_batches in np.ndenumerate(batches):
            if n_batches > 0:
                catches = np.floor(rng.uniform(1, self.max_catch_size, size=n_batches))
                marked[year, location] = int(catches.sum())
        return marked

    def create_individuals(self, marked, rng):
        individuals = []
        for (year, location), count in np.ndenumerate(marked):
            days = year * DAYS_PER_YEAR + rng.uniform(0, DAYS_PER_YEAR, size=count)
            for day in days:
                individuals.append(Individual(id=len(individuals) + 1, year_marked=year + 1,
                                              day_marked=float(day), location=location + 1,
                                              longevity_days=0.0))
        return individuals

    # 3) true longevity

    def assign_longevity(self, individuals, rng):
        longevity = longevity_from_draws(rng.uniform(0, 1, size=len(individuals)), self.mortality_curve)
        for individual, days in zip(individuals, longevity):
            individual.longevity_days = float(days)

    # 4) detection-probability surfaces

    def detection_surfaces(self, marked, individuals):
        """
        Returns (marked_by_year, died_by_year, global_proxy, location_proxy) with
        one row per study year, covering every year in which an animal died.
        """
        n_years = max(self.history_years, max(ind.death_year for ind in individuals))
        by_location = np.zeros((n_years, self.num_locations))
        by_location[:self.history_years] = marked

        marked_by_year = by_location.sum(axis=1)
        died_by_year = np.bincount([ind.death_year - 1 for ind in individuals], minlength=n_years)

        global_proxy = marked_by_year / marked_by_year.max()
        location_max = by_location.max(axis=0)
        location_proxy = np.divide(by_location, location_max,
                                   out=np.zeros_like(by_location), where=location_max > 0)
        return marked_by_year, died_by_year, global_proxy, location_proxy

    # 5) dead recoveries

    def assign_dead_recoveries(self, individuals, location_proxy, rng):
        draws = rng.uniform(0, 1, size=len(individuals))
        casual = rng.random(len(individuals)) < CASUAL_RECOVERY_RATE
        for individual, draw, by_chance in zip(individuals, draws, casual):
            effort_at_death = location_proxy[individual.death_year - 1, individual.location - 1]
            by_research = draw < self.research_recapture_weight * effort_at_death
            individual.recapture_draw = float(draw)
            individual.dead_recovered = bool(by_research or by_chance)

    # 6) live recaptures

    def assign_live_recaptures(self, individuals, location_proxy, rng):
        n, n_years = len(individuals), location_proxy.shape[0]
        years = np.arange(1, n_years + 1)
        year_marked = np.array([ind.year_marked for ind in individuals])
        death_year = np.array([ind.death_year for ind in individuals])
        death_day = np.array([ind.death_day for ind in individuals])
        locations = np.array([ind.location for ind in individuals])

        alive = (year_marked[:, None] <= years) & (death_year[:, None] >= years)
        research_prob = self.live_recapture_deflator * location_proxy[:, locations - 1].T
        casual_prob = self.live_recapture_deflator * CASUAL_RECOVERY_RATE

        by_research = rng.uniform(0, 1, size=(n, n_years)) < research_prob
        by_chance = rng.uniform(0, 1, size=(n, n_years)) < casual_prob
        resighted = (by_research | by_chance) & alive

        sighting_days = (years - 1) * DAYS_PER_YEAR + rng.uniform(0, DAYS_PER_YEAR, size=(n, n_years))
        sighting_days = np.where(resighted, sighting_days, 0.0)
        ordered = np.sort(sighting_days, axis=1)
        latest = ordered[:, -1]
        second_latest = ordered[:, -2] if n_years > 1 else np.zeros(n)
        # a sighting later in the death year than the death itself falls back to the one before
        latest = np.where(latest > death_day, second_latest, latest)

        for individual, day in zip(individuals, latest):
            individual.latest_live_day = float(day)

    # 7) final observation and censoring

    def observe(self, individuals, rng):
        """Returns the individuals that were recovered dead or resighted alive after marking."""
        recovered = []
        for individual in individuals:
            resighted = individual.latest_live_day > individual.day_marked
            if not (individual.dead_recovered or resighted):
                continue
            # a dead recovery always takes precedence over live sightings
            if individual.dead_recovered:
                individual.censored = 0
                individual.recorded_longevity = individual.longevity_days
            else:
                individual.censored = 1
                individual.recorded_longevity = individual.latest_live_day - individual.day_marked
            recovered.append(individual)

        if self.censoring_mode == 'random':
            censored = rng.random(len(recovered)) < self.censoring_probability
            last_contact = rng.uniform(0, 1, size=len(recovered))
            for individual, is_censored, fraction in zip(recovered, censored, last_contact):
                individual.censored = int(is_censored)
                individual.recorded_longevity = (individual.longevity_days * fraction if is_censored
                                                 else individual.longevity_days)
        return recovered

    # 8-9) records, band loss and the end of the study

    def build_records(self, recovered, iteration, rng):
        records = []
        for individual in recovered:
            marked_date = study_date(individual.day_marked)
            recovered_date = study_date(individual.final_observation_day)
            records.append(Record(band=0, species=self.species, marked_date=marked_date,
                                  recovered_date=recovered_date,
                                  elapsed_days=(recovered_date - marked_date).days,
                                  mark_year=marked_date.year, mark_location=str(individual.location),
                                  recovery_year=recovered_date.year, censored=individual.censored,
                                  iteration=iteration))

        band_age = np.array([r.recovery_year - r.mark_year for r in records], dtype=float)
        loss_probability = self.band_wear.loss_probability(band_age)
        still_banded = rng.uniform(0, 1, size=len(records)) > loss_probability

        last_year = STUDY_START_YEAR + self.history_years - 1
        kept = [r for r, banded in zip(records, still_banded)
                if banded and r.recovery_year <= last_year and r.elapsed_days > 0]

        band_ids = rng.choice(9_000_000, size=len(kept), replace=False) + 1_000_000
        for record, band in zip(kept, band_ids):
            record.band = int(band)
        return kept

    def build_effort(self, marked, iteration):
        effort = []
        for year in range(self.history_years):
            if marked[year].sum() == 0:
                continue
            for location in range(self.num_locations):
                effort.append(EffortRecord(year=STUDY_START_YEAR + year, location=str(location + 1),
                                           species=self.species, marked=int(marked[year, location]),
                                           iteration=iteration))
        return effort

    def simulate_iteration(self, iteration, rng):
        """
        Runs one simulated marking scheme. Returns (records, effort, years, detection)
        lists, all empty when no animal was marked.
        """
        batches = self.mark_batches(rng)
        marked = self.mark_counts(batches, rng)
        if marked.sum() == 0:
            return [], [], [], []

        individuals = self.create_individuals(marked, rng)
        self.assign_longevity(individuals, rng)
        marked_by_year, died_by_year, global_proxy, location_proxy = self.detection_surfaces(marked, individuals)
        self.assign_dead_recoveries(individuals, location_proxy, rng)
        self.assign_live_recaptures(individuals, location_proxy, rng)
        recovered = self.observe(individuals, rng)

        records = self.build_records(recovered, iteration, rng)
        effort = self.build_effort(marked, iteration)

        years = [{ITERATION: iteration, YEAR: STUDY_START_YEAR + y, MARKED: int(marked_by_year[y]),
                  'Died': int(died_by_year[y]), 'Detection': float(global_proxy[y])}
                 for y in range(len(marked_by_year))]
        detection = [{ITERATION: iteration, YEAR: STUDY_START_YEAR + y, LOCATION: str(loc + 1),
                      'Detection': float(location_proxy[y, loc])}
                     for y in range(location_proxy.shape[0]) for loc in range(self.num_locations)]
        return records, effort, years, detection

    def simulate(self, seed=None):
        """
        Runs all iterations and returns (records, effort, wear_rates) DataFrames.

        Iterations in which no animal was marked contribute no rows; their numbers
        are kept in self.empty_iterations.
        """
        records, effort, years, detection = [], [], [], []
        self.empty_iterations = []

        for iteration, rng in enumerate(make_streams(seed, self.iterations), start=1):
            it_records, it_effort, it_years, it_detection = self.simulate_iteration(iteration, rng)
            if not it_effort:
                self.empty_iterations.append(iteration)
                continue
            records.extend(it_records)
            effort.extend(it_effort)
            years.extend(it_years)
            detection.extend(it_detection)

        records_df = pd.DataFrame([r.to_row() for r in records], columns=[ITERATION] + RECORD_COLUMNS)
        effort_df = pd.DataFrame([e.to_row() for e in effort], columns=[ITERATION] + EFFORT_COLUMNS)
        wear_rates = pd.DataFrame({SPECIES: [self.species], WEAR_RATE: [self.mean_wear_rate]})

        self.years = pd.DataFrame(years)
        self.location_detection = pd.DataFrame(detection)

        print(f"Simulated {len(records_df)} records from {self.iterations - len(self.empty_iterations)} "
              f"of {self.iterations} iterations (curve {self.mortality_curve}, "
              f"{self.num_locations} locations, {self.history_years} years).")
        return records_df, effort_df, wear_rates

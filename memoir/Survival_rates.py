import warnings

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from memoir.Records import (
    GROUP, AGE_CLASS, PROP_SURV, AT_RISK, AgeClassSurvival, FitResult, InputMismatchError,
    require_columns, carry_forward, warn,
)


AGE_CLASS_DAYS = 365.25
SENESCENCE_START_AGE = 2


class AgeClassSurvivalSummarizer:
    """
    Survival through each whole-year age class from a dense survival curve,
    and N-weighted juvenile and adult survival rates.
    """

    def __init__(self, breeding_age):
        """
        Parameters:
        - breeding_age: age at first breeding in years, one value for every group
          or a {group: age} mapping. Classes up to and including it are juvenile.
        """
        self.breeding_age = breeding_age
        self.age_classes = None
        self.rates = None

    def breeding_age_for(self, group):
        if isinstance(self.breeding_age, dict):
            if group not in self.breeding_age:
                raise InputMismatchError(f"No breeding age given for group {group!r}.")
            return self.breeding_age[group]
        return self.breeding_age

    def summarize(self, curve):
        """
        Returns (age-class table, rates table).

        Survival through class j is the smallest sampled proportion alive
        within ((j-1), j) years divided by the largest; the number at risk is
        the largest sampled number alive. Classes with no samples or nobody
        alive take the values of the class before.
        """
        require_columns(curve, [GROUP, 'Age_days', 'Number_alive', 'Prop_alive'], 'survival curve')
        classes, rates = [], []
        for group, group_curve in curve.groupby(GROUP, sort=False):
            group_classes = self.age_class_survival(group, group_curve)
            classes.extend(group_classes)
            rates.append(self.pooled_rates(group, group_classes))

        self.age_classes = pd.DataFrame([c.to_row() for c in classes],
                                        columns=[GROUP, AGE_CLASS, PROP_SURV, AT_RISK])
        self.rates = pd.DataFrame(rates, columns=[GROUP, 'Juvenile', 'Adult', 'First_year'])
        return self.age_classes, self.rates

    def age_class_survival(self, group, group_curve):
        ages = group_curve['Age_days'].to_numpy()
        prop_alive = group_curve['Prop_alive'].to_numpy()
        number_alive = group_curve['Number_alive'].to_numpy()
        n_classes = max(int(np.ceil(ages.max() / AGE_CLASS_DAYS)), 1)

        prop_surv = np.full(n_classes, np.nan)
        at_risk = np.full(n_classes, np.nan)
        for j in range(1, n_classes + 1):
            within = (ages > (j - 1) * AGE_CLASS_DAYS) & (ages < j * AGE_CLASS_DAYS)
            if not within.any():
                continue
            with np.errstate(divide='ignore', invalid='ignore'):
                prop_surv[j - 1] = prop_alive[within].min() / prop_alive[within].max()
            at_risk[j - 1] = number_alive[within].max()

        prop_surv = carry_forward(prop_surv)
        at_risk = carry_forward(at_risk)
        return [AgeClassSurvival(group, j, prop_surv[j - 1], at_risk[j - 1])
                for j in range(1, n_classes + 1)]

    def pooled_rates(self, group, group_classes):
        breeding_age = self.breeding_age_for(group)
        juveniles = [c for c in group_classes if c.age_class <= breeding_age]
        adults = [c for c in group_classes if c.age_class > breeding_age]
        return {
            GROUP: group,
            'Juvenile': n_weighted_mean(juveniles),
            'Adult': n_weighted_mean(adults),
            'First_year': group_classes[0].prop_surv if group_classes else np.nan,
        }


def n_weighted_mean(classes):
    classes = [c for c in classes if np.isfinite(c.prop_surv) and np.isfinite(c.at_risk)]
    total = sum(c.at_risk for c in classes)
    if total <= 0:
        return np.nan
    return sum(c.prop_surv * c.at_risk for c in classes) / total


def pseudo_observations(age_classes):
    """
    One row per animal at risk in each age class, Death = 1 for the
    round(at_risk * (1 - prop_surv)) animals that died in the class.
    """
    rows = age_classes.dropna(subset=[PROP_SURV, AT_RISK])
    at_risk = np.round(rows[AT_RISK].to_numpy()).astype(int)
    deaths = np.round(at_risk * (1 - rows[PROP_SURV].to_numpy())).astype(int)
    deaths = np.clip(deaths, 0, at_risk)

    ages = np.repeat(rows[AGE_CLASS].to_numpy(), at_risk)
    died = np.concatenate([np.r_[np.ones(d, dtype=int), np.zeros(n - d, dtype=int)]
                           for n, d in zip(at_risk, deaths)]) if len(at_risk) else np.array([], dtype=int)
    return pd.DataFrame({'Age': ages, 'Death': died})


def fit_senescence(frame):
    """Binomial GLM of death on age class."""
    if frame['Age'].nunique() < 2 or frame['Death'].nunique() < 2:
        return FitResult.failure("need at least two ages and both outcomes")
    try:
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            model = smf.glm('Death ~ Age', data=frame, family=sm.families.Binomial()).fit()
    except (PerfectSeparationError, ValueError, np.linalg.LinAlgError) as e:
        return FitResult.failure(e)
    if not np.isfinite(model.params['Age']) or not np.isfinite(model.bse['Age']):
        return FitResult.failure("non-finite age coefficient")
    return FitResult(value=model)


class SenescenceEstimator:
    """
    Senescence rate of each group: the age slope of a logistic regression of
    annual mortality on age class, from the start age onwards.
    """

    def __init__(self, start_age=SENESCENCE_START_AGE):
        self.start_age = start_age
        self.coefficients = None
        self.predictions = None

    def start_age_for(self, group):
        if isinstance(self.start_age, dict):
            return self.start_age.get(group, SENESCENCE_START_AGE)
        return self.start_age

    def fit(self, age_classes):
        """Returns a Group / Coef / SE table; groups whose fit fails are left out."""
        require_columns(age_classes, [GROUP, AGE_CLASS, PROP_SURV, AT_RISK], 'age-class')
        coefficients, predictions = [], []
        for group, group_classes in age_classes.groupby(GROUP, sort=False):
            start_age = self.start_age_for(group)
            frame = pseudo_observations(group_classes)
            frame = frame[frame['Age'] >= start_age]

            result = fit_senescence(frame)
            if not result.ok:
                warn(f"The senescence model failed for group {group} ({result.error}).")
                continue
            model = result.value
            coefficients.append({GROUP: group, 'Coef': model.params['Age'], 'SE': model.bse['Age']})

            ages = np.arange(start_age, frame['Age'].max() + 1)
            predicted = model.predict(pd.DataFrame({'Age': ages}))
            predictions.append(pd.DataFrame({GROUP: group, AGE_CLASS: ages,
                                             'Predicted_mortality': np.asarray(predicted)}))

        self.coefficients = pd.DataFrame(coefficients, columns=[GROUP, 'Coef', 'SE'])
        self.predictions = (pd.concat(predictions, ignore_index=True) if predictions else
                            pd.DataFrame(columns=[GROUP, AGE_CLASS, 'Predicted_mortality']))
        for _, row in self.coefficients.iterrows():
            print(f"Senescence, group {row[GROUP]}: coef = {row['Coef']:.4f} (SE {row['SE']:.4f})")
        return self.coefficients

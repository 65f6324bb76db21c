"""
Observations, per-subject samples and pooling

A Sample holds all measurement values of one subject, who has a single age.
Pooling flattens samples into arrays for the population fit and attaches a
prior weight per observation (default 1/n_i so that subjects with many
voxels do not dominate the likelihood).
"""

import logging
from dataclasses import dataclass
from typing import Hashable, Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import InsufficientData, InvalidParameter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    subject_id: Hashable
    age: float
    value: float


@dataclass(frozen=True)
class Sample:
    """All values of one subject; every value shares the subject's age"""
    subject_id: Hashable
    age: float
    values: Tuple[float, ...]

    def __post_init__(self):
        values = tuple(float(v) for v in self.values)
        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'age', float(self.age))
        if not np.isfinite(self.age):
            raise InvalidParameter(f"Subject {self.subject_id}: age must be finite")
        arr = np.asarray(values)
        if np.any(~np.isfinite(arr)) or np.any(arr <= 0):
            raise InvalidParameter(
                f"Subject {self.subject_id}: values must be finite and positive"
            )

    @property
    def n(self):
        return len(self.values)

    def as_array(self):
        return np.asarray(self.values, dtype=float)

    @classmethod
    def from_observations(cls, observations: Iterable[Observation]):
        observations = list(observations)
        if not observations:
            raise InsufficientData("Cannot build a sample from zero observations")
        subject_ids = {obs.subject_id for obs in observations}
        if len(subject_ids) != 1:
            raise ValueError(f"Observations span several subjects: {sorted(map(str, subject_ids))}")
        ages = {float(obs.age) for obs in observations}
        if len(ages) != 1:
            raise ValueError(
                f"Subject {observations[0].subject_id}: ages within a sample must be equal, got {sorted(ages)}"
            )
        return cls(observations[0].subject_id, ages.pop(), tuple(obs.value for obs in observations))


def samples_from_observations(observations: Iterable[Observation]) -> List[Sample]:
    """Group observations by subject; samples come back ordered by subject id"""
    grouped = {}
    for obs in observations:
        grouped.setdefault(obs.subject_id, []).append(obs)
    return [Sample.from_observations(grouped[sid]) for sid in sorted(grouped, key=subject_sort_key)]


def samples_from_frame(data: pd.DataFrame, subject_col='subject_id', age_col='age',
                       value_col='value') -> List[Sample]:
    """
    Build samples from a long-format table (one row per measurement).

    Rows with missing age or value are dropped.

    Parameters:
    -----------
    data : pd.DataFrame
        Long-format measurements
    subject_col, age_col, value_col : str
        Column names

    Returns:
    --------
    samples : list of Sample
        Ordered by subject id
    """
    missing = [c for c in (subject_col, age_col, value_col) if c not in data.columns]
    if missing:
        raise KeyError(f"Missing columns: {missing}")

    clean = data[[subject_col, age_col, value_col]].dropna()
    dropped = len(data) - len(clean)
    if dropped:
        logger.info(f"Dropped {dropped} rows with missing values")

    samples = []
    for sid, group in clean.groupby(subject_col, sort=False):
        ages = group[age_col].unique()
        if len(ages) != 1:
            raise ValueError(f"Subject {sid}: ages within a sample must be equal, got {sorted(ages)}")
        samples.append(Sample(sid, float(ages[0]), tuple(group[value_col].to_numpy(dtype=float))))
    return sorted(samples, key=lambda s: subject_sort_key(s.subject_id))


def subject_sort_key(subject_id):
    """Sort ids of mixed types deterministically"""
    return (type(subject_id).__name__, subject_id)


@dataclass(frozen=True, eq=False)
class PooledData:
    """Flattened observations of many subjects"""
    age: np.ndarray
    y: np.ndarray
    weights: np.ndarray
    subject: np.ndarray

    @property
    def n(self):
        return len(self.y)

    @property
    def n_subjects(self):
        return len(np.unique(self.subject))

    @property
    def n_distinct_ages(self):
        return len(np.unique(self.age))

    def to_frame(self):
        return pd.DataFrame({'subject_id': self.subject, 'age': self.age,
                             'value': self.y, 'weight': self.weights})


def pool_samples(samples: Sequence[Sample], weighting='inverse_n') -> PooledData:
    """
    Concatenate samples into arrays with prior weights.

    Parameters:
    -----------
    samples : sequence of Sample
    weighting : str
        'inverse_n' gives each observation weight 1/n_i (every subject then
        carries total weight 1); 'equal' gives every observation weight 1.
    """
    if not samples:
        raise InsufficientData("No samples to pool")
    if weighting not in ('inverse_n', 'equal'):
        raise ValueError(f"Unknown weighting: {weighting}")

    ages, values, weights, subjects = [], [], [], []
    for sample in samples:
        n = sample.n
        if n == 0:
            continue
        ages.append(np.full(n, sample.age))
        values.append(sample.as_array())
        weights.append(np.full(n, 1.0 / n if weighting == 'inverse_n' else 1.0))
        subjects.append(np.array([sample.subject_id] * n, dtype=object))

    if not values:
        raise InsufficientData("All samples are empty")
    return PooledData(age=np.concatenate(ages), y=np.concatenate(values),
                      weights=np.concatenate(weights), subject=np.concatenate(subjects))

"""
Parallel dispatch of independent model fits.

A batch of analyses (one model per moderator, one per effect-size type)
is embarrassingly parallel: each job owns its table, model specification
and optimizer state. Jobs run on a joblib thread pool; the heavy lifting
is numpy / LAPACK work that releases the GIL. A fit that fails with a
library error is returned as a failed BatchOutcome and does not affect
the other jobs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from joblib import Parallel, delayed

from pymetamv.core.exceptions import PyMetaMVError
from pymetamv.meta._common import FitControl, ModelSpec
from pymetamv.meta.solvers import rma_mv
from pymetamv.meta.solution import MetaSolution


@dataclass(frozen=True)
class FitJob:
    """One independent fit in a batch.

    Attributes:
        name: Label identifying the job in the outcomes.
        table: Observation table (mapping or DataFrame).
        spec: Model specification.
        yi, vi, observation_id: Column names, as in rma_mv().
        control: Optimizer configuration.
    """
    name: str
    table: Mapping[str, Any]
    spec: ModelSpec
    yi: str = 'yi'
    vi: str = 'vi'
    observation_id: str | None = None
    control: FitControl = field(default_factory=FitControl)


@dataclass(frozen=True)
class BatchOutcome:
    """Result of one job: a solution on success, the error otherwise."""
    name: str
    success: bool
    solution: MetaSolution | None = None
    error: PyMetaMVError | None = None


def _run_job(job: FitJob, cancel) -> BatchOutcome:
    try:
        solution = rma_mv(
            job.table, job.spec,
            yi=job.yi, vi=job.vi, observation_id=job.observation_id,
            control=job.control, cancel=cancel,
        )
    except PyMetaMVError as e:
        return BatchOutcome(name=job.name, success=False, error=e)
    return BatchOutcome(name=job.name, success=True, solution=solution)


def fit_batch(
    jobs: Sequence[FitJob],
    *,
    n_jobs: int = 1,
    cancel=None,
) -> list[BatchOutcome]:
    """Fit independent models, optionally in parallel threads.

    Args:
        jobs: The fits to run.
        n_jobs: Number of worker threads (joblib semantics; -1 = all cores).
        cancel: Optional cancellation token shared by all jobs; a
            cancelled job is reported as failed with FitCancelledError.

    Returns:
        One BatchOutcome per job, in job order.
    """
    jobs = list(jobs)
    names = [job.name for job in jobs]
    if len(set(names)) != len(names):
        raise ValueError(f"Job names must be unique, got {names}")

    if n_jobs == 1 or len(jobs) < 2:
        return [_run_job(job, cancel) for job in jobs]
    return Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_run_job)(job, cancel) for job in jobs
    )

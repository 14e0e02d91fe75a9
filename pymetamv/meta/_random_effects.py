"""
Random-effect groupings, cluster detection and θ bookkeeping.

This module handles:
1. Parsing the explicit list of RandomTerm specifications into
   GroupingBlock objects (one covariance structure each)
2. Splitting the observations into independent clusters: connected
   components of observations that share a level of any grouping
3. Precomputing, per cluster, the read-only masks the likelihood needs
4. Starting values and bounds for the concatenated θ vector

A RandomTerm `(inner | grouping)` gives every level of `grouping` a
k-vector of random effects u_g ~ N(0, Σ), one entry per level of
`inner`. Observation i in group g with inner level l receives u_g[l].
Its contribution to the marginal covariance of a cluster is the
Hadamard product S ∘ Σ[l, l], where S[i, j] = 1 when observations i and
j share the grouping level. A term without an inner factor is a random
intercept (k = 1); with the observation id as grouping it is the
observation-level variance τ² I.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from pymetamv.core.exceptions import SpecificationError
from pymetamv.meta._covariance import (
    CovarianceStructure, make_structure, resolve_structure_tag,
)


@dataclass(frozen=True)
class RandomTerm:
    """One random-effect grouping, declared explicitly.

    Attributes:
        grouping: Column whose levels are the independent units
            (e.g. 'trial' or, for an observation-level intercept, the
            observation id column).
        inner: Optional column whose levels index the correlated effects
            within each unit (e.g. 'treatment'). None = random intercept.
        structure: Covariance structure tag: 'UN', 'DIAG' or 'CS'.
    """
    grouping: str
    inner: str | None = None
    structure: str = 'UN'

    def __post_init__(self):
        object.__setattr__(self, 'structure', resolve_structure_tag(self.structure))

    @property
    def name(self) -> str:
        return f"{self.inner or '1'} | {self.grouping}"


@dataclass(frozen=True)
class GroupingBlock:
    """Parsed random term with its data and covariance structure.

    Attributes:
        term: The originating RandomTerm.
        structure: Covariance structure of dimension k.
        group_ids: 0-indexed grouping level per observation (n,).
        level_ids: 0-indexed inner level per observation (n,), zeros for
            a random intercept.
        group_labels: Grouping levels in order of first appearance.
        levels: Inner levels in order of first appearance ('(Intercept)'
            for a random intercept).
        theta_slice: Position of this block's parameters in θ.
    """
    term: RandomTerm
    structure: CovarianceStructure
    group_ids: NDArray
    level_ids: NDArray
    group_labels: tuple[str, ...]
    levels: tuple[str, ...]
    theta_slice: slice

    @property
    def name(self) -> str:
        return self.term.name

    @property
    def n_groups(self) -> int:
        return len(self.group_labels)

    @property
    def k(self) -> int:
        return self.structure.k


@dataclass(frozen=True)
class Cluster:
    """Observations whose marginal covariance block is independent of all others.

    Attributes:
        index: Row positions of the cluster's observations.
        same_group: Per block, the (m, m) 0/1 mask S of shared grouping levels.
        level_ids: Per block, inner level index of each cluster observation.
    """
    index: NDArray
    same_group: tuple[NDArray, ...]
    level_ids: tuple[NDArray, ...]

    @property
    def size(self) -> int:
        return self.index.shape[0]


def _factorize(values: NDArray) -> tuple[NDArray, tuple[str, ...]]:
    """Map labels to 0-indexed integers in order of first appearance."""
    labels = np.array([str(v) for v in values])
    uniques = tuple(dict.fromkeys(labels.tolist()))
    lookup = {lvl: i for i, lvl in enumerate(uniques)}
    ids = np.fromiter((lookup[lvl] for lvl in labels), dtype=np.int64, count=len(labels))
    return ids, uniques


def parse_random_terms(
    columns: Mapping[str, NDArray],
    random_terms: Sequence[RandomTerm],
    n: int,
) -> list[GroupingBlock]:
    """Parse RandomTerm specifications into GroupingBlock objects.

    Args:
        columns: Mapping of column name → array (n,).
        random_terms: Explicit list of random-effect groupings.
        n: Number of observations.

    Returns:
        List of GroupingBlock, in declaration order.

    Raises:
        SpecificationError: On missing columns, a duplicated term, or a
            grouping column of the wrong length.
    """
    blocks = []
    seen = set()
    offset = 0
    for term in random_terms:
        if not isinstance(term, RandomTerm):
            raise SpecificationError(
                f"Random effects must be RandomTerm instances, got "
                f"{type(term).__name__}"
            )
        if term.name in seen:
            raise SpecificationError(
                f"Random term '{term.name}' declared more than once", term=term.name
            )
        seen.add(term.name)

        for col in (term.grouping, term.inner):
            if col is None:
                continue
            if col not in columns:
                raise SpecificationError(
                    f"Random term '{term.name}': column '{col}' not found. "
                    f"Available: {sorted(columns)}",
                    term=term.name,
                )
            if len(columns[col]) != n:
                raise SpecificationError(
                    f"Random term '{term.name}': column '{col}' has "
                    f"{len(columns[col])} elements, expected {n}",
                    term=term.name,
                )

        group_ids, group_labels = _factorize(columns[term.grouping])
        if term.inner is None:
            level_ids = np.zeros(n, dtype=np.int64)
            levels = ('(Intercept)',)
        else:
            level_ids, levels = _factorize(columns[term.inner])

        structure = make_structure(term.structure, len(levels))
        blocks.append(GroupingBlock(
            term=term,
            structure=structure,
            group_ids=group_ids,
            level_ids=level_ids,
            group_labels=group_labels,
            levels=levels,
            theta_slice=slice(offset, offset + structure.n_params),
        ))
        offset += structure.n_params

    return blocks


def build_clusters(blocks: Sequence[GroupingBlock], n: int) -> list[Cluster]:
    """Split observations into independent clusters.

    Observations are linked when they share a level of any grouping; the
    clusters are the connected components of the bipartite graph between
    observations and grouping levels. Without random effects every
    observation is its own cluster.

    Args:
        blocks: Parsed grouping blocks.
        n: Number of observations.

    Returns:
        List of Cluster objects in order of their first observation.
    """
    if not blocks:
        labels = np.arange(n)
    else:
        rows, cols = [], []
        node_offset = n
        for block in blocks:
            rows.append(np.arange(n))
            cols.append(node_offset + block.group_ids)
            node_offset += block.n_groups
        rows = np.concatenate(rows)
        cols = np.concatenate(cols)
        data = np.ones(rows.shape[0], dtype=np.float64)
        graph = sparse.coo_matrix(
            (data, (rows, cols)), shape=(node_offset, node_offset)
        ).tocsr()
        _, labels = connected_components(graph, directed=False)
        labels = labels[:n]

    _, first = np.unique(labels, return_index=True)
    clusters = []
    for lbl in labels[np.sort(first)]:
        index = np.flatnonzero(labels == lbl)
        same_group = []
        level_ids = []
        for block in blocks:
            g = block.group_ids[index]
            same_group.append((g[:, None] == g[None, :]).astype(np.float64))
            level_ids.append(block.level_ids[index])
        clusters.append(Cluster(
            index=index,
            same_group=tuple(same_group),
            level_ids=tuple(level_ids),
        ))
    return clusters


def n_theta(blocks: Sequence[GroupingBlock]) -> int:
    """Total length of θ."""
    return sum(b.structure.n_params for b in blocks)


def theta_names(blocks: Sequence[GroupingBlock]) -> list[str]:
    """Labels for the entries of θ, prefixed by the grouping name."""
    names = []
    for block in blocks:
        names.extend(f"{block.name}: {p}" for p in block.structure.param_names())
    return names


def theta_bounds(blocks: Sequence[GroupingBlock]) -> list[tuple[float | None, float | None]]:
    """Box constraints on θ for bounded optimizers."""
    bounds = []
    for block in blocks:
        bounds.extend(block.structure.bounds())
    return bounds


def theta_start(
    blocks: Sequence[GroupingBlock],
    y: NDArray,
    X: NDArray,
    v: NDArray,
) -> NDArray:
    """Generate starting values for θ.

    The residual variance of an ordinary least squares fit of y on X is
    split evenly over the groupings; every block starts at that variance
    times the identity (no correlation). A perfect OLS fit falls back to
    the mean sampling variance so no block starts on the zero boundary.
    """
    if not blocks:
        return np.zeros(0, dtype=np.float64)

    n, p = X.shape
    beta, *_ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ beta
    dof = max(n - p, 1)
    s2 = float(resid @ resid) / dof
    if not np.isfinite(s2) or s2 <= 1e-12:
        s2 = float(np.mean(v))
    tau2 = s2 / len(blocks)

    theta0 = np.zeros(n_theta(blocks), dtype=np.float64)
    for block in blocks:
        theta0[block.theta_slice] = block.structure.encode(tau2 * np.eye(block.k))
    return theta0

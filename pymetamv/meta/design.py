"""
Design validation for multilevel meta-analysis.

MetaDesign validates and organizes the observation table: effect sizes
yi, known sampling variances vi, and the label / moderator columns the
model specification refers to. Rows with an invalid sampling variance
(vi <= 0 or non-finite) or a missing effect size are excluded here and
reported, so the engine only ever sees valid observations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping
import warnings

import numpy as np
from numpy.typing import NDArray

from pymetamv.core.exceptions import SpecificationError, ValidationError
from pymetamv.core.validation import check_array, check_1d, check_consistent_length


def table_column(table: Mapping[str, Any], name: str) -> NDArray:
    """Fetch one column from a mapping or DataFrame as a 1-D array."""
    try:
        column = table[name]
    except KeyError:
        available = sorted(str(k) for k in table.keys())
        raise SpecificationError(
            f"Column '{name}' not found in data. Available: {available}",
            term=name,
        ) from None
    arr = np.asarray(column)
    if arr.ndim != 1:
        arr = arr.ravel()
    return arr


@dataclass(frozen=True)
class MetaDesign:
    """Validated observation table for a meta-analysis fit.

    Attributes:
        yi: Effect sizes (n,).
        vi: Known sampling variances (n,), all finite and > 0.
        columns: Column name → array (n,) for every referenced column,
            restricted to the retained rows.
        row_index: Original row positions of the retained observations.
        excluded: Original row positions dropped during validation.
        n: Number of retained observations.
    """
    yi: NDArray
    vi: NDArray
    columns: dict[str, NDArray]
    row_index: NDArray
    excluded: tuple[int, ...]
    n: int

    @staticmethod
    def validate(
        table: Mapping[str, Any],
        columns: Iterable[str] = (),
        *,
        yi: str = 'yi',
        vi: str = 'vi',
        observation_id: str | None = None,
    ) -> 'MetaDesign':
        """Validate the observation table and create a MetaDesign.

        Args:
            table: Mapping of column name → array-like, or a pandas DataFrame.
            columns: Names of the label / moderator columns the model uses.
            yi: Name of the effect-size column.
            vi: Name of the sampling-variance column.
            observation_id: Optional name of the observation identifier
                column; when given its values must be unique.

        Returns:
            Validated MetaDesign.

        Raises:
            SpecificationError: If a referenced column is missing.
            ValidationError: On inconsistent lengths, duplicated observation
                ids, or when fewer than two valid observations remain.
        """
        y_all = check_array(table_column(table, yi), yi)
        v_all = check_array(table_column(table, vi), vi)
        check_1d(y_all, yi)
        check_1d(v_all, vi)
        check_consistent_length(y_all, v_all, names=(yi, vi))
        n_total = y_all.shape[0]

        wanted = [c for c in dict.fromkeys(columns) if c not in (yi, vi)]
        if observation_id is not None and observation_id not in wanted:
            wanted.append(observation_id)

        raw = {}
        for name in wanted:
            col = table_column(table, name)
            if col.shape[0] != n_total:
                raise ValidationError(
                    f"Column '{name}' has {col.shape[0]} elements, "
                    f"expected {n_total} (matching {yi})"
                )
            raw[name] = col

        if observation_id is not None:
            ids = raw[observation_id]
            if len(np.unique(ids.astype(str))) != n_total:
                raise ValidationError(
                    f"Column '{observation_id}' must uniquely identify "
                    f"observations, found duplicated values"
                )

        invalid = ~np.isfinite(v_all) | ~(v_all > 0) | ~np.isfinite(y_all)
        excluded = tuple(int(i) for i in np.flatnonzero(invalid))
        if excluded:
            if observation_id is not None:
                labels = [str(raw[observation_id][i]) for i in excluded]
            else:
                labels = [str(i) for i in excluded]
            warnings.warn(
                f"Excluded {len(excluded)} observation(s) with invalid "
                f"sampling variance or missing effect size "
                f"({vi} <= 0, non-finite {vi} or {yi}): {labels}",
                UserWarning,
                stacklevel=3,
            )

        keep = ~invalid
        n = int(np.sum(keep))
        if n < 2:
            raise ValidationError(
                f"Need at least 2 valid observations, got {n} "
                f"({len(excluded)} excluded)"
            )

        return MetaDesign(
            yi=y_all[keep],
            vi=v_all[keep],
            columns={name: col[keep] for name, col in raw.items()},
            row_index=np.flatnonzero(keep),
            excluded=excluded,
            n=n,
        )

"""
Exact nearest-neighbour and range searches over grouped variables.

Each stored point is made of several groups of coordinates (for example a
source history, a destination history and a time to the next spike). Distances
are computed per group, with either the max norm or the Euclidean norm inside
the group, and groups are combined with the max norm. Range queries take one
radius per group, so marginal spaces with different widths can be searched.
"""

from typing import List, NamedTuple, Sequence, Union

import numpy as np
from numpy import ndarray
from scipy.spatial import cKDTree

from spike_te.base import NORM_TYPES


class Neighbour(NamedTuple):
    """A neighbour returned by `KdTree.k_nearest`."""

    index: int
    distance: float
    norms: tuple


def _widen(radius: float) -> float:
    """Slightly enlarge a radius for superset queries that get filtered exactly."""
    return float(np.nextafter(radius * (1.0 + 1e-9), np.inf))


class KdTree:
    """
    Multi-group k-d tree giving exact neighbour searches.

    The tree is built once over the concatenated group coordinates using the
    Chebyshev metric, which bounds the combined group distance from below.
    Queries collect a superset of candidates from the tree and then filter
    them with the exact per-group norms.
    """

    def __init__(self, groups: Sequence[ndarray], norm: str = "max"):
        """
        Build the tree.

        Args:
            groups: Arrays of shape [n_points, n_dims] for each variable group.
                A group may have zero dimensions.
            norm: Norm used within each group, "max" or "euclidean".
        """
        if len(groups) < 1:
            raise ValueError("KdTree requires at least one variable group")
        if norm not in NORM_TYPES:
            raise ValueError(f"Unknown norm type: {norm}")

        arrays = []
        for group in groups:
            group = np.asarray(group, dtype=np.float64)
            if group.ndim == 1:
                group = group.reshape(-1, 1)
            if group.ndim != 2:
                raise ValueError(
                    f"Group data must have shape [n_points, n_dims], got {group.shape}"
                )
            arrays.append(group)

        num_points = arrays[0].shape[0]
        if any(group.shape[0] != num_points for group in arrays):
            raise ValueError(
                f"All groups must hold the same number of points, got "
                f"{[group.shape[0] for group in arrays]}"
            )

        self.norm = norm
        self.num_points = num_points
        self.group_dims = tuple(group.shape[1] for group in arrays)

        bounds = np.cumsum((0,) + self.group_dims)
        self._slices = [slice(bounds[g], bounds[g + 1]) for g in range(len(arrays))]
        self._data = np.hstack(arrays) if bounds[-1] > 0 else np.empty((num_points, 0))

        if self._data.shape[1] > 0 and num_points > 0:
            self._tree = cKDTree(self._data)
        else:
            self._tree = None

    @property
    def num_groups(self) -> int:
        return len(self.group_dims)

    def __len__(self) -> int:
        return self.num_points

    def _query_vector(self, query: Union[int, Sequence[ndarray]]) -> ndarray:
        if isinstance(query, (int, np.integer)):
            return self._data[query]
        if len(query) != self.num_groups:
            raise ValueError(
                f"Query point needs {self.num_groups} groups, got {len(query)}"
            )
        parts = [np.asarray(part, dtype=np.float64).ravel() for part in query]
        for part, dims in zip(parts, self.group_dims):
            if len(part) != dims:
                raise ValueError(
                    f"Query group dimensions {[len(p) for p in parts]} do not match "
                    f"tree group dimensions {list(self.group_dims)}"
                )
        return np.concatenate(parts) if parts else np.empty(0)

    def group_distances(
        self, query: Union[int, Sequence[ndarray]], indices: ndarray
    ) -> ndarray:
        """
        Compute per-group distances from a query to stored points.

        Args:
            query: Index of a stored point, or a sequence of per-group vectors.
            indices: Indices of stored points.

        Returns:
            Array of shape [len(indices), n_groups].
        """
        return self._group_norms(self._query_vector(query), indices)

    def _group_norms(self, x: ndarray, indices: ndarray) -> ndarray:
        indices = np.asarray(indices, dtype=np.intp)
        differences = np.abs(self._data[indices] - x)
        norms = np.zeros((len(indices), self.num_groups))
        for g, group_slice in enumerate(self._slices):
            if self.group_dims[g] == 0:
                continue
            group_diff = differences[:, group_slice]
            if self.norm == "max":
                norms[:, g] = group_diff.max(axis=1)
            else:
                norms[:, g] = np.sqrt(np.sum(group_diff**2, axis=1))
        return norms

    def _ball_candidates(self, x: ndarray, radius: float) -> ndarray:
        """Indices whose Chebyshev distance to x may be within radius."""
        if self._tree is None:
            return np.arange(self.num_points)
        candidates = self._tree.query_ball_point(
            x, r=_widen(radius), p=np.inf, return_sorted=True
        )
        return np.asarray(candidates, dtype=np.intp)

    def k_nearest(self, k: int, query_index: int) -> List[Neighbour]:
        """
        Find the k nearest neighbours of a stored point.

        Args:
            k: Number of neighbours.
            query_index: Index of the stored point; it is never returned.

        Returns:
            Neighbours sorted by (distance, index), each carrying its per-group norms.
        """
        if k < 1:
            raise ValueError(f"Number of neighbours must be positive, got {k}")
        if k > self.num_points - 1:
            raise ValueError(
                f"Cannot find {k} neighbours among {self.num_points} points"
            )

        x = self._data[query_index]
        if self._tree is None:
            candidates = np.arange(self.num_points)
        else:
            # The k-th candidate by Chebyshev distance bounds the k-th combined distance
            _, nearest = self._tree.query(x, k=min(k + 1, self.num_points), p=np.inf)
            nearest = np.atleast_1d(nearest)
            nearest = nearest[nearest != query_index][:k]
            bound = self._group_norms(x, nearest).max()
            candidates = self._ball_candidates(x, bound)

        candidates = candidates[candidates != query_index]
        norms = self._group_norms(x, candidates)
        distances = norms.max(axis=1)
        order = np.lexsort((candidates, distances))[:k]

        return [
            Neighbour(
                index=int(candidates[i]),
                distance=float(distances[i]),
                norms=tuple(float(v) for v in norms[i]),
            )
            for i in order
        ]

    def points_within_radii(
        self,
        query: Union[int, Sequence[ndarray]],
        radii: Sequence[float],
        exclude_self: bool = True,
    ) -> ndarray:
        """
        Find stored points within a radius in every group.

        Args:
            query: Index of a stored point, or a sequence of per-group vectors.
            radii: One radius per group; a point matches when each of its
                group distances is less than or equal to the group radius.
            exclude_self: Leave out the query point when it is given by index.

        Returns:
            Sorted array of matching indices.
        """
        radii = np.asarray(radii, dtype=np.float64)
        if radii.shape != (self.num_groups,):
            raise ValueError(
                f"Expected {self.num_groups} radii, got {radii.shape[0] if radii.ndim else 1}"
            )
        if self.num_points == 0 or np.any(radii < 0):
            return np.empty(0, dtype=np.intp)

        x = self._query_vector(query)
        active = [g for g in range(self.num_groups) if self.group_dims[g] > 0]
        search_radius = radii[active].max() if active else 0.0
        candidates = self._ball_candidates(x, search_radius)

        if exclude_self and isinstance(query, (int, np.integer)):
            candidates = candidates[candidates != query]

        norms = self._group_norms(x, candidates)
        within = np.all(norms <= radii, axis=1)
        return candidates[within]

    def count_points_within_radii(
        self,
        query: Union[int, Sequence[ndarray]],
        radii: Sequence[float],
        exclude_self: bool = True,
    ) -> int:
        """Count stored points within a radius in every group."""
        return len(self.points_within_radii(query, radii, exclude_self=exclude_self))


class UnivariateNearestNeighbourSearcher:
    """
    Range counts over a single real-valued variable.

    Keeps a sorted copy of the values and, for every original index, its
    position in the sorted order, so windows around a stored value are
    counted by binary search.
    """

    def __init__(self, values: ndarray):
        values = np.asarray(values, dtype=np.float64)
        if values.ndim == 2 and values.shape[1] == 1:
            values = values[:, 0]
        if values.ndim != 1:
            raise ValueError(
                f"Univariate searcher needs one value per point, got shape {values.shape}"
            )
        self._values = values
        self._order = np.argsort(values, kind="stable")
        self._sorted = values[self._order]
        self._rank = np.empty(len(values), dtype=np.intp)
        self._rank[self._order] = np.arange(len(values))

    @property
    def num_observations(self) -> int:
        return len(self._values)

    def _first_within_lower(self, value: float, lower_radius: float) -> int:
        # First sorted position with value - x <= lower_radius
        position = int(np.searchsorted(self._sorted, value - lower_radius, side="left"))
        while position > 0 and value - self._sorted[position - 1] <= lower_radius:
            position -= 1
        while position < len(self._sorted) and value - self._sorted[position] > lower_radius:
            position += 1
        return position

    def _end_within_upper(self, value: float, upper_radius: float) -> int:
        # One past the last sorted position with x - value <= upper_radius
        position = int(np.searchsorted(self._sorted, value + upper_radius, side="right"))
        while position < len(self._sorted) and self._sorted[position] - value <= upper_radius:
            position += 1
        while position > 0 and self._sorted[position - 1] - value > upper_radius:
            position -= 1
        return position

    def count_points_within_radii(
        self,
        query_index: int,
        upper_radius: float,
        lower_radius: float,
        exclude_self: bool = True,
    ) -> int:
        """
        Count values in [v - lower_radius, v + upper_radius] around a stored value v.

        Args:
            query_index: Index of the stored value.
            upper_radius: Extent of the window above v.
            lower_radius: Extent of the window below v.
            exclude_self: Do not count the query value itself.

        Returns:
            Number of matching values.
        """
        value = self._values[query_index]
        start = self._first_within_lower(value, lower_radius)
        end = self._end_within_upper(value, upper_radius)
        count = max(end - start, 0)
        if exclude_self and start <= self._rank[query_index] < end:
            count -= 1
        return count

    def count_points_within_radius_or_larger(
        self, query_index: int, lower_radius: float, exclude_self: bool = True
    ) -> int:
        """Count values greater than or equal to v - lower_radius around a stored value v."""
        value = self._values[query_index]
        start = self._first_within_lower(value, lower_radius)
        count = len(self._sorted) - start
        if exclude_self and self._rank[query_index] >= start:
            count -= 1
        return count

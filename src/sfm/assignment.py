"""
Minimum cost bipartite matching between two point sets.

The cost of pairing a point of the first view with a point of the second
view is the squared distance of the second point to the epipolar line of
the first. The optimal one-to-one pairing is found with the Munkres
(Hungarian) method in its O(n^3) shortest augmenting path form.
"""

import logging

import numpy as np

from .errors import InvalidInputError
from .fundamental import epipolar_distance
from .utils import as_matrix, as_points, working_dtype

logger = logging.getLogger(__name__)

UNMATCHED = -1


class Munkres:
    """
    Solver for the rectangular assignment problem.

    Rectangular matrices are padded to a square one with the largest real
    cost. Rows matched into the padded region are reported as UNMATCHED.
    Ties are broken towards the lowest column index, so equal inputs always
    give equal assignments.

    Example:
        m = Munkres(cost)
        matches = m.solve()  # matches[row] -> column or UNMATCHED
    """

    def __init__(self, cost_matrix):
        cost = np.asarray(cost_matrix, dtype=np.float64)
        if cost.ndim != 2:
            raise InvalidInputError(f"Cost matrix must be two dimensional, got shape {cost.shape}")
        if not np.all(np.isfinite(cost)):
            raise InvalidInputError("Cost matrix contains non-finite values")
        if np.any(cost < 0):
            raise InvalidInputError("Cost matrix contains negative values")

        self.cost = cost
        self.rows, self.cols = cost.shape
        self._row_matches = None

    def _padded(self) -> np.ndarray:
        n = max(self.rows, self.cols)
        pad_value = self.cost.max() if self.cost.size else 0.0
        square = np.full((n, n), pad_value)
        square[:self.rows, :self.cols] = self.cost
        return square

    @staticmethod
    def _solve_square(cost: np.ndarray) -> np.ndarray:
        n = cost.shape[0]
        # Dual potentials of rows (u) and columns (v); index 0 is a virtual column
        u = np.zeros(n + 1)
        v = np.zeros(n + 1)
        col_owner = np.zeros(n + 1, dtype=np.intp)  # 1-based row assigned to column j, 0 if free
        way = np.zeros(n + 1, dtype=np.intp)

        for row in range(1, n + 1):
            col_owner[0] = row
            j0 = 0
            min_slack = np.full(n + 1, np.inf)
            used = np.zeros(n + 1, dtype=bool)

            # Grow an alternating tree until a free column is reached
            while True:
                used[j0] = True
                i0 = col_owner[j0]

                free = ~used[1:]
                slack = cost[i0 - 1] - u[i0] - v[1:]
                better = free & (slack < min_slack[1:])
                min_slack[1:][better] = slack[better]
                way[1:][better] = j0

                candidates = np.where(free, min_slack[1:], np.inf)
                j1 = int(np.argmin(candidates)) + 1
                delta = candidates[j1 - 1]

                u[col_owner[used]] += delta
                v[used] -= delta
                min_slack[~used] -= delta

                j0 = j1
                if col_owner[j0] == 0:
                    break

            # Augment along the path back to the virtual column
            while j0 != 0:
                j1 = way[j0]
                col_owner[j0] = col_owner[j1]
                j0 = j1

        row_matches = np.empty(n, dtype=np.intp)
        row_matches[col_owner[1:] - 1] = np.arange(n)
        return row_matches

    def solve(self) -> np.ndarray:
        """
        Compute the optimal assignment.

        Returns:
            np.ndarray: for each row the matched column index, or UNMATCHED.
        """
        if self.rows == 0 or self.cols == 0:
            self._row_matches = np.full(self.rows, UNMATCHED, dtype=np.intp)
            return self._row_matches.copy()

        matches = self._solve_square(self._padded())[:self.rows]
        matches[matches >= self.cols] = UNMATCHED
        self._row_matches = matches
        return matches.copy()

    def row_matches(self) -> np.ndarray:
        if self._row_matches is None:
            self.solve()
        return self._row_matches.copy()

    def col_matches(self) -> np.ndarray:
        """For each column the matched row index, or UNMATCHED."""
        rows = self.row_matches()
        cols = np.full(self.cols, UNMATCHED, dtype=np.intp)
        matched = np.flatnonzero(rows != UNMATCHED)
        cols[rows[matched]] = matched
        return cols

    def total_cost(self) -> float:
        """Summed cost of all real (non padded) assignments."""
        rows = self.row_matches()
        matched = np.flatnonzero(rows != UNMATCHED)
        return float(self.cost[matched, rows[matched]].sum())


def build_cost_matrix(points_a, points_b, F) -> np.ndarray:
    """
    Pairwise epipolar consistency costs.

    Entry (i, j) is the squared distance of points_b[j] to the epipolar line
    F @ points_a[i]. Non-finite distances are replaced by a finite ceiling
    above every finite cost.
    """
    dtype = working_dtype(points_a, points_b, F)
    pts_a = as_points(points_a, 2, "points_a", dtype)
    pts_b = as_points(points_b, 2, "points_b", dtype)
    F = as_matrix(F, (3, 3), "F", dtype)

    rows, cols = len(pts_a), len(pts_b)
    distances = epipolar_distance(F, np.repeat(pts_a, cols, axis=0), np.tile(pts_b, (rows, 1)))
    cost = np.asarray(distances, dtype=dtype).reshape(rows, cols)

    finite = np.isfinite(cost)
    if not np.all(finite):
        ceiling = 10 * cost[finite].max() + 1 if np.any(finite) else 1.0
        cost = np.where(finite, cost, ceiling).astype(dtype)
        logger.debug(f"Replaced {int((~finite).sum())} non-finite costs by {ceiling}")

    return cost


def match_points(points_a, points_b, F) -> list:
    """
    Pair points of two views by minimum total epipolar distance.

    Returns:
        list of (index_a, index_b) tuples in the order of points_a.
    """
    cost = build_cost_matrix(points_a, points_b, F)
    matches = Munkres(cost).solve()
    return [(int(i), int(j)) for i, j in enumerate(matches) if j != UNMATCHED]

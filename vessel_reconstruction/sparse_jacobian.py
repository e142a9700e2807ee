import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.sparse import csr_matrix

from .data_structures import UNLABELED, Line3D, ModelSet

logger = logging.getLogger(__name__)

# (column indices, 3 x k values, 3 residuals) for one block of three rows
RowBlock = Tuple[np.ndarray, np.ndarray, np.ndarray]


@dataclass
class ProjectionCache:
    """Projections of the data points onto their models

    Attributes:
        P: (N, 3) closest point on the assigned model (NaN for unlabeled points)
        nablaP: (N, 3, 6) derivative of P with respect to the model parameters
    """
    P: np.ndarray
    nablaP: np.ndarray


@dataclass
class JacobianBlock:
    """Jacobian in compressed sparse row form with its residual vector"""
    data: np.ndarray
    indices: np.ndarray
    indptr: np.ndarray
    energy: np.ndarray

    @property
    def num_rows(self) -> int:
        return len(self.indptr) - 1

    def total_energy(self) -> float:
        return float(np.dot(self.energy, self.energy))

    def to_csr(self, num_params: int) -> csr_matrix:
        return csr_matrix((self.data, self.indices, self.indptr),
                          shape=(self.num_rows, num_params))


def _append_rows(data: list, indices: list, indptr: list, energy: list, block: RowBlock) -> None:
    cols, values, residual = block
    for r in range(3):
        data.extend(values[r].tolist())
        indices.extend(cols.tolist())
        indptr.append(indptr[-1] + len(cols))
        energy.append(float(residual[r]))


class SparseJacobianBuilder:
    """Builds the stacked data + smoothness Jacobian for the line models

    The energy is sum(e**2) over two families of three-row blocks:

    - data cost, one block per labeled point:
      e = sqrt(w_d) (P_i - X_i) / (sqrt(2) sigma)
    - smoothness cost, one block per (point, neighbouring model) pair:
      e = sqrt(w_s) (proj_n(P_i) - P_i)

    The builder keeps references to the caller's data points, labeling,
    models and label volume; they must not change while it is in use.
    """

    def __init__(self, data_points: np.ndarray, labelings: np.ndarray,
                 modelset: ModelSet, label_volume: np.ndarray,
                 loglikelihood: float = 1.0, pairwise_smooth: float = 1.0,
                 max_neighbor_steps: int = 3, num_workers: Optional[int] = None):
        """Initialize the builder

        Args:
            data_points: (N, 3) integer voxel positions in (z, y, x) order
            labelings: (N,) model label of each point or UNLABELED
            modelset: Current line models
            label_volume: (z, y, x) volume of model labels
            loglikelihood: Weight of the data cost
            pairwise_smooth: Weight of the smoothness cost
            max_neighbor_steps: How far to walk along a model looking for a neighbour
            num_workers: Thread count for the parallel smoothness variants
        """
        self.data_points = np.asarray(data_points)
        self.labelings = np.asarray(labelings)
        self.modelset = modelset
        self.label_volume = np.asarray(label_volume)
        self.loglikelihood = float(loglikelihood)
        self.pairwise_smooth = float(pairwise_smooth)
        self.max_neighbor_steps = int(max_neighbor_steps)
        self.num_workers = num_workers

        if self.data_points.ndim != 2 or self.data_points.shape[1] != 3:
            raise ValueError("data_points must have shape (N, 3)")
        if self.labelings.shape != (len(self.data_points),):
            raise ValueError("labelings must have one entry per data point")
        if self.label_volume.ndim != 3:
            raise ValueError("label_volume must be a 3D array")

        self.cache: Optional[ProjectionCache] = None
        # neighbouring model labels of every point, fixed between prepare() calls
        self.neighbors: List[List[int]] = []

    @property
    def labeled_sites(self) -> np.ndarray:
        return np.flatnonzero(self.labelings != UNLABELED)

    def _check_label(self, label: int) -> None:
        if label != UNLABELED and not self.modelset.is_valid_label(label):
            raise ValueError(f"Label {label} does not refer to any of the "
                             f"{len(self.modelset)} models")

    def compute_projections(self, modelset: Optional[ModelSet] = None) -> ProjectionCache:
        """Project every labeled point onto its model"""
        modelset = self.modelset if modelset is None else modelset
        n = len(self.data_points)
        P = np.full((n, 3), np.nan)
        nablaP = np.zeros((n, 3, Line3D.NUM_PARAMS))
        for site in self.labeled_sites:
            label = int(self.labelings[site])
            self._check_label(label)
            model = modelset[label]
            X = self.data_points[site].astype(np.float64)
            P[site] = model.projection(X)
            nablaP[site] = model.projection_jacobian(X)
        return ProjectionCache(P=P, nablaP=nablaP)

    def find_neighbors(self, site: int) -> List[int]:
        """Labels of the models adjacent to a point along its own model

        Walks the label volume from the point in both tangent directions.
        Voxels of the point's own model are passed over; the walk ends
        without a neighbour at the volume border, at an unlabeled voxel or
        after max_neighbor_steps steps.
        """
        label = int(self.labelings[site])
        tangent = self.modelset[label].direction()
        if not np.any(tangent):
            return []

        origin = self.data_points[site].astype(np.float64)
        shape = np.array(self.label_volume.shape)
        neighbors = []
        for sign in (1.0, -1.0):
            for step in range(1, self.max_neighbor_steps + 1):
                pos = np.rint(origin + sign * step * tangent).astype(int)
                if np.any(pos < 0) or np.any(pos >= shape):
                    break
                other = int(self.label_volume[tuple(pos)])
                if other == UNLABELED:
                    break
                if other == label:
                    continue
                self._check_label(other)
                neighbors.append(other)
                break
        return neighbors

    def prepare(self) -> ProjectionCache:
        """Rebuild the projection cache and the neighbour pairs"""
        self.cache = self.compute_projections()
        self.neighbors = [[] for _ in range(len(self.data_points))]
        for site in self.labeled_sites:
            self.neighbors[site] = self.find_neighbors(site)
        return self.cache

    def _require_cache(self) -> ProjectionCache:
        if self.cache is None:
            self.prepare()
        return self.cache

    # Jacobian Matrix - data cost
    def datacost_jacobian(self, data: list, indices: list, indptr: list, energy: list) -> None:
        """Append the data cost rows to the CSR lists"""
        cache = self._require_cache()
        weight = np.sqrt(self.loglikelihood)
        for site in self.labeled_sites:
            label = int(self.labelings[site])
            model = self.modelset[label]
            scale = weight / (np.sqrt(2.0) * model.sigma)
            offset = self.modelset.column_offset(label)
            cols = np.arange(offset, offset + Line3D.NUM_PARAMS)
            residual = scale * (cache.P[site] - self.data_points[site])
            _append_rows(data, indices, indptr, energy, (cols, scale * cache.nablaP[site], residual))

    def _smooth_rows_for_site(self, site: int) -> List[RowBlock]:
        cache = self.cache
        label = int(self.labelings[site])
        weight = np.sqrt(self.pairwise_smooth)
        P = cache.P[site]
        nablaP = cache.nablaP[site]
        blocks = []
        for other in self.neighbors[site]:
            neighbor = self.modelset[other]
            Q = neighbor.projection(P)
            dQ_dx = neighbor.projection_point_jacobian()
            J_self = weight * (dQ_dx - np.eye(3)) @ nablaP
            J_other = weight * neighbor.projection_jacobian(P)

            offset_self = self.modelset.column_offset(label)
            offset_other = self.modelset.column_offset(other)
            cols_self = np.arange(offset_self, offset_self + Line3D.NUM_PARAMS)
            cols_other = np.arange(offset_other, offset_other + Line3D.NUM_PARAMS)
            if offset_self < offset_other:
                cols = np.concatenate([cols_self, cols_other])
                values = np.hstack([J_self, J_other])
            else:
                cols = np.concatenate([cols_other, cols_self])
                values = np.hstack([J_other, J_self])
            blocks.append((cols, values, weight * (Q - P)))
        return blocks

    # Jacobian Matrix - smooth cost
    def smoothcost_jacobian(self, data: list, indices: list, indptr: list, energy: list) -> None:
        """Append the smoothness rows to the CSR lists, one point at a time"""
        self._require_cache()
        for site in self.labeled_sites:
            for block in self._smooth_rows_for_site(site):
                _append_rows(data, indices, indptr, energy, block)

    def smoothcost_jacobian_parallel(self, data: list, indices: list, indptr: list, energy: list) -> None:
        """Same rows as smoothcost_jacobian, computed by a thread pool

        Each worker fills private buffers for a contiguous chunk of points;
        the chunks are appended in order once every worker has finished.
        """
        self._require_cache()
        sites = self.labeled_sites
        if len(sites) == 0:
            return
        num_chunks = self.num_workers or min(32, len(sites))
        chunks = [c for c in np.array_split(sites, num_chunks) if len(c)]

        def work(chunk):
            return [block for site in chunk for block in self._smooth_rows_for_site(site)]

        with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
            partials = list(executor.map(work, chunks))

        for blocks in partials:
            for block in blocks:
                _append_rows(data, indices, indptr, energy, block)

    def smoothcost_jacobian_critical_section(self, data: list, indices: list, indptr: list, energy: list) -> None:
        """Same rows as smoothcost_jacobian, appended by the workers themselves

        The shared lists are only touched inside a lock that admits the
        points strictly in iteration order.
        """
        self._require_cache()
        sites = self.labeled_sites
        turn = threading.Condition()
        state = {'next': 0}

        def work(position, site):
            blocks = None
            try:
                blocks = self._smooth_rows_for_site(site)
            finally:
                # advance the turn even if this site failed
                with turn:
                    turn.wait_for(lambda: state['next'] == position)
                    try:
                        if blocks is not None:
                            for block in blocks:
                                _append_rows(data, indices, indptr, energy, block)
                    finally:
                        state['next'] += 1
                        turn.notify_all()

        with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
            futures = [executor.submit(work, position, site) for position, site in enumerate(sites)]
            for future in futures:
                future.result()

    def build(self, parallel: bool = False) -> JacobianBlock:
        """Stack the data cost rows and the smoothness rows

        Args:
            parallel: Use the thread pool variant for the smoothness rows

        Returns:
            JacobianBlock: CSR arrays and the residual vector
        """
        self.prepare()
        data, indices, indptr, energy = [], [], [0], []
        self.datacost_jacobian(data, indices, indptr, energy)
        num_data_rows = len(indptr) - 1
        if parallel:
            self.smoothcost_jacobian_parallel(data, indices, indptr, energy)
        else:
            self.smoothcost_jacobian(data, indices, indptr, energy)
        logger.debug(f"Jacobian rows: {num_data_rows} data, {len(indptr) - 1 - num_data_rows} smoothness")
        return JacobianBlock(
            data=np.asarray(data, dtype=np.float64),
            indices=np.asarray(indices, dtype=np.int64),
            indptr=np.asarray(indptr, dtype=np.int64),
            energy=np.asarray(energy, dtype=np.float64),
        )

    def energy(self, modelset: Optional[ModelSet] = None) -> float:
        """Total energy of a (trial) model set

        Uses the neighbour pairs found by the last prepare() call so that a
        trial step is scored on the same terms as the Jacobian it came from.
        """
        modelset = self.modelset if modelset is None else modelset
        self._require_cache()
        total = 0.0
        for site in self.labeled_sites:
            label = int(self.labelings[site])
            model = modelset[label]
            X = self.data_points[site].astype(np.float64)
            P = model.projection(X)
            total += self.loglikelihood * float(np.sum((P - X) ** 2)) / (2.0 * model.sigma ** 2)
            for other in self.neighbors[site]:
                Q = modelset[other].projection(P)
                total += self.pairwise_smooth * float(np.sum((Q - P) ** 2))
        return total

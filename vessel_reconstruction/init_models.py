import logging
from typing import Optional, Tuple

import numpy as np
from scipy.spatial import KDTree
from skimage.feature import peak_local_max

from .data_structures import UNLABELED, Line3D, ModelSet

logger = logging.getLogger(__name__)


def each_model_per_local_maximum(vesselness: np.ndarray,
                                 vessel_direction: np.ndarray,
                                 sigma_max: Optional[np.ndarray] = None,
                                 threshold: float = 0.1,
                                 min_distance: int = 2,
                                 max_label_distance: Optional[float] = None
                                 ) -> Tuple[np.ndarray, np.ndarray, ModelSet, np.ndarray]:
    """Seed one line model at every local maximum of the vesselness

    Each model passes through its maximum along the local vessel direction.
    Maxima on the faces of the volume are kept, so a vessel leaving the crop
    still ends in a model. Every voxel above the threshold becomes a data
    point labeled with its closest maximum.

    Args:
        vesselness: (z, y, x) vesselness response
        vessel_direction: (z, y, x, 3) vessel direction, components in
            (x, y, z) order as written by the vessel enhancement step
        sigma_max: (z, y, x) scale of maximum response, used as model radius
        threshold: Minimum vesselness of data points and maxima
        min_distance: Minimum distance between two maxima (voxels)
        max_label_distance: Points farther than this from every maximum stay unlabeled

    Returns:
        data_points: (N, 3) voxel positions (z, y, x)
        labelings: (N,) model label of each data point
        modelset: One Line3D per maximum
        label_volume: (z, y, x) label of every voxel
    """
    if vessel_direction.shape != vesselness.shape + (3,):
        raise ValueError(f"vessel_direction shape {vessel_direction.shape} does not match "
                         f"vesselness shape {vesselness.shape}")

    peaks = peak_local_max(vesselness, min_distance=min_distance,
                           threshold_abs=threshold, exclude_border=False)
    logger.info(f"Found {len(peaks)} local vesselness maxima")

    modelset = ModelSet()
    for pos in peaks:
        direction = np.asarray(vessel_direction[tuple(pos)], dtype=np.float64)[::-1]
        norm = np.linalg.norm(direction)
        if norm > 0:
            direction = direction / norm
        else:
            direction = np.array([1.0, 0.0, 0.0])
        sigma = float(sigma_max[tuple(pos)]) if sigma_max is not None else 1.0
        modelset.add_model(Line3D(pos - direction, pos + direction, sigma=max(sigma, 0.5)))

    data_points = np.argwhere(vesselness >= threshold)
    labelings = np.full(len(data_points), UNLABELED, dtype=int)
    if len(peaks) and len(data_points):
        distances, nearest = KDTree(peaks).query(data_points)
        labelings = np.asarray(nearest, dtype=int)
        if max_label_distance is not None:
            labelings[distances > max_label_distance] = UNLABELED

    label_volume = np.full(vesselness.shape, UNLABELED, dtype=int)
    if len(data_points):
        label_volume[tuple(data_points.T)] = labelings

    print(f"Initialized {len(modelset)} models for {np.count_nonzero(labelings != UNLABELED)} labeled points")
    return data_points, labelings, modelset, label_volume

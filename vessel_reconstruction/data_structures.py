from typing import List, Optional
import numpy as np

# Label of voxels and data points that are not assigned to any model
UNLABELED = -1

EPSILON = 1e-12


class Line3D:
    """Class representing a vessel segment as a 3D line through two points

    Coordinates follow the numpy (z, y, x) voxel order so that data points
    produced by np.argwhere can be used directly.
    """

    NUM_PARAMS = 6

    def __init__(self, p1: np.ndarray, p2: np.ndarray, sigma: float = 1.0):
        """Initialize a line model

        Args:
            p1: First point on the line
            p2: Second point on the line
            sigma: Vessel radius (scale) used by the data likelihood
        """
        self.p1 = np.asarray(p1, dtype=np.float64).reshape(3).copy()
        self.p2 = np.asarray(p2, dtype=np.float64).reshape(3).copy()
        self.sigma = float(sigma)

    def __repr__(self):
        return f"Line3D(p1={self.p1.tolist()}, p2={self.p2.tolist()}, sigma={self.sigma})"

    def copy(self) -> 'Line3D':
        return Line3D(self.p1, self.p2, self.sigma)

    def get_params(self) -> np.ndarray:
        """Free parameters of the model as [p1, p2]"""
        return np.concatenate([self.p1, self.p2])

    def set_params(self, params: np.ndarray) -> None:
        params = np.asarray(params, dtype=np.float64).reshape(self.NUM_PARAMS)
        self.p1 = params[:3].copy()
        self.p2 = params[3:].copy()

    def update_params(self, delta: np.ndarray) -> None:
        """Add a parameter step in place"""
        self.set_params(self.get_params() + np.asarray(delta, dtype=np.float64).reshape(self.NUM_PARAMS))

    def direction(self) -> np.ndarray:
        """Unit direction vector from p1 to p2 (zero for a degenerate line)"""
        v = self.p2 - self.p1
        norm = np.linalg.norm(v)
        if norm < EPSILON:
            return np.zeros(3)
        return v / norm

    def projection(self, point: np.ndarray) -> np.ndarray:
        """Closest point on the (infinite) line to the given point

        Args:
            point: 3D position

        Returns:
            np.ndarray: Projected position
        """
        x = np.asarray(point, dtype=np.float64)
        v = self.p2 - self.p1
        den = np.dot(v, v)
        if den < EPSILON:
            return self.p1.copy()
        s = np.dot(x - self.p1, v) / den
        return self.p1 + s * v

    def projection_jacobian(self, point: np.ndarray) -> np.ndarray:
        """Derivative of the projection with respect to the model parameters

        With v = p2 - p1 and s = (x - p1).v / v.v the projection is
        P = p1 + s v, so dP/dp1 = (1 - s) I + v ds/dp1^T and
        dP/dp2 = s I + v ds/dp2^T.

        Args:
            point: 3D position that is projected

        Returns:
            np.ndarray: 3x6 matrix, columns ordered as [p1, p2]
        """
        x = np.asarray(point, dtype=np.float64)
        v = self.p2 - self.p1
        den = np.dot(v, v)
        jacobian = np.zeros((3, self.NUM_PARAMS))
        if den < EPSILON:
            jacobian[:, :3] = np.eye(3)
            return jacobian

        xa = x - self.p1
        num = np.dot(xa, v)
        s = num / den

        ds_dp1 = -(v + xa) / den + 2.0 * num * v / den**2
        ds_dp2 = xa / den - 2.0 * num * v / den**2

        jacobian[:, :3] = (1.0 - s) * np.eye(3) + np.outer(v, ds_dp1)
        jacobian[:, 3:] = s * np.eye(3) + np.outer(v, ds_dp2)
        return jacobian

    def projection_point_jacobian(self) -> np.ndarray:
        """Derivative of the projection with respect to the projected point (3x3)"""
        u = self.direction()
        return np.outer(u, u)

    def distance(self, point: np.ndarray) -> float:
        return float(np.linalg.norm(np.asarray(point, dtype=np.float64) - self.projection(point)))

    def loglikelihood(self, point: np.ndarray) -> float:
        """Negative log-likelihood of a point, up to an additive constant

        The vessel cross-section is modelled as a Gaussian of width sigma
        around the line, giving dist^2 / (2 sigma^2).
        """
        dist = self.distance(point)
        return dist * dist / (2.0 * self.sigma * self.sigma)


class ModelSet:
    """Ordered collection of line models

    Model k owns the parameter columns [6k, 6k + 6) of the stacked
    parameter vector used by the Jacobian.
    """

    def __init__(self, models: Optional[List[Line3D]] = None):
        self.models: List[Line3D] = list(models) if models is not None else []

    def __len__(self):
        return len(self.models)

    def __getitem__(self, index: int) -> Line3D:
        return self.models[index]

    def __iter__(self):
        return iter(self.models)

    def add_model(self, model: Line3D) -> int:
        """Add a model and return its label"""
        self.models.append(model)
        return len(self.models) - 1

    @property
    def num_params(self) -> int:
        return Line3D.NUM_PARAMS * len(self.models)

    def column_offset(self, label: int) -> int:
        return Line3D.NUM_PARAMS * label

    def is_valid_label(self, label: int) -> bool:
        return 0 <= label < len(self.models)

    def get_params(self) -> np.ndarray:
        if not self.models:
            return np.zeros(0)
        return np.concatenate([m.get_params() for m in self.models])

    def set_params(self, params: np.ndarray) -> None:
        params = np.asarray(params, dtype=np.float64).reshape(self.num_params)
        for k, model in enumerate(self.models):
            offset = self.column_offset(k)
            model.set_params(params[offset:offset + Line3D.NUM_PARAMS])

    def update_params(self, delta: np.ndarray) -> None:
        self.set_params(self.get_params() + delta)

    def copy(self) -> 'ModelSet':
        return ModelSet([m.copy() for m in self.models])

    def to_dict(self) -> list:
        """Serializable description of all models"""
        return [
            {'label': k, 'p1': m.p1.tolist(), 'p2': m.p2.tolist(), 'sigma': m.sigma}
            for k, m in enumerate(self.models)
        ]

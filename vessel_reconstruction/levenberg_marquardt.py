import json
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
from scipy.sparse import identity
from scipy.sparse.linalg import spsolve

from .data_structures import ModelSet
from .sparse_jacobian import SparseJacobianBuilder

logger = logging.getLogger(__name__)


@dataclass
class FittingParameters:
    """Parameters for Levenberg-Marquardt model reestimation

    Parameters:
        loglikelihood: float = 1.0
            Weight of the data cost (distance of the points to their model).
            - Larger values: Models follow the data points more closely

        pairwise_smooth: float = 1.0
            Weight of the smoothness cost between neighbouring models.
            - Larger values: Adjacent segments are pulled onto a common line
            - Smaller values: Segments fit their own points independently

        initial_damping: float = 1e-3
            Starting value of lambda.

        damping_increase: float = 10.0
        damping_decrease: float = 0.1
            Factors applied to lambda after a rejected / accepted step.

        max_damping: float = 1e10
            Give up on the current iteration once lambda exceeds this.

        max_iterations: int = 20
            Maximum number of accepted steps (Jacobian evaluations).

        tolerance: float = 1e-6
            Relative energy change below which the fit has converged.

        max_neighbor_steps: int = 3 (voxels)
            How far to walk along a model to find the neighbouring model.

        num_workers: Optional[int] = None
            Threads used by the parallel smoothness Jacobian.

        parallel: bool = False
            Build the smoothness rows with the thread pool.
    """
    loglikelihood: float = 1.0
    pairwise_smooth: float = 1.0
    initial_damping: float = 1e-3
    damping_increase: float = 10.0
    damping_decrease: float = 0.1
    max_damping: float = 1e10
    max_iterations: int = 20
    tolerance: float = 1e-6
    max_neighbor_steps: int = 3  # voxels
    num_workers: Optional[int] = None
    parallel: bool = False

    @classmethod
    def get_parameter_sets(cls):
        """Get the predefined parameter sets"""
        return {
            'default': cls(),
            'smooth': cls(
                pairwise_smooth=10.0,  # Favour continuous vessels over exact fit
                max_neighbor_steps=5
            ),
            'data_driven': cls(
                loglikelihood=10.0,    # Follow the data points closely
                pairwise_smooth=0.1
            ),
        }

    @classmethod
    def from_dict(cls, params_dict, base=None):
        """Create parameters from dictionary of overrides"""
        base_params = cls() if base is None else cls(**vars(base))
        for key, value in params_dict.items():
            if hasattr(base_params, key):
                setattr(base_params, key, value)
        return base_params


@dataclass
class FittingReport:
    """Outcome of one reestimate() call"""
    energies: List[float] = field(default_factory=list)
    iterations: int = 0
    damping: float = 0.0
    converged: bool = False

    @property
    def initial_energy(self) -> float:
        return self.energies[0] if self.energies else 0.0

    @property
    def final_energy(self) -> float:
        return self.energies[-1] if self.energies else 0.0


class LevenbergMarquardt:
    """Levenberg-Marquardt reestimation of line models

    The solver does not own its inputs: it keeps references to the
    caller's data points, labeling, models and label volume. They are only
    guaranteed to be read consistently during a single reestimate() call,
    and the labeling must not be changed while the call is running. The
    model set is updated in place.
    """

    def __init__(self, data_points: np.ndarray, labelings: np.ndarray,
                 modelset: ModelSet, label_volume: np.ndarray,
                 parameters: Optional[FittingParameters] = None):
        """Initialize the solver

        Args:
            data_points: (N, 3) voxel positions in (z, y, x) order
            labelings: (N,) model label of every data point or UNLABELED
            modelset: Models to refine (modified in place)
            label_volume: (z, y, x) label of every voxel
            parameters: Weights and damping schedule
        """
        self.data_points = data_points
        self.labelings = labelings
        self.modelset = modelset
        self.label_volume = label_volume
        self.parameters = parameters if parameters is not None else FittingParameters()

    def _make_builder(self) -> SparseJacobianBuilder:
        p = self.parameters
        return SparseJacobianBuilder(
            self.data_points, self.labelings, self.modelset, self.label_volume,
            loglikelihood=p.loglikelihood,
            pairwise_smooth=p.pairwise_smooth,
            max_neighbor_steps=p.max_neighbor_steps,
            num_workers=p.num_workers,
        )

    def reestimate(self) -> FittingReport:
        """Refine the models until the energy stops decreasing

        Each iteration solves (J^T J + lambda I) delta = -J^T e. A step that
        lowers the energy is accepted and lambda is decreased; otherwise
        lambda is increased and the system is solved again with the same
        Jacobian.

        Returns:
            FittingReport: Energies after every accepted step
        """
        p = self.parameters
        report = FittingReport(damping=p.initial_damping)
        builder = self._make_builder()
        num_params = self.modelset.num_params
        if num_params == 0 or len(builder.labeled_sites) == 0:
            logger.info("Nothing to reestimate: no models or no labeled points")
            report.converged = True
            return report

        damping = p.initial_damping
        eye = identity(num_params, format='csc')

        for iteration in range(p.max_iterations):
            block = builder.build(parallel=p.parallel)
            energy = block.total_energy()
            if iteration == 0:
                report.energies.append(energy)
                logger.info(f"Initial energy: {energy:.6e} ({block.num_rows} rows, {num_params} parameters)")
            if energy == 0.0:
                report.converged = True
                break

            J = block.to_csr(num_params)
            JtJ = (J.T @ J).tocsc()
            gradient = J.T @ block.energy
            theta = self.modelset.get_params()

            accepted = False
            while damping <= p.max_damping:
                delta = spsolve(JtJ + damping * eye, -gradient)
                trial = self.modelset.copy()
                trial.set_params(theta + delta)
                new_energy = builder.energy(trial)
                if np.isfinite(new_energy) and new_energy < energy:
                    accepted = True
                    break
                damping *= p.damping_increase
                logger.debug(f"Iteration {iteration}: step rejected, lambda -> {damping:.3e}")

            if not accepted:
                logger.info(f"No decreasing step found after {iteration} iterations (lambda = {damping:.3e})")
                break

            self.modelset.set_params(theta + delta)
            damping *= p.damping_decrease
            report.iterations += 1
            report.energies.append(new_energy)
            logger.info(f"Iteration {iteration}: energy {energy:.6e} -> {new_energy:.6e}, lambda = {damping:.3e}")

            if energy - new_energy < p.tolerance * max(energy, 1.0):
                report.converged = True
                break

        report.damping = damping
        return report


def reestimate(data_points, labelings, modelset, label_volume, parameters=None) -> FittingReport:
    """Run one Levenberg-Marquardt reestimation on the given models"""
    return LevenbergMarquardt(data_points, labelings, modelset, label_volume, parameters).reestimate()


def save_model_results(modelset: ModelSet, report: FittingReport, output_dir: str) -> None:
    """Save fitted models and the energy history as JSON"""
    os.makedirs(output_dir, exist_ok=True)
    results = {
        'models': modelset.to_dict(),
        'energies': report.energies,
        'iterations': report.iterations,
        'damping': report.damping,
        'converged': report.converged,
    }
    with open(os.path.join(output_dir, 'models.json'), 'w') as f:
        json.dump(results, f, indent=2)


def save_models_as_vtk(modelset: ModelSet, output_path: str) -> None:
    """Save the line models as VTK polydata with a Radius point array"""
    import vtk

    vtk_points = vtk.vtkPoints()
    lines = vtk.vtkCellArray()
    radius_array = vtk.vtkFloatArray()
    radius_array.SetName("Radius")

    for model in modelset:
        start_idx = vtk_points.InsertNextPoint(model.p1[2], model.p1[1], model.p1[0])  # Convert to x,y,z order
        end_idx = vtk_points.InsertNextPoint(model.p2[2], model.p2[1], model.p2[0])
        radius_array.InsertNextValue(model.sigma)
        radius_array.InsertNextValue(model.sigma)

        line = vtk.vtkLine()
        line.GetPointIds().SetId(0, start_idx)
        line.GetPointIds().SetId(1, end_idx)
        lines.InsertNextCell(line)

    polydata = vtk.vtkPolyData()
    polydata.SetPoints(vtk_points)
    polydata.SetLines(lines)
    polydata.GetPointData().AddArray(radius_array)

    writer = vtk.vtkXMLPolyDataWriter()
    writer.SetFileName(output_path)
    writer.SetInputData(polydata)
    writer.Write()

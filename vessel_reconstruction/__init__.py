from .data_structures import UNLABELED, Line3D, ModelSet
from .levenberg_marquardt import FittingParameters, FittingReport, LevenbergMarquardt, reestimate
from .rings_reduction import (
    PolarRDOption,
    RingsParameters,
    correct_image,
    correct_image_slice,
    mmd_polar_rd,
    mmd_polar_rd_3d,
    polar_rd,
    sijbers,
)
from .sparse_jacobian import JacobianBlock, ProjectionCache, SparseJacobianBuilder

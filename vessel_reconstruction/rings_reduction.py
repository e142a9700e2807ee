import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

import numpy as np
from tqdm import tqdm

from .image_processing import gaussian_blur, mean_blur
from .radial_sampling import avg_diff_v2, med_diff, med_diff_v2, med_on_ring, max_ring_radius

logger = logging.getLogger(__name__)

# The ring at this radius keeps its intensity, i.e. correction[int(100 / dr)] == 0.
# The radius is in pixels and has no physical calibration.
REFERENCE_RADIUS = 100

# Window of the mean blur used by sijbers (the Gaussian kernel is 2 * 15 + 1 wide)
DEFAULT_WINDOW_SIZE = 15


class PolarRDOption(Enum):
    """How polar_rd compares a ring with the reference ring"""
    AVG_DIFF = auto()
    MED_DIFF = auto()


_DIFF_FUNCTIONS = {
    PolarRDOption.AVG_DIFF: avg_diff_v2,
    PolarRDOption.MED_DIFF: med_diff_v2,
}


@dataclass
class RingsParameters:
    """Parameters for ring artifact reduction

    Parameters:
        dr: float = 1.0 (pixels)
            Thickness of a radial bin.
            - Smaller values: Follow narrow rings but fewer samples per bin
            - Larger values: Smoother correction that can miss thin rings

        window_size: int = 15 (pixels)
            Blur window used by sijbers to separate rings from anatomy.

        subpixel_on_ring: float = 1.0 (pixels)
            Arc length between two samples on a ring (polar_rd).

        is_gaussian_blur: bool = False
            Use a Gaussian instead of a mean blur in sijbers.

        num_workers: Optional[int] = None
            Threads used for the per-ring and per-slice loops.
    """
    dr: float = 1.0
    window_size: int = DEFAULT_WINDOW_SIZE
    subpixel_on_ring: float = 1.0
    is_gaussian_blur: bool = False
    num_workers: Optional[int] = None

    @classmethod
    def get_parameter_sets(cls):
        """Get the predefined parameter sets"""
        return {
            'default': cls(),
            'fine': cls(
                dr=0.5,               # Half pixel bins for thin rings
                subpixel_on_ring=0.5
            ),
            'coarse': cls(
                dr=2.0,               # Wide bins for noisy data
                window_size=21
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


def select_diff_function(option: PolarRDOption):
    """Ring difference function for a polar_rd option"""
    if not isinstance(option, PolarRDOption):
        raise ValueError(f"Undefined method option: {option!r}")
    return _DIFF_FUNCTIONS[option]


def reference_ring_index(dr: float) -> int:
    return int(REFERENCE_RADIUS / dr)


def _checked_reference_ring(dr: float, num_rings: int) -> int:
    """Reference ring index, which must have a bin in the correction vector"""
    const_ri = reference_ring_index(dr)
    if const_ri >= num_rings:
        raise ValueError(f"The reference ring {const_ri} lies outside the image "
                         f"({num_rings} rings with dr = {dr})")
    return const_ri


def _check_dr(dr: float) -> None:
    if dr <= 0:
        raise ValueError("dr indicates the thickness of the rings, which should be greater than 0.")


def _check_destination(src: np.ndarray, dst: Optional[np.ndarray]) -> None:
    if dst is None:
        return
    if dst is src or np.shares_memory(src, dst):
        raise ValueError("The destination should not be the same as the original.")
    if dst.shape != src.shape:
        raise ValueError(f"Destination shape {dst.shape} does not match source shape {src.shape}")


def _num_rings(ring_center, image_2d_shape, dr: float) -> int:
    rows, cols = image_2d_shape
    return int(max_ring_radius(ring_center, (cols, rows)) / dr)


def interpolate_correction(correction: np.ndarray, rid: np.ndarray) -> np.ndarray:
    """Correction at fractional ring indices, linear between the two closest bins

    Ring indices beyond the end of the vector use the outermost bin, so
    pixels in the far image corners may be slightly under or over corrected.
    """
    correction = np.asarray(correction, dtype=np.float64)
    if correction.size == 0:
        return np.zeros_like(rid, dtype=np.float64)
    rid = np.minimum(rid, correction.size - 1)
    flo = np.floor(rid).astype(int)
    cei = np.ceil(rid).astype(int)
    blended = correction[flo] * (cei - rid) + correction[cei] * (rid - flo)
    return np.where(flo != cei, blended, correction[flo])


def correct_image(src: np.ndarray, correction, ring_center, dr: float,
                  dst: Optional[np.ndarray] = None) -> np.ndarray:
    """Subtract a radial correction from a 2D image

    Args:
        src: 2D image (rows = y, columns = x)
        correction: Correction per radial bin
        ring_center: Ring center (x, y)
        dr: Ring thickness
        dst: Optional output array of the same shape

    Returns:
        Corrected image with the dtype of src
    """
    _check_dr(dr)
    _check_destination(src, dst)

    rows, cols = src.shape
    ys, xs = np.mgrid[0:rows, 0:cols]
    radius = np.hypot(xs - ring_center[0], ys - ring_center[1])
    c = interpolate_correction(correction, radius / dr)

    corrected = (src - c).astype(src.dtype)
    if dst is None:
        return corrected
    dst[...] = corrected
    return dst


def correct_image_slice(src: np.ndarray, dst: np.ndarray, correction, z: int,
                        ring_center, dr: float) -> None:
    """Correct slice z of a (z, y, x) volume into dst"""
    if dst.shape != src.shape:
        raise ValueError(f"Destination shape {dst.shape} does not match source shape {src.shape}")
    dst[z] = correct_image(src[z], correction, ring_center, dr)


def _as_volume(array: np.ndarray) -> np.ndarray:
    return array if array.ndim == 3 else array[np.newaxis]


def sijbers(src: np.ndarray, dr: float, ring_center, is_gaussian_blur: bool = False,
            dst: Optional[np.ndarray] = None, window_size: int = DEFAULT_WINDOW_SIZE,
            num_workers: Optional[int] = None):
    """Slice-by-slice ring reduction on the high-pass filtered image

    The image is blurred and the blur subtracted to keep the ring signal;
    the median of that difference on every ring is the correction.

    Args:
        src: 2D image or (z, y, x) volume
        dr: Ring thickness
        ring_center: Ring center (x, y)
        is_gaussian_blur: Gaussian blur instead of mean blur
        dst: Optional output array (must not share memory with src)
        window_size: Blur window size
        num_workers: Threads used across the radial bins

    Returns:
        dst: Corrected image or volume
        corrections: (SZ, num_rings) correction of every slice
    """
    _check_dr(dr)
    _check_destination(src, dst)

    volume = _as_volume(src)
    output = np.zeros_like(volume) if dst is None else _as_volume(dst)

    logger.info("Blurring the image...")
    if is_gaussian_blur:
        blurred = gaussian_blur(src, 2 * window_size + 1)
    else:
        blurred = mean_blur(src, window_size)
    diff = (src.astype(np.float64) - blurred).reshape(volume.shape)

    num_rings = _num_rings(ring_center, volume.shape[1:], dr)
    corrections = np.zeros((volume.shape[0], num_rings))

    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        for z in tqdm(range(volume.shape[0]), desc="Rings Reduction", leave=False):
            m = diff[z]
            values = list(executor.map(lambda ri: med_on_ring(m, ring_center, ri, dr),
                                       range(num_rings - 1)))
            corrections[z, :len(values)] = values
            correct_image_slice(volume, output, corrections[z], z, ring_center, dr)

    return (output if src.ndim == 3 else output[0]), corrections


def polar_rd(src: np.ndarray, option: PolarRDOption, dr: float, approx_center,
             subpixel_on_ring: float = 1.0, dst: Optional[np.ndarray] = None,
             slice_index: Optional[int] = None):
    """Ring reduction of one slice against the reference ring

    Every ring is compared with the ring at REFERENCE_RADIUS, which
    therefore receives no correction. Slices other than the corrected one
    are copied unchanged.

    Args:
        src: 2D image or (z, y, x) volume
        option: PolarRDOption.AVG_DIFF or PolarRDOption.MED_DIFF
        dr: Ring thickness
        approx_center: Ring center (x, y)
        subpixel_on_ring: Arc length between samples on a ring
        dst: Optional output array (must not share memory with src)
        slice_index: Slice to correct (default: the middle slice)

    Returns:
        dst: Corrected image or volume
        correction: Correction per radial bin
    """
    diff_func = select_diff_function(option)
    _check_dr(dr)
    _check_destination(src, dst)

    volume = _as_volume(src)
    z = volume.shape[0] // 2 if slice_index is None else int(slice_index)
    if dst is None:
        output = volume.copy()
    else:
        output = _as_volume(dst)
        output[...] = volume

    num_rings = _num_rings(approx_center, volume.shape[1:], dr)
    const_ri = _checked_reference_ring(dr, num_rings)

    m = volume[z].astype(np.float64)
    correction = np.zeros(num_rings)
    for ri in tqdm(range(num_rings - 1), desc="Polar rings reduction", leave=False):
        correction[ri] = diff_func(m, approx_center, ri, const_ri, dr, subpixel_on_ring)

    correct_image_slice(volume, output, correction, z, approx_center, dr)
    return (output if src.ndim == 3 else output[0]), correction


def compute_mmd_correction(m: np.ndarray, ring_center, dr: float, num_rings: int,
                           num_workers: Optional[int] = None) -> np.ndarray:
    """Correction vector from the median differences of adjacent rings

    The differences ring i vs ring i + 1 are accumulated from the outermost
    ring inwards and shifted so that the reference ring is left unchanged.

    Args:
        m: 2D image
        ring_center: Ring center (x, y)
        dr: Ring thickness
        num_rings: Length of the correction vector
        num_workers: Threads for the per-ring loop (1 runs it in the caller's thread)

    Returns:
        np.ndarray: Correction per radial bin
    """
    const_ri = _checked_reference_ring(dr, num_rings)

    m = np.asarray(m, dtype=np.float64)

    def adjacent_diff(ri):
        return med_diff(m, ring_center, ri, ri + 1, dr)

    correction = np.zeros(num_rings)
    if num_workers == 1:
        diffs = [adjacent_diff(ri) for ri in range(num_rings - 1)]
    else:
        with ThreadPoolExecutor(max_workers=num_workers) as executor:
            diffs = list(executor.map(adjacent_diff, range(num_rings - 1)))
    correction[:num_rings - 1] = diffs

    # accumulate the correction vector from the outside in
    correction = np.cumsum(correction[::-1])[::-1]

    # remove the drift so that correction[const_ri] == 0
    return correction - correction[const_ri]


def mmd_polar_rd(src: np.ndarray, ring_center, dr: float, dst: Optional[np.ndarray] = None,
                 num_workers: Optional[int] = None):
    """Median-of-adjacent-differences ring reduction of a 2D image

    Args:
        src: 2D image (rows = y, columns = x)
        ring_center: Ring center (x, y)
        dr: Ring thickness
        dst: Optional output array (must not share memory with src)
        num_workers: Threads used across the radial bins

    Returns:
        dst: Corrected image
        correction: Correction per radial bin
    """
    _check_dr(dr)
    _check_destination(src, dst)

    num_rings = _num_rings(ring_center, src.shape, dr)
    correction = compute_mmd_correction(src, ring_center, dr, num_rings, num_workers)
    return correct_image(src, correction, ring_center, dr, dst=dst), correction


def slice_ring_center(z: int, num_slices: int, first_slice_center, last_slice_center) -> np.ndarray:
    """Ring center of slice z, linear between the first and the last slice"""
    first = np.asarray(first_slice_center, dtype=np.float64)
    last = np.asarray(last_slice_center, dtype=np.float64)
    if num_slices <= 1:
        return first
    return ((num_slices - 1 - z) * first + z * last) / (num_slices - 1)


def mmd_polar_rd_3d(src: np.ndarray, first_slice_center, last_slice_center, dr: float,
                    dst: Optional[np.ndarray] = None, num_workers: Optional[int] = None):
    """Median-of-adjacent-differences ring reduction of a (z, y, x) volume

    The ring center drifts linearly from the first to the last slice.
    Slices are processed in parallel, each with its own correction buffer;
    writes into the destination volume are serialized by a lock.

    Args:
        src: (z, y, x) volume
        first_slice_center: Ring center (x, y) on slice 0
        last_slice_center: Ring center (x, y) on the last slice
        dr: Ring thickness
        dst: Optional output volume (must not share memory with src)
        num_workers: Threads used across the slices

    Returns:
        dst: Corrected volume
        corrections: (SZ, num_rings) correction of every slice
    """
    _check_dr(dr)
    _check_destination(src, dst)
    if src.ndim != 3:
        raise ValueError("mmd_polar_rd_3d expects a (z, y, x) volume")

    num_slices, rows, cols = src.shape
    max_radius = max(max_ring_radius(first_slice_center, (cols, rows)),
                     max_ring_radius(last_slice_center, (cols, rows)))
    num_rings = int(max_radius / dr)

    output = np.zeros_like(src) if dst is None else dst
    corrections = np.zeros((num_slices, num_rings))
    dst_lock = threading.Lock()

    def process_slice(z):
        ring_center = slice_ring_center(z, num_slices, first_slice_center, last_slice_center)
        correction = compute_mmd_correction(src[z], ring_center, dr, num_rings, num_workers=1)
        with dst_lock:
            correct_image_slice(src, output, correction, z, ring_center, dr)
            corrections[z] = correction

    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        list(tqdm(
            executor.map(process_slice, range(num_slices)),
            total=num_slices,
            desc="Rings Reduction",
            leave=False
        ))

    return output, corrections

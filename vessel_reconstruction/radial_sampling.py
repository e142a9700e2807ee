import numpy as np
from scipy.ndimage import map_coordinates

# Number of bins of the ring difference histogram
HISTOGRAM_BINS = 200

# Minimum number of angular samples on any ring
MIN_SAMPLES_ON_RING = 8


def max_ring_radius(center, im_size) -> float:
    """Distance from the ring center to the farthest image corner

    Args:
        center: Ring center (x, y)
        im_size: Image size (SX, SY), i.e. (columns, rows)

    Returns:
        float: Largest radius a ring can have inside the image
    """
    cx, cy = float(center[0]), float(center[1])
    sx, sy = float(im_size[0]), float(im_size[1])
    corners = np.array([
        [0.0 - cx, 0.0 - cy],
        [sx - cx, sy - cy],
        [0.0 - cx, sy - cy],
        [sx - cx, 0.0 - cy],
    ])
    return float(np.sqrt(np.max(np.sum(corners**2, axis=1))))


def median(values) -> float:
    """Median of a sequence, 0.0 for an empty one"""
    values = np.asarray(values, dtype=np.float64).ravel()
    if values.size == 0:
        return 0.0
    return float(np.median(values))


def is_valid(m: np.ndarray, x, y):
    """Whether (x, y) can be interpolated inside image m"""
    rows, cols = m.shape[:2]
    return (x >= 0) & (x <= cols - 1) & (y >= 0) & (y <= rows - 1)


def polar_interpolate(m: np.ndarray, ring_center, xs: np.ndarray, ys: np.ndarray,
                      dangle_2: float, dradius_2: float) -> np.ndarray:
    """Sample an image at positions given in pixel coordinates, smoothing in polar space

    Every value is the mean of bilinear samples at the position itself and
    at its four polar neighbours (radius +- dradius_2, angle +- dangle_2)
    around the ring center.

    Args:
        m: 2D image (rows = y, columns = x)
        ring_center: Ring center (x, y)
        xs, ys: Sample positions
        dangle_2: Half of the angular step between samples (radians)
        dradius_2: Half of the ring thickness

    Returns:
        np.ndarray: One interpolated value per position
    """
    xs = np.asarray(xs, dtype=np.float64)
    ys = np.asarray(ys, dtype=np.float64)
    dx = xs - ring_center[0]
    dy = ys - ring_center[1]
    radius = np.hypot(dx, dy)
    angle = np.arctan2(dy, dx)

    stencil = [
        (radius, angle),
        (radius - dradius_2, angle),
        (radius + dradius_2, angle),
        (radius, angle - dangle_2),
        (radius, angle + dangle_2),
    ]
    px = np.concatenate([r * np.cos(a) + ring_center[0] for r, a in stencil])
    py = np.concatenate([r * np.sin(a) + ring_center[1] for r, a in stencil])

    image = np.asarray(m, dtype=np.float64)
    values = map_coordinates(image, [py, px], order=1, mode='nearest')
    return values.reshape(len(stencil), -1).mean(axis=0)


def sample_ring(m: np.ndarray, ring_center, radius: float, circumference: int, dr: float):
    """Interpolated intensities at evenly spaced angles on a ring

    Returns:
        values: Sampled intensity per angle (NaN where the position is outside the image)
        valid: Mask of the angles that fall inside the image
    """
    dangle = 2 * np.pi / circumference
    angles = np.arange(circumference) * dangle
    xs = radius * np.cos(angles) + ring_center[0]
    ys = radius * np.sin(angles) + ring_center[1]

    valid = is_valid(m, xs, ys)
    values = np.full(circumference, np.nan)
    if np.any(valid):
        values[valid] = polar_interpolate(m, ring_center, xs[valid], ys[valid], dangle / 2, dr / 2)
    return values, valid


def _circumference(radius: float, subpixel_on_ring: float = 1.0) -> int:
    return max(MIN_SAMPLES_ON_RING, int(2 * np.pi * radius / subpixel_on_ring))


def avg_on_ring(m, ring_center, rid: int, dr: float, subpixel_on_ring: float = 1.0) -> float:
    """Mean interpolated intensity on the ring of index rid (0 if nothing is sampled)"""
    radius = rid * dr
    values, valid = sample_ring(m, ring_center, radius, _circumference(radius, subpixel_on_ring), dr)
    if not np.any(valid):
        return 0.0
    return float(np.mean(values[valid]))


def med_on_ring(m, ring_center, rid: int, dr: float, subpixel_on_ring: float = 1.0) -> float:
    """Median interpolated intensity on the ring of index rid

    Returns 0 when fewer than two samples fall inside the image.
    """
    radius = rid * dr
    values, valid = sample_ring(m, ring_center, radius, _circumference(radius, subpixel_on_ring), dr)
    if np.count_nonzero(valid) < 2:
        return 0.0
    return median(values[valid])


def _ring_differences(m, ring_center, rid1: int, rid2: int, dr: float, circumference: int) -> np.ndarray:
    values1, valid1 = sample_ring(m, ring_center, rid1 * dr, circumference, dr)
    values2, valid2 = sample_ring(m, ring_center, rid2 * dr, circumference, dr)
    both = valid1 & valid2
    return values1[both] - values2[both]


def avg_diff(m, ring_center, rid1: int, rid2: int, dr: float) -> float:
    """Mean of the angle-wise intensity difference between two rings"""
    circumference = _circumference(max(rid1 * dr, rid2 * dr))
    diffs = _ring_differences(m, ring_center, rid1, rid2, dr, circumference)
    return float(np.mean(diffs)) if diffs.size else 0.0


def med_diff(m, ring_center, rid1: int, rid2: int, dr: float) -> float:
    """Median of the angle-wise intensity difference between two rings

    The median ignores vessels and other structures that cross only a few
    of the sampled angles.
    """
    circumference = _circumference(max(rid1 * dr, rid2 * dr))
    return median(_ring_differences(m, ring_center, rid1, rid2, dr, circumference))


def avg_diff_v2(m, ring_center, rid1: int, rid2: int, dr: float, subpixel_on_ring: float = 1.0) -> float:
    """Difference of the mean intensities of two rings"""
    return (avg_on_ring(m, ring_center, rid1, dr, subpixel_on_ring)
            - avg_on_ring(m, ring_center, rid2, dr, subpixel_on_ring))


def med_diff_v2(m, ring_center, rid1: int, rid2: int, dr: float, subpixel_on_ring: float = 1.0) -> float:
    """Difference of the median intensities of two rings"""
    return (med_on_ring(m, ring_center, rid1, dr, subpixel_on_ring)
            - med_on_ring(m, ring_center, rid2, dr, subpixel_on_ring))


def distri_of_diff(m, ring_center, rid1: int, rid2: int, dr: float,
                   num_bins: int = HISTOGRAM_BINS) -> np.ndarray:
    """Histogram of the angle-wise differences between two rings

    Used to inspect how the ring differences are distributed before
    choosing between the mean and the median estimators.

    Args:
        m: 2D image
        ring_center: Ring center (x, y)
        rid1, rid2: Ring indices
        dr: Ring thickness
        num_bins: Number of histogram bins

    Returns:
        np.ndarray: Sample count per bin between the smallest and largest difference
    """
    circumference = _circumference(min(rid1 * dr, rid2 * dr))
    diffs = np.sort(_ring_differences(m, ring_center, rid1, rid2, dr, circumference))

    bins = np.zeros(num_bins)
    if diffs.size == 0:
        return bins

    min_val, max_val = diffs[0], diffs[-1]
    diff_range = max_val - min_val
    if diff_range > 0:
        bin_ids = (num_bins * (diffs - min_val) / diff_range).astype(int)
    else:
        bin_ids = np.zeros(diffs.size, dtype=int)
    bin_ids = np.minimum(bin_ids, num_bins - 1)
    np.add.at(bins, bin_ids, 1)
    return bins


def avg_i_on_rings(m: np.ndarray, ring_center, rid: int, dr: float) -> float:
    """Weighted mean intensity of the pixels in the annulus [r - dr, r + dr]

    Pixels are visited one quadrant offset at a time and mirrored into the
    four quadrants; the four pixels on the axes are added separately. Each
    pixel is weighted by 1 - |r_pixel - r| / dr.

    Args:
        m: 2D image (rows = y, columns = x)
        ring_center: Ring center (x, y)
        rid: Ring index, the ring radius is rid * dr
        dr: Ring thickness, must be positive

    Returns:
        float: Weighted mean intensity, 0 if no pixel falls in the annulus
    """
    if dr <= 0:
        raise ValueError("dr indicates the thickness of the rings, which should be greater than 0.")

    rows, cols = m.shape[:2]
    center_x, center_y = float(ring_center[0]), float(ring_center[1])

    radius = rid * dr
    r_min = max(radius - dr, 0.0)
    r_max = radius + dr

    sum_i = 0.0
    pixel_count = 0.0

    # (x, y) pixel offsets with respect to the center of the ring
    for x in np.arange(1.0, np.floor(r_max) + 1.0):
        x2 = x * x
        y_min = np.sqrt(max(0.0, r_min * r_min - x2))
        y_max = np.sqrt(r_max * r_max - x2)
        y_start = max(y_min, 1.0)
        if y_max < y_start:
            continue

        ys = y_start + np.arange(int(np.floor(y_max - y_start)) + 1)
        dist_2_ring = np.abs(np.sqrt(x2 + ys**2) - radius)
        keep = dist_2_ring <= dr
        ys = ys[keep]
        percentage = 1.0 - dist_2_ring[keep] / dr

        for sign_x, sign_y in ((-1, -1), (1, -1), (-1, 1), (1, 1)):
            px = int(center_x + x * sign_x)
            py = np.trunc(center_y + ys * sign_y).astype(int)
            inside = (0 <= px < cols) & (py >= 0) & (py < rows)
            if np.any(inside):
                sum_i += float(np.sum(m[py[inside], px] * percentage[inside]))
                pixel_count += float(np.sum(percentage[inside]))

    # along 4 axis
    for offset_x, offset_y in ((-1, 0), (0, -1), (1, 0), (0, 1)):
        px = int(center_x + radius * offset_x)
        py = int(center_y + radius * offset_y)
        if 0 <= px < cols and 0 <= py < rows:
            sum_i += float(m[py, px])
            pixel_count += 1.0

    if pixel_count > 1e-2:
        return sum_i / pixel_count
    return 0.0

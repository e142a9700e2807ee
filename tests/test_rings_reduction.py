import numpy as np
import pytest

from vessel_reconstruction.rings_reduction import (
    PolarRDOption,
    RingsParameters,
    compute_mmd_correction,
    correct_image,
    correct_image_slice,
    interpolate_correction,
    mmd_polar_rd,
    mmd_polar_rd_3d,
    polar_rd,
    reference_ring_index,
    select_diff_function,
    sijbers,
    slice_ring_center,
)


def _radius_map(shape, center):
    ys, xs = np.mgrid[0:shape[0], 0:shape[1]]
    return np.hypot(xs - center[0], ys - center[1])


def _radial_offset(radius):
    return 20.0 * np.sin(radius / 15.0)


def _radial_profile(image, center, radii):
    radius = np.rint(_radius_map(image.shape, center))
    return np.array([image[radius == k].mean() for k in radii])


@pytest.mark.parametrize("center", [(0.0, 0.0), (12.3, 40.7), (-20.0, 5.0)])
def test_zero_correction_is_identity(center):
    rng = np.random.default_rng(1)
    image = rng.integers(-1000, 3000, size=(48, 40)).astype(np.int16)
    zeros = np.zeros(30)
    once = correct_image(image, zeros, center, 1.0)
    twice = correct_image(once, zeros, center, 1.0)
    np.testing.assert_array_equal(twice, image)
    assert twice.dtype == np.int16


def test_correction_interpolates_and_clamps_to_outer_ring():
    src = np.zeros((1, 5))
    np.testing.assert_allclose(correct_image(src, [0.0, 10.0], (0.0, 0.0), 1.0),
                               [[0.0, -10.0, -10.0, -10.0, -10.0]])
    np.testing.assert_allclose(correct_image(src, [0.0, 10.0], (0.5, 0.0), 1.0),
                               [[-5.0, -5.0, -10.0, -10.0, -10.0]])
    np.testing.assert_allclose(interpolate_correction(np.array([2.0, 4.0, 8.0]), np.array([0.5, 1.0, 1.25])),
                               [3.0, 4.0, 5.0])


def test_correct_image_slice_writes_only_that_slice():
    src = np.full((3, 8, 8), 10, dtype=np.int16)
    dst = np.zeros_like(src)
    correct_image_slice(src, dst, np.full(12, 4.0), 1, (4.0, 4.0), 1.0)
    assert np.all(dst[1] == 6)
    assert not np.any(dst[0]) and not np.any(dst[2])


def test_destination_must_differ_from_source():
    image = np.zeros((64, 64), dtype=np.int16)
    with pytest.raises(ValueError):
        sijbers(image, 1.0, (32.0, 32.0), dst=image)
    with pytest.raises(ValueError):
        correct_image(image, np.zeros(4), (32.0, 32.0), 1.0, dst=image[:, :])
    with pytest.raises(ValueError):
        mmd_polar_rd(image, (32.0, 32.0), 1.0, dst=image)


def test_non_positive_ring_thickness_is_rejected():
    image = np.zeros((16, 16))
    with pytest.raises(ValueError):
        correct_image(image, np.zeros(4), (8.0, 8.0), 0.0)
    with pytest.raises(ValueError):
        polar_rd(image, PolarRDOption.MED_DIFF, -1.0, (8.0, 8.0))


def test_unknown_polar_option_fails_at_selection():
    assert select_diff_function(PolarRDOption.AVG_DIFF) is not select_diff_function(PolarRDOption.MED_DIFF)
    with pytest.raises(ValueError):
        select_diff_function("MED_DIFF")
    with pytest.raises(ValueError):
        polar_rd(np.zeros((16, 16)), 3, 1.0, (8.0, 8.0))


def test_mmd_recovers_radial_offset():
    center = (80.0, 80.0)
    shape = (160, 160)
    image = 1000.0 + _radial_offset(_radius_map(shape, center))

    corrected, correction = mmd_polar_rd(image, center, 1.0)

    ref = reference_ring_index(1.0)
    assert ref == 100
    assert correction[ref] == 0.0

    rings = np.arange(5, 90)
    expected = _radial_offset(rings) - _radial_offset(ref)
    np.testing.assert_allclose(correction[rings], expected, atol=1.0)

    # what is left is the intensity of the reference ring
    inner = _radius_map(shape, center) < 80
    assert np.std(corrected[inner]) < 0.25 * np.std(image[inner])


def test_mmd_reference_ring_must_fit_in_image():
    with pytest.raises(ValueError):
        mmd_polar_rd(np.zeros((64, 64)), (32.0, 32.0), 1.0)


@pytest.mark.parametrize("option", [PolarRDOption.AVG_DIFF, PolarRDOption.MED_DIFF])
def test_polar_rd_reference_ring_must_fit_in_image(option):
    image = np.full((64, 64), 1000, dtype=np.int16)
    with pytest.raises(ValueError):
        polar_rd(image, option, 1.0, (32.0, 32.0))
    # rings around a center left of the image reach the reference radius
    corrected, correction = polar_rd(image, option, 1.0, (-60.0, 32.0))
    assert correction[reference_ring_index(1.0)] == 0.0
    np.testing.assert_allclose(correction[70:120], 0.0, atol=1e-6)
    # the first and last columns lie on rings that barely touch the image
    assert np.all(np.abs(corrected[:, 2:60].astype(int) - 1000) <= 1)


def test_mmd_3d_matches_2d_for_a_fixed_center():
    center = (80.0, 80.0)
    slice_2d = 1000.0 + _radial_offset(_radius_map((160, 160), center))
    volume = np.stack([slice_2d, slice_2d + 5.0])

    corrected, corrections = mmd_polar_rd_3d(volume, center, center, 1.0, num_workers=2)
    expected_slice, expected_correction = mmd_polar_rd(slice_2d, center, 1.0)

    assert corrections.shape == (2, len(expected_correction))
    np.testing.assert_allclose(corrections[0], expected_correction)
    np.testing.assert_allclose(corrections[1], expected_correction, atol=1e-9)
    np.testing.assert_allclose(corrected[0], expected_slice)


def test_slice_centers_move_from_first_to_last():
    first, last = (10.0, 20.0), (14.0, 28.0)
    np.testing.assert_allclose(slice_ring_center(0, 5, first, last), first)
    np.testing.assert_allclose(slice_ring_center(4, 5, first, last), last)
    np.testing.assert_allclose(slice_ring_center(2, 5, first, last), (12.0, 24.0))
    np.testing.assert_allclose(slice_ring_center(0, 1, first, last), first)


def test_compute_mmd_correction_is_worker_independent():
    rng = np.random.default_rng(3)
    image = rng.normal(0.0, 10.0, size=(150, 150))
    sequential = compute_mmd_correction(image, (75.0, 75.0), 1.0, 106, num_workers=1)
    threaded = compute_mmd_correction(image, (75.0, 75.0), 1.0, 106, num_workers=4)
    np.testing.assert_array_equal(sequential, threaded)


@pytest.mark.parametrize("option", [PolarRDOption.AVG_DIFF, PolarRDOption.MED_DIFF])
def test_polar_rd_keeps_reference_ring(option):
    center = (80.0, 80.0)
    slice_2d = 1000.0 + _radial_offset(_radius_map((160, 160), center))
    volume = np.stack([slice_2d, slice_2d, slice_2d])

    corrected, correction = polar_rd(volume, option, 1.0, center)

    assert correction[100] == 0.0
    np.testing.assert_array_equal(corrected[0], volume[0])
    np.testing.assert_array_equal(corrected[2], volume[2])
    inner = _radius_map((160, 160), center) < 80
    assert np.std(corrected[1][inner]) < 0.25 * np.std(slice_2d[inner])


@pytest.mark.parametrize("is_gaussian_blur", [False, True])
def test_sijbers_flattens_synthetic_rings(is_gaussian_blur):
    center = (32.0, 32.0)
    radius = _radius_map((64, 64), center)
    image = np.full((64, 64), 1000, dtype=np.int16)
    for ring_radius in (8, 16, 24):
        image[np.abs(radius - ring_radius) < 1.5] += 40

    corrected, corrections = sijbers(image, 1.0, center, is_gaussian_blur=is_gaussian_blur)

    assert corrected.shape == image.shape
    assert corrected.dtype == np.int16
    assert corrections.shape == (1, int(np.hypot(32, 32)))

    radii = np.arange(4, 29)
    before = np.std(_radial_profile(image, center, radii))
    after = np.std(_radial_profile(corrected, center, radii))
    assert after < 0.5 * before


def test_sijbers_on_volume_returns_per_slice_corrections():
    volume = np.full((2, 40, 40), 500, dtype=np.int16)
    dst = np.empty_like(volume)
    corrected, corrections = sijbers(volume, 2.0, (20.0, 20.0), dst=dst, num_workers=2)
    assert corrected is dst
    assert corrections.shape == (2, int(np.hypot(20, 20) / 2.0))
    np.testing.assert_allclose(corrections, 0.0, atol=1e-3)
    # float32 blur, a constant volume may lose one unit when cast back
    assert np.max(np.abs(corrected.astype(int) - volume)) <= 1


def test_rings_parameters_from_dict():
    base = RingsParameters.get_parameter_sets()['fine']
    params = RingsParameters.from_dict({'window_size': 9, 'unknown': 1}, base=base)
    assert params.dr == 0.5
    assert params.window_size == 9
    assert not hasattr(params, 'unknown')

import numpy as np
import pytest

from vessel_reconstruction.data_structures import UNLABELED, Line3D, ModelSet
from vessel_reconstruction.sparse_jacobian import SparseJacobianBuilder


def two_segment_problem():
    """Two slightly tilted segments covering a tube along x in a 12^3 volume"""
    data_points = np.array([
        (z, y, x) for x in range(1, 11) for z in (5, 6, 7) for y in (5, 6, 7)
    ])
    labelings = np.where(data_points[:, 2] <= 5, 0, 1)
    label_volume = np.full((12, 12, 12), UNLABELED, dtype=int)
    label_volume[tuple(data_points.T)] = labelings

    modelset = ModelSet([
        Line3D([6.2, 5.9, 1.0], [5.8, 6.3, 5.0], sigma=1.0),
        Line3D([6.1, 6.2, 6.0], [6.4, 5.7, 10.0], sigma=1.5),
    ])
    return data_points, labelings, modelset, label_volume


def make_builder(**kwargs):
    data_points, labelings, modelset, label_volume = two_segment_problem()
    return SparseJacobianBuilder(data_points, labelings, modelset, label_volume, **kwargs)


def run_variant(builder, name):
    data, indices, indptr, energy = [], [], [0], []
    getattr(builder, name)(data, indices, indptr, energy)
    return np.asarray(data), np.asarray(indices), np.asarray(indptr), np.asarray(energy)


def test_rows_and_energy_agree():
    builder = make_builder(loglikelihood=2.0, pairwise_smooth=0.5)
    block = builder.build()

    num_data_rows = 3 * len(builder.labeled_sites)
    assert block.num_rows > num_data_rows
    assert block.num_rows % 3 == 0
    assert block.to_csr(builder.modelset.num_params).shape == (block.num_rows, 12)
    assert block.total_energy() == pytest.approx(builder.energy())


def test_neighbors_are_found_across_the_segment_boundary():
    builder = make_builder()
    builder.prepare()
    data_points = builder.data_points
    site_at_end = int(np.flatnonzero((data_points == (6, 6, 5)).all(axis=1))[0])
    site_at_start = int(np.flatnonzero((data_points == (6, 6, 1)).all(axis=1))[0])
    site_after = int(np.flatnonzero((data_points == (6, 6, 6)).all(axis=1))[0])
    assert builder.neighbors[site_at_end] == [1]
    assert builder.neighbors[site_at_start] == []
    assert builder.neighbors[site_after] == [0]


def test_gradient_matches_finite_differences():
    builder = make_builder(loglikelihood=1.0, pairwise_smooth=3.0)
    block = builder.build()
    J = block.to_csr(builder.modelset.num_params)
    gradient = 2.0 * (J.T @ block.energy)

    theta = builder.modelset.get_params()
    h = 1e-6
    numeric = np.zeros_like(theta)
    for k in range(len(theta)):
        plus, minus = builder.modelset.copy(), builder.modelset.copy()
        step = np.zeros_like(theta)
        step[k] = h
        plus.set_params(theta + step)
        minus.set_params(theta - step)
        numeric[k] = (builder.energy(plus) - builder.energy(minus)) / (2 * h)

    np.testing.assert_allclose(gradient, numeric, rtol=1e-4, atol=1e-5)


@pytest.mark.parametrize("num_workers", [1, 2, 4])
def test_parallel_variants_match_sequential(num_workers):
    builder = make_builder(num_workers=num_workers)
    builder.prepare()
    expected = run_variant(builder, 'smoothcost_jacobian')
    assert len(expected[3]) > 0

    for name in ('smoothcost_jacobian_parallel', 'smoothcost_jacobian_critical_section'):
        for actual, wanted in zip(run_variant(builder, name), expected):
            np.testing.assert_array_equal(actual, wanted)

    sequential = builder.build(parallel=False)
    parallel = builder.build(parallel=True)
    np.testing.assert_array_equal(parallel.indptr, sequential.indptr)
    np.testing.assert_array_equal(parallel.data, sequential.data)
    np.testing.assert_array_equal(parallel.energy, sequential.energy)


@pytest.mark.parametrize("num_workers", [1, 3])
def test_critical_section_reraises_a_failing_site(num_workers):
    builder = make_builder(num_workers=num_workers)
    builder.prepare()
    failing_site = int(builder.labeled_sites[4])
    rows_for_site = builder._smooth_rows_for_site

    def fail_on_one_site(site):
        if site == failing_site:
            raise RuntimeError("cannot build rows")
        return rows_for_site(site)

    builder._smooth_rows_for_site = fail_on_one_site
    with pytest.raises(RuntimeError, match="cannot build rows"):
        run_variant(builder, 'smoothcost_jacobian_critical_section')


def test_smoothness_columns_are_sorted():
    block = make_builder().build()
    for row in range(block.num_rows):
        cols = block.indices[block.indptr[row]:block.indptr[row + 1]]
        assert np.all(np.diff(cols) > 0)


def test_unlabeled_points_have_no_rows():
    data_points, labelings, modelset, label_volume = two_segment_problem()
    labelings = labelings.copy()
    labelings[::2] = UNLABELED
    builder = SparseJacobianBuilder(data_points, labelings, modelset, label_volume)
    data, indices, indptr, energy = run_variant(builder, 'datacost_jacobian')
    assert len(energy) == 3 * np.count_nonzero(labelings != UNLABELED)


def test_invalid_label_is_rejected():
    data_points, labelings, modelset, label_volume = two_segment_problem()
    labelings = labelings.copy()
    labelings[3] = 7
    builder = SparseJacobianBuilder(data_points, labelings, modelset, label_volume)
    with pytest.raises(ValueError):
        builder.build()


def test_input_shapes_are_validated():
    data_points, labelings, modelset, label_volume = two_segment_problem()
    with pytest.raises(ValueError):
        SparseJacobianBuilder(data_points[:, :2], labelings, modelset, label_volume)
    with pytest.raises(ValueError):
        SparseJacobianBuilder(data_points, labelings[:-1], modelset, label_volume)
    with pytest.raises(ValueError):
        SparseJacobianBuilder(data_points, labelings, modelset, label_volume[0])

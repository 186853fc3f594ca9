#!filepath: tests/algorithms/test_dbscan.py
import numpy as np
import pytest
from sklearn.cluster import DBSCAN as SkDBSCAN
from sklearn.datasets import make_moons

from bspml.algorithms import DBSCAN, DBSCANParams
from bspml.algorithms import metrics
from bspml.algorithms.dbscan import NOISE, GridIndex, UnionFind, local_dbscan, merge_boundaries
from bspml.tensor import Matrix


@pytest.fixture
def moons():
    # unshuffled: each moon is a contiguous run of rows, so row partitions cut arcs
    x, y = make_moons(n_samples=300, noise=0.05, shuffle=False, random_state=0)
    return Matrix(x), y


def _labels(out) -> np.ndarray:
    return np.concatenate([result.labels.values for _, result in out])


@pytest.mark.parametrize("mode", ["hull", "all-core"])
def test_moons_merge_across_ranks(fit_group, moons, mode):
    x, truth = moons
    params = DBSCANParams(epsilon=0.2, min_points=5, boundary_mode=mode)

    out = fit_group(lambda: DBSCAN(params), x, None, ranks=3)

    result = out[0][1]
    assert result.summary["n_clusters"] == 2
    assert result.summary["boundary_mode"] == mode
    labels = _labels(out)
    assert metrics.adjusted_rand(truth, labels) >= 0.95


def test_matches_single_process_reference(fit_group, moons):
    x, _ = moons

    out = fit_group(lambda: DBSCAN(DBSCANParams(epsilon=0.2, min_points=5)), x, None, ranks=2)

    reference = SkDBSCAN(eps=0.2, min_samples=5).fit_predict(x.values)
    assert metrics.adjusted_rand(reference, _labels(out)) >= 0.99


def test_dense_line_split_over_ranks_is_one_cluster(fit_group):
    x = Matrix(np.linspace(0.0, 10.0, 101).reshape(-1, 1))

    out = fit_group(lambda: DBSCAN(DBSCANParams(epsilon=0.15, min_points=2)), x, None, ranks=4)

    labels = _labels(out)
    assert set(labels.tolist()) == {0.0}
    assert out[0][1].summary == {"n_clusters": 1, "n_noise": 0, "boundary_mode": "hull"}


def test_isolated_point_is_noise(fit_group):
    x = Matrix(np.vstack([np.linspace(0.0, 1.0, 11).reshape(-1, 1), [[50.0]]]))

    out = fit_group(lambda: DBSCAN(DBSCANParams(epsilon=0.15, min_points=2)), x, None, ranks=2)

    labels = _labels(out)
    assert labels[-1] == NOISE
    assert out[1][1].summary["n_noise"] == 1
    assert out[1][1].summary["n_clusters"] == 1


def test_remote_noise_becomes_border(fit_group):
    # rank 0 holds a dense run, rank 1 a lone point next to its last core point
    x = Matrix(np.array([[0.0], [0.1], [0.15], [0.2], [0.3], [5.0], [5.1], [9.0]]))

    out = fit_group(lambda: DBSCAN(DBSCANParams(epsilon=0.11, min_points=3)), x, None, ranks=2)

    labels = _labels(out)
    assert labels.tolist() == [0.0, 0.0, 0.0, 0.0, 0.0, -1.0, -1.0, -1.0]
    assert out[1][1].summary["n_noise"] == 3
    # the adopted border point stays non-core
    assert out[1][1].extras["is_core"].values.tolist() == [0.0, 0.0, 0.0, 0.0]


def test_approximate_neighbours(fit_group):
    x = Matrix(np.linspace(0.0, 5.0, 51).reshape(-1, 1))
    params = DBSCANParams(epsilon=0.15, min_points=2, approximate_neighbors=True)

    out = fit_group(lambda: DBSCAN(params), x, None, ranks=2)

    assert out[0][1].summary["n_clusters"] == 1


def test_single_rank_checkpoint_round_trip(fit_group, moons):
    x, _ = moons
    [(kernel, result)] = fit_group(lambda: DBSCAN(DBSCANParams(epsilon=0.2)), x, None, ranks=1)

    fresh = DBSCAN()
    fresh.restore(kernel.checkpoint())

    assert fresh.n_clusters == result.summary["n_clusters"]
    assert fresh.iteration == 0


# ---------------------------------------------------------
# building blocks
# ---------------------------------------------------------
def test_local_dbscan_labels_and_core():
    x = np.array([[0.0], [0.1], [0.2], [5.0]])

    labels, core = local_dbscan(x, eps=0.15, min_points=2)

    assert labels.tolist() == [0, 0, 0, NOISE]
    assert core.tolist() == [True, True, True, False]


def test_grid_index_misses_corner_neighbours_only():
    x = np.array([[0.95, 0.95], [1.05, 1.05], [0.95, 1.05]])
    index = GridIndex(x, eps=1.0)

    # diagonal cell (1, 1) is not searched from (0, 0)
    assert index.query(0).tolist() == [0, 2]
    assert index.query(2).tolist() == [0, 1, 2]


def test_union_find_keeps_lowest_representative():
    uf = UnionFind(5)
    uf.union(3, 4)
    uf.union(4, 1)

    assert uf.find(3) == 1
    assert uf.find(2) == 2


def test_merge_unions_core_pairs_and_reclassifies_noise():
    shipped = [
        {
            "points": np.array([[0.0], [1.0]]),
            "labels": np.array([0.0, 1.0]),
            "core": np.array([1.0, 1.0]),
            "index": np.array([4.0, 9.0]),
            "n_clusters": 2,
        },
        {
            "points": np.array([[0.1], [1.1]]),
            "labels": np.array([0.0, -1.0]),
            "core": np.array([1.0, 0.0]),
            "index": np.array([0.0, 3.0]),
            "n_clusters": 1,
        },
    ]

    plan = merge_boundaries(shipped, eps=0.2)

    assert plan["n_clusters"] == 2
    assert plan["mapping"] == [[0, 1], [0]]
    assert plan["reclass"] == [[], [[3, 1]]]

import numpy as np
import pytest

from twinsem import (
    CausalDirection,
    CausalSingularityError,
    ConfigurationError,
    ModelKind,
    ModelSpecificationError,
    build_direction_set,
    build_doc,
    compare_directions,
    set_direction,
)
from twinsem.doc import causal_inverse, expected_covariance, expected_means

X = ["varA1", "varA2"]
Y = ["varB1", "varB2", "varB3"]


@pytest.fixture
def doc_data(make_data):
    names = X + Y
    return make_data(names, seed=5), make_data(names, seed=6)


def test_structure(doc_data):
    mz, dz = doc_data
    model = build_doc(X, Y, mz, dz)

    assert model.name == "DoC"
    assert model.kind == ModelKind.DOC
    assert model.manifests[:5] == ["varA1_T1", "varA2_T1", "varB1_T1", "varB2_T1", "varB3_T1"]

    loadings = model.matrix("FacLoad")
    expected_free = np.array([[1, 0], [1, 0], [0, 1], [0, 1], [0, 1]], dtype=bool)
    np.testing.assert_array_equal(loadings.free, expected_free)
    np.testing.assert_allclose(loadings.values, expected_free.astype(float))

    beta = model.matrix("beta")
    assert beta.labels[1, 0] == "a2b"
    assert beta.labels[0, 1] == "b2a"
    assert not beta.free.any()
    np.testing.assert_allclose(beta.values, np.zeros((2, 2)))

    assert model.matrix("es").lbound[0, 0] == pytest.approx(1e-5)
    assert not model.matrix("e").free.any()
    np.testing.assert_allclose(np.diag(model.values("e")), [1.0, 1.0])


def test_cholesky_form(doc_data):
    mz, dz = doc_data
    chol = build_doc(X, Y, mz, dz, causal=False)
    assert chol.name == "Chol"
    np.testing.assert_array_equal(chol.matrix("e").free, [[False, False], [True, False]])
    assert chol.matrix("a").free[1, 0]

    with pytest.raises(ModelSpecificationError):
        build_doc(X, Y, mz, dz, causal=False, direction=CausalDirection.X_TO_Y)


@pytest.mark.parametrize(
    "direction, free_cells",
    [
        (CausalDirection.NONE, []),
        (CausalDirection.X_TO_Y, [(1, 0)]),
        (CausalDirection.Y_TO_X, [(0, 1)]),
        (CausalDirection.RECIPROCAL, [(1, 0), (0, 1)]),
    ],
)
def test_directions_only_free_off_diagonal(doc_data, direction, free_cells):
    mz, dz = doc_data
    beta = build_doc(X, Y, mz, dz, direction=direction).matrix("beta")
    expected = np.zeros((2, 2), dtype=bool)
    for cell in free_cells:
        expected[cell] = True
    np.testing.assert_array_equal(beta.free, expected)


def test_transition_matches_direct_build(doc_data):
    mz, dz = doc_data
    direct = build_doc(X, Y, mz, dz, direction=CausalDirection.X_TO_Y)
    moved = set_direction(build_doc(X, Y, mz, dz), CausalDirection.X_TO_Y)

    assert list(direct.matrices) == list(moved.matrices)
    for name in direct.matrices:
        np.testing.assert_array_equal(direct.matrix(name).values, moved.matrix(name).values)
        np.testing.assert_array_equal(direct.matrix(name).free, moved.matrix(name).free)
        np.testing.assert_array_equal(direct.matrix(name).labels, moved.matrix(name).labels)
    assert moved.metadata["direction"] == CausalDirection.X_TO_Y


def test_transition_changes_only_beta(doc_data):
    mz, dz = doc_data
    base = build_doc(X, Y, mz, dz)
    recip = set_direction(base, CausalDirection.RECIPROCAL, name="Recip")
    changed = [
        name for name in base.matrices
        if not np.array_equal(base.matrix(name).free, recip.matrix(name).free)
    ]
    assert changed == ["beta"]
    back = set_direction(recip, CausalDirection.NONE)
    assert not back.matrix("beta").free.any()


@pytest.mark.parametrize(
    "x, y",
    [([], Y), (X, []), (X, ["varA1"] + Y)],
)
def test_bad_indicator_groups(doc_data, x, y):
    mz, dz = doc_data
    with pytest.raises(ConfigurationError):
        build_doc(x, y, mz, dz)


def test_mismatched_groups(doc_data):
    mz, dz = doc_data
    with pytest.raises(ConfigurationError):
        build_doc(X, Y, mz, dz.drop(columns=["varB3_T1"]))
    with pytest.raises(ConfigurationError):
        build_doc(X, Y, mz, None)


def test_causal_inverse():
    np.testing.assert_allclose(causal_inverse(np.zeros((2, 2))), np.eye(2))
    beta = np.array([[0.0, 0.0], [0.4, 0.0]])
    np.testing.assert_allclose(causal_inverse(beta), [[1.0, 0.0], [0.4, 1.0]])
    with pytest.raises(CausalSingularityError):
        causal_inverse(np.array([[0.0, 1.0], [1.0, 0.0]]))


def test_set_direction_checks_causal_inverse(doc_data):
    mz, dz = doc_data
    loop = build_doc(X, Y, mz, dz).modify({"a2b": 1.0, "b2a": 1.0})
    with pytest.raises(CausalSingularityError):
        set_direction(loop, CausalDirection.RECIPROCAL)
    # fixing b2a at 0 breaks the loop
    one_way = set_direction(loop, CausalDirection.X_TO_Y)
    np.testing.assert_allclose(one_way.values("beta"), [[0.0, 0.0], [1.0, 0.0]])


def test_cholesky_model_takes_no_direction(engine, doc_data):
    mz, dz = doc_data
    chol = build_doc(X, Y, mz, dz, causal=False)
    with pytest.raises(ModelSpecificationError, match="Cholesky"):
        set_direction(chol, CausalDirection.X_TO_Y)
    with pytest.raises(ModelSpecificationError, match="Cholesky"):
        build_direction_set(chol, engine)
    assert engine.calls == []


def test_expected_covariance_without_causation(doc_data):
    mz, dz = doc_data
    model = build_doc(X[:1], Y[:1], mz, dz)
    cov = expected_covariance(model)

    a = c = 0.2
    latent_var = a ** 2 + c ** 2 + 1.0
    np.testing.assert_allclose(np.diag(cov["latent_mz"]), np.full(4, latent_var))
    # cross-twin latent covariance: MZ shares all of A, DZ half
    assert cov["latent_mz"][0, 2] == pytest.approx(a ** 2 + c ** 2)
    assert cov["latent_dz"][0, 2] == pytest.approx(0.5 * a ** 2 + c ** 2)

    # one indicator per latent, loading 1, specifics used as variances
    assert cov["MZ"][0, 0] == pytest.approx(latent_var + 0.9)
    assert cov["MZ"][0, 2] == pytest.approx(a ** 2 + c ** 2 + 0.6)
    assert cov["DZ"][0, 2] == pytest.approx(0.5 * a ** 2 + c ** 2 + 0.15 + 0.3)
    np.testing.assert_allclose(cov["MZ"], cov["MZ"].T)
    np.testing.assert_allclose(expected_means(model), np.full(4, 0.1))


def test_causal_path_propagates_to_y(doc_data):
    mz, dz = doc_data
    model = build_doc(X[:1], Y[:1], mz, dz, direction=CausalDirection.X_TO_Y)
    model = model.modify({"a2b": {"value": 0.5, "free": True}})
    cov = expected_covariance(model)

    var_x = 0.2 ** 2 + 0.2 ** 2 + 1.0
    # Y = 0.5 X + own variance
    assert cov["latent_mz"][1, 1] == pytest.approx(0.25 * var_x + var_x)
    assert cov["latent_mz"][0, 1] == pytest.approx(0.5 * var_x)


def test_direction_set(make_engine, doc_data):
    mz, dz = doc_data
    engine = make_engine(
        aic={"Chol": 100.0, "DoC": 110.0, "a2b": 98.0, "b2a": 104.0},
        errors={"Recip": CausalSingularityError("(I - beta) is singular")},
    )
    doc = build_doc(X, Y, mz, dz)
    chol = build_doc(X, Y, mz, dz, causal=False)

    batch = build_direction_set(doc, engine, cholesky=chol)
    assert batch.names == ["Chol", "DoC", "a2b", "b2a"]
    assert [f.name for f in batch.failures] == ["Recip"]
    assert batch.by_name("a2b").parent == "DoC"
    assert batch.by_name("a2b").model.matrix("beta").free[1, 0]

    result = compare_directions(doc, engine, cholesky=chol)
    assert result.base.name == "Chol"
    assert list(result.table["Model"]) == ["Chol", "DoC", "a2b", "b2a"]
    assert result.ranking.best_model.name == "a2b"


def test_direction_set_from_fitted_base(engine, doc_data):
    mz, dz = doc_data
    fitted = engine.fit(build_doc(X, Y, mz, dz))
    batch = build_direction_set(fitted, engine)
    assert batch.names == ["a2b", "b2a", "Recip"]
    assert batch.by_name("Recip").model.matrix("beta").free.sum() == 2

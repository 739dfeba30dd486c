import numpy as np
import pytest

from twinsem import (
    EngineConfig,
    ModelSpecificationError,
    NestedFamily,
    OptimizationError,
    build_ace,
    build_gxe,
    build_nested_set,
    reduce,
)
from twinsem.reduce import GXE_VARIANTS, detect_family


@pytest.fixture
def ace_model(twin_data):
    mz, dz = twin_data
    return build_ace(["ht", "wt"], mz, dz)


@pytest.fixture
def gxe_model(gxe_data):
    mz, dz = gxe_data
    return build_gxe("bmi", "age", mz, dz)


def _all_fixed_at_zero(model, matrix):
    m = model.matrix(matrix)
    return not m.free.any() and np.all(m.values[np.tril_indices(m.shape[0])] == 0.0)


def test_detect_family(ace_model, gxe_model):
    assert detect_family(ace_model) == NestedFamily.ACE
    assert detect_family(ace_model.modify({"dzCr_r1c1": 0.25})) == NestedFamily.ADE
    assert detect_family(gxe_model) == NestedFamily.GXE
    with pytest.raises(ModelSpecificationError, match="odd value"):
        detect_family(ace_model.modify({"dzCr_r1c1": 0.6}))


def test_ace_base_keeps_ace_branch_when_it_fits_better(make_engine, ace_model):
    engine = make_engine(minus2ll={"ACE": 500.0, "ADE": 505.0})
    base = engine.fit(ace_model)
    result = build_nested_set(base, engine)

    assert result.names == ["ADE", "CE", "AE"]
    ade = result.by_name("ADE")
    assert ade.model.values("dzCr")[0, 0] == 0.25
    assert not ade.model.matrix("dzCr").free.any()
    assert ade.model.free_labels() == base.free_labels()

    ce, ae = result.by_name("CE"), result.by_name("AE")
    assert ce.parent == "ACE" and ae.parent == "ACE"
    assert _all_fixed_at_zero(ce.model, "a")
    assert _all_fixed_at_zero(ae.model, "c")
    assert ce.model.values("dzCr")[0, 0] == 1.0
    for variant in (ce, ae):
        assert variant.model.free_labels() < base.free_labels()


def test_ace_base_switches_to_dominance_branch(make_engine, ace_model):
    engine = make_engine(minus2ll={"ACE": 505.0, "ADE": 500.0})
    base = engine.fit(ace_model)
    result = build_nested_set(base, engine, family=NestedFamily.ACE)

    assert result.names == ["ADE", "DE", "AE"]
    assert result.by_name("DE").parent == "ADE"
    assert result.by_name("AE").parent == "ADE"
    assert result.by_name("AE").model.values("dzCr")[0, 0] == 0.25


def test_tie_keeps_base_regime(make_engine, ace_model):
    engine = make_engine(minus2ll={"ACE": 500.0, "ADE": 500.0})
    result = build_nested_set(engine.fit(ace_model), engine)
    assert result.names == ["ADE", "CE", "AE"]


def test_ade_base_called_ace_is_renamed(make_engine, ace_model):
    engine = make_engine(minus2ll={"ADE": 500.0, "ACE": 504.0})
    base = engine.fit(ace_model.modify({"dzCr_r1c1": 0.25}, name="ACE"))
    result = build_nested_set(base, engine)

    assert result.names == ["ACE", "DE", "AE"]
    assert result.by_name("ACE").parent == "ADE"
    assert result.by_name("ACE").model.values("dzCr")[0, 0] == 1.0
    assert result.by_name("DE").parent == "ADE"
    assert result.by_name("AE").parent == "ADE"
    # the caller's model keeps its name
    assert base.name == "ACE"


def test_ade_base_switches_to_ace_for_drop_a(make_engine, ace_model):
    engine = make_engine(minus2ll={"ADE": 504.0, "ACE": 500.0})
    base = engine.fit(ace_model.modify({"dzCr_r1c1": 0.25}, name="ADE"))
    result = build_nested_set(base, engine)

    assert result.names == ["ACE", "CE", "AE"]
    assert result.by_name("CE").parent == "ACE"
    assert result.by_name("AE").parent == "ADE"


def test_family_mismatch_and_unfit(engine, ace_model):
    with pytest.raises(ModelSpecificationError):
        build_nested_set(engine.fit(ace_model), engine, family=NestedFamily.GXE)
    from twinsem import UnfittedModelError

    with pytest.raises(UnfittedModelError):
        build_nested_set(ace_model, engine)


def test_failed_alternative_falls_back_to_base(make_engine, ace_model):
    engine = make_engine(fail={"ADE"})
    result = build_nested_set(engine.fit(ace_model), engine)
    assert result.names == ["CE", "AE"]
    assert [f.name for f in result.failures] == ["ADE"]
    assert isinstance(result.failures[0].error, OptimizationError)


def test_gxe_variants(engine, gxe_model):
    base = engine.fit(gxe_model)
    result = build_nested_set(base, engine)

    assert result.names == [name for name, _, _ in GXE_VARIANTS]
    assert len(result.variants) == 11
    parents = {v.name: v.parent for v in result.variants}
    assert parents["No_A_no_mod_on_A"] == "No_mod_on_A"
    assert parents["No_c_no_moderation"] == "No_c_no_ce_mod"
    assert parents["No_lin_mean"] == "GxE"

    assert set(result.by_name("No_means_moderation").constraints) == {"lin11", "quad11"}
    assert set(result.by_name("No_moderation").constraints) == {"am_r1c1", "cm_r1c1", "em_r1c1"}

    final = result.by_name("No_c_no_moderation").model
    assert {"c_r1c1", "cm_r1c1", "em_r1c1", "am_r1c1"}.isdisjoint(final.free_labels())
    assert "a_r1c1" in final.free_labels()

    models = {m.name: m for m in [base] + result.models}
    for v in result.variants:
        assert v.model.free_labels() < models[v.parent].free_labels()
        for label, value in v.constraints.items():
            assert value == 0.0
            addr = v.model.address_of(label)[0]
            assert v.model.values(addr.matrix)[addr.row, addr.col] == 0.0


def test_gxe_partial_failure(make_engine, gxe_model):
    engine = make_engine(fail={"No_mod_on_C"})
    result = build_nested_set(engine.fit(gxe_model), engine, config=EngineConfig(max_workers=4))

    failed = [f.name for f in result.failures]
    assert failed == ["No_mod_on_C", "No_C_no_mod_on_C", "No_c_no_ce_mod", "No_c_no_moderation"]
    assert len(result.variants) == 7
    assert result.failure("No_mod_on_C").error.variant == "No_mod_on_C"


def test_parallel_and_serial_agree(make_engine, gxe_model):
    serial_engine = make_engine(delay={"No_lin_mean": 0.02})
    parallel_engine = make_engine(delay={"No_lin_mean": 0.02})
    base = serial_engine.fit(gxe_model)

    serial = build_nested_set(base, serial_engine, config=EngineConfig(max_workers=1))
    parallel = build_nested_set(base, parallel_engine, config=EngineConfig(max_workers=4))
    assert serial.names == parallel.names
    assert [m.fit.minus2ll for m in serial.models] == [m.fit.minus2ll for m in parallel.models]


def test_reduce_ace(make_engine, ace_model):
    engine = make_engine(
        minus2ll={"ACE": 500.0, "ADE": 503.0, "CE": 530.0, "AE": 501.0},
        aic={"ACE": 520.0, "ADE": 523.0, "CE": 540.0, "AE": 515.0},
    )
    result = reduce(engine.fit(ace_model), engine)

    assert list(result.table["Model"]) == ["ACE", "ADE", "CE", "AE"]
    assert list(result.table["Compare with Model"]) == ["", "ACE", "ACE", "ACE"]
    assert result.ranking.names == ["ACE", "ADE", "CE", "AE"]
    assert result.best.name == "AE"
    assert result.ranking.weights.sum() == pytest.approx(1.0)
    assert result.family == NestedFamily.ACE


def test_reduce_ade_orders_table_from_ace(make_engine, ace_model):
    engine = make_engine(minus2ll={"ADE": 500.0, "ACE": 502.0})
    result = reduce(engine.fit(ace_model.modify({"dzCr_r1c1": 0.25}, name="ADE")), engine)
    assert list(result.table["Model"]) == ["ACE", "ADE", "DE", "AE"]


def test_reduce_gxe_with_intervals(make_engine, gxe_model):
    engine = make_engine(aic={"No_mod_on_E": 10.0}, fail={"No_quad_mean"})
    result = reduce(engine.fit(gxe_model), engine, config=EngineConfig(intervals=True))

    assert result.table["Model"].iloc[0] == "GxE"
    assert "No_quad_mean" not in list(result.table["Model"])
    assert [f.name for f in result.failures] == ["No_quad_mean"]
    assert result.best.name == "No_mod_on_E"
    assert result.best.fit.intervals


def test_reduce_keeps_results_when_interval_refit_fails(make_engine, gxe_model):
    engine = make_engine(aic={"No_mod_on_E": 10.0}, fail_intervals={"No_mod_on_E"})
    result = reduce(engine.fit(gxe_model), engine, config=EngineConfig(intervals=True))

    assert result.best.name == "No_mod_on_E"
    assert result.best.has_been_fit
    assert not result.best.fit.intervals
    assert len(result.table) == 12
    assert result.ranking.best_model.name == "No_mod_on_E"
    (failure,) = result.failures
    assert failure.name == "No_mod_on_E"
    assert isinstance(failure.error, OptimizationError)
    assert failure.error.variant == "No_mod_on_E"

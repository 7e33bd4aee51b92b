import pytest

from noderemedy.features import FeatureGates, gates


def test_override_sets_and_restores():
    feature_gates = FeatureGates()
    with feature_gates.override(out_of_service_taint_supported=True) as active:
        assert active.out_of_service_taint_supported is True
        assert feature_gates.out_of_service_taint_ga is False
    assert feature_gates.out_of_service_taint_supported is False


def test_override_restores_after_exception():
    feature_gates = FeatureGates(out_of_service_taint_ga=True)
    with pytest.raises(RuntimeError):
        with feature_gates.override(out_of_service_taint_ga=False):
            raise RuntimeError("fail")
    assert feature_gates.out_of_service_taint_ga is True


def test_override_nested():
    feature_gates = FeatureGates()
    with feature_gates.override(out_of_service_taint_supported=True):
        with feature_gates.override(out_of_service_taint_supported=False):
            assert feature_gates.out_of_service_taint_supported is False
        assert feature_gates.out_of_service_taint_supported is True
    assert feature_gates.out_of_service_taint_supported is False


def test_override_rejects_unknown_gate():
    feature_gates = FeatureGates()
    with pytest.raises(TypeError):
        with feature_gates.override(bogus=True):
            pass
    assert feature_gates == FeatureGates()


def test_shared_gates_restored():
    before = gates.out_of_service_taint_supported
    with gates.override(out_of_service_taint_supported=not before) as active:
        assert active.out_of_service_taint_supported is (not before)
        assert gates.out_of_service_taint_supported is (not before)
    assert gates.out_of_service_taint_supported is before
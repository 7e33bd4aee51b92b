import re

import pytest

from noderemedy.features import gates
from noderemedy.meta import ObjectMeta, ValidationError
from noderemedy.remediation import (
    DEFAULT_REMEDIATION_STRATEGY,
    RemediationStrategy,
    SelfNodeRemediation,
    SelfNodeRemediationSpec,
    validate_strategy,
)

NOT_SUPPORTED = re.escape(
    "OutOfServiceTaint remediation strategy is not supported at kubernetes version lower "
    "than 1.26, please use a different remediation strategy"
)


@pytest.fixture
def snr_valid():
    return SelfNodeRemediation(
        metadata=ObjectMeta(name="test"),
        spec=SelfNodeRemediationSpec(remediation_strategy=RemediationStrategy.RESOURCE_DELETION),
    )


@pytest.fixture
def out_of_service_strategy():
    return SelfNodeRemediation(
        metadata=ObjectMeta(name="test"),
        spec=SelfNodeRemediationSpec(remediation_strategy=RemediationStrategy.OUT_OF_SERVICE_TAINT),
    )


def test_valid_strategy_allowed(snr_valid, out_of_service_strategy):
    with gates.override(out_of_service_taint_supported=False):
        assert snr_valid.validate_create() is None
        with pytest.raises(ValidationError):
            out_of_service_strategy.validate_create()


def test_out_of_service_allowed_when_supported(snr_valid, out_of_service_strategy):
    with gates.override(out_of_service_taint_supported=True):
        assert out_of_service_strategy.validate_create() is None
        assert snr_valid.validate_update(out_of_service_strategy) is None
        assert out_of_service_strategy.validate_update(snr_valid) is None


def test_out_of_service_denied_when_not_supported(snr_valid, out_of_service_strategy):
    with gates.override(out_of_service_taint_supported=False):
        with pytest.raises(ValidationError, match=NOT_SUPPORTED):
            out_of_service_strategy.validate_create()
        with pytest.raises(ValidationError, match=NOT_SUPPORTED):
            out_of_service_strategy.validate_update(snr_valid)


def test_validate_strategy_accepts_plain_string():
    with gates.override(out_of_service_taint_supported=False):
        with pytest.raises(ValidationError, match=NOT_SUPPORTED):
            validate_strategy(SelfNodeRemediationSpec(remediation_strategy="OutOfServiceTaint"))
        assert validate_strategy(SelfNodeRemediationSpec(remediation_strategy="Automatic")) is None


def test_validate_delete_never_rejects(out_of_service_strategy):
    with gates.override(out_of_service_taint_supported=False):
        assert out_of_service_strategy.validate_delete() is None
        with pytest.raises(ValidationError):
            out_of_service_strategy.validate_create()


def test_default_spec_uses_automatic_strategy():
    snr = SelfNodeRemediation()
    assert snr.spec.remediation_strategy == DEFAULT_REMEDIATION_STRATEGY
    assert DEFAULT_REMEDIATION_STRATEGY.value == "Automatic"
    assert snr.status.phase is None
    assert snr.status.last_error == ""
    assert snr.status.conditions == []
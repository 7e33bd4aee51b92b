import datetime as dt

from noderemedy.meta import (
    Condition,
    ConditionStatus,
    Taint,
    TaintEffect,
    ValidationError,
    aggregate_errors,
    delete_taint,
    find_status_condition,
    format_duration,
    is_status_condition_present_and_equal,
    set_status_condition,
    taint_exists,
)

UTC = dt.timezone.utc
NO_EXECUTE = Taint(
    key="medik8s.io/remediation", value="self-node-remediation", effect=TaintEffect.NO_EXECUTE
)
UNSCHEDULABLE = Taint(key="node.kubernetes.io/unschedulable", effect=TaintEffect.NO_SCHEDULE)


def test_taint_matches_on_key_and_effect_only():
    other = Taint(
        key=NO_EXECUTE.key,
        value="other",
        effect=TaintEffect.NO_EXECUTE,
        time_added=dt.datetime(2024, 1, 1, tzinfo=UTC),
    )
    assert NO_EXECUTE.matches(other)
    assert not NO_EXECUTE.matches(Taint(key=NO_EXECUTE.key, effect=TaintEffect.NO_SCHEDULE))


def test_taint_exists():
    assert taint_exists([UNSCHEDULABLE, NO_EXECUTE], NO_EXECUTE)
    assert not taint_exists([UNSCHEDULABLE], NO_EXECUTE)
    assert not taint_exists([], UNSCHEDULABLE)


def test_delete_taint_removes_matching_without_mutating_input():
    taints = [UNSCHEDULABLE, NO_EXECUTE]
    remaining, deleted = delete_taint(taints, NO_EXECUTE)
    assert deleted is True
    assert remaining == [UNSCHEDULABLE]
    assert taints == [UNSCHEDULABLE, NO_EXECUTE]


def test_delete_taint_reports_missing():
    remaining, deleted = delete_taint([UNSCHEDULABLE], NO_EXECUTE)
    assert deleted is False
    assert remaining == [UNSCHEDULABLE]


def test_set_status_condition_appends_new():
    conditions: list[Condition] = []
    set_status_condition(conditions, Condition(type="Processing", status=ConditionStatus.TRUE, reason="RemediationStarted"))
    assert len(conditions) == 1
    assert conditions[0].reason == "RemediationStarted"
    assert conditions[0].last_transition_time is not None and conditions[0].status == ConditionStatus.TRUE


def test_set_status_condition_keeps_time_when_status_unchanged():
    first = dt.datetime(2024, 1, 1, tzinfo=UTC)
    later = dt.datetime(2024, 2, 1, tzinfo=UTC)
    conditions: list[Condition] = []
    set_status_condition(conditions, Condition("Processing", ConditionStatus.TRUE, "a", last_transition_time=first))
    set_status_condition(conditions, Condition("Processing", ConditionStatus.TRUE, "b", last_transition_time=later))
    assert len(conditions) == 1
    assert conditions[0].reason == "b"
    assert conditions[0].last_transition_time == first


def test_set_status_condition_moves_time_on_status_change():
    first = dt.datetime(2024, 1, 1, tzinfo=UTC)
    later = dt.datetime(2024, 2, 1, tzinfo=UTC)
    conditions: list[Condition] = []
    set_status_condition(conditions, Condition("Succeeded", ConditionStatus.UNKNOWN, "a", last_transition_time=first))
    set_status_condition(conditions, Condition("Succeeded", ConditionStatus.TRUE, "b", last_transition_time=later))
    found = find_status_condition(conditions, "Succeeded")
    assert found.status == ConditionStatus.TRUE
    assert found.last_transition_time == later


def test_is_status_condition_present_and_equal():
    conditions = [Condition("Processing", ConditionStatus.FALSE, "x")]
    assert is_status_condition_present_and_equal(conditions, "Processing", ConditionStatus.FALSE)
    assert not is_status_condition_present_and_equal(conditions, "Processing", ConditionStatus.TRUE)
    assert not is_status_condition_present_and_equal(conditions, "Succeeded", ConditionStatus.FALSE)
    assert find_status_condition(conditions, "Succeeded") is None


def test_format_duration_pinned_values():
    assert format_duration(dt.timedelta(milliseconds=10)) == "10ms"
    assert format_duration(dt.timedelta(hours=1)) == "1h0m0s"


def test_format_duration_negative_is_prefixed():
    for value in (dt.timedelta(milliseconds=3), dt.timedelta(seconds=10), dt.timedelta(minutes=5)):
        assert format_duration(-value) == "-" + format_duration(value)


def test_aggregate_errors_empty_is_none():
    assert aggregate_errors([]) is None
    assert aggregate_errors([None, None]) is None


def test_aggregate_errors_single_keeps_message():
    error = ValueError("boom")
    result = aggregate_errors([None, error])
    assert isinstance(result, ValidationError)
    assert str(result) == "boom"
    assert result.errors == (error,)


def test_aggregate_errors_multiple_are_bracketed():
    result = aggregate_errors([ValueError("first"), None, ValueError("second")])
    assert str(result) == "[first, second]"
    assert len(result.errors) == 2


def test_aggregate_errors_deduplicates_and_flattens():
    same = aggregate_errors([ValueError("same"), ValueError("same")])
    assert str(same) == "same"
    a, b, c = ValueError("a"), ValueError("b"), ValueError("c")
    nested = aggregate_errors([aggregate_errors([a, b]), c])
    assert nested.errors == (a, b, c)
import pytest

from darnit.condition import CELEvaluator, ExpressionError


@pytest.fixture
def evaluator():
    return CELEvaluator()


@pytest.mark.parametrize(
    "expression, data, expected",
    [
        ("security_policy == 'missing'", {"security_policy": "missing"}, True),
        ("security_policy == 'missing'", {"security_policy": "present"}, False),
        (
            "security_policy == 'missing' && mfa_status == 'disabled'",
            {"security_policy": "missing", "mfa_status": "disabled"},
            True,
        ),
        (
            "security_policy == 'missing' && mfa_status == 'disabled'",
            {"security_policy": "missing", "mfa_status": "enabled"},
            False,
        ),
        (
            "security_policy == 'missing' || mfa_status == 'disabled'",
            {"security_policy": "present", "mfa_status": "disabled"},
            True,
        ),
        (
            "security_policy == 'missing' || mfa_status == 'disabled'",
            {"security_policy": "present", "mfa_status": "enabled"},
            False,
        ),
        (
            "security_policy == 'missing' || (mfa_status == 'disabled' && branch_protection == 'partial')",
            {"security_policy": "present", "mfa_status": "disabled", "branch_protection": "partial"},
            True,
        ),
    ],
)
def test_evaluate_expression(evaluator, expression, data, expected):
    assert evaluator.evaluate_expression(expression, data) is expected


@pytest.mark.parametrize(
    "expression, data",
    [
        ("security_policy = 'missing'", {"security_policy": "missing"}),
        ("security_policy", {"security_policy": "missing"}),
        ("nonexistent_field == 'value'", {"security_policy": "missing"}),
        ("security_policy == 'missing'", None),
        ("security_policy == 'missing'", {}),
    ],
)
def test_evaluate_expression_errors(evaluator, expression, data):
    with pytest.raises(ExpressionError):
        evaluator.evaluate_expression(expression, data)


def test_string_functions(evaluator):
    data = {"name": "darn-tool", "tags": ["a", "b"]}
    assert evaluator.evaluate_expression("name.startsWith('darn') && name.contains('-')", data) is True
    assert evaluator.evaluate_expression("'b' in tags && size(tags) == 2", data) is True
    assert evaluator.evaluate_expression("name.split('-')[1] == 'tool'", data) is True
    assert evaluator.evaluate_expression("tags.exists(t, t == 'c')", data) is False


ARRAY_DATA = {
    "failed_controls": ["OSPS-GV-03.01", "OSPS-LE-02.01"],
    "has_failed_control": {"OSPS-GV-03.01": True, "OSPS-LE-02.01": True},
}


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("['a', 'b', 'c']", ["a", "b", "c"]),
        (
            "['base'] + (has_failed_control['OSPS-GV-03.01'] ? ['contrib'] : [])"
            " + (has_failed_control['OSPS-LE-02.01'] ? ['license'] : [])",
            ["base", "contrib", "license"],
        ),
        ("'single'", ["single"]),
        ("[]", []),
        ("has_failed_control['OSPS-GV-03.01'] ? ['control-found'] : ['no-control']", ["control-found"]),
    ],
)
def test_string_array_expression(evaluator, expression, expected):
    assert sorted(evaluator.evaluate_string_array_expression(expression, ARRAY_DATA)) == sorted(expected)


def test_string_array_invalid_expression(evaluator):
    with pytest.raises(ExpressionError):
        evaluator.evaluate_string_array_expression("invalid.property", ARRAY_DATA)


def test_string_array_non_list_result(evaluator):
    with pytest.raises(ExpressionError):
        evaluator.evaluate_string_array_expression("1 + 2", ARRAY_DATA)
import pytest

from darnit.models import (
    ExecutionOptions,
    GenerateOptions,
    RemediationPlan,
    RemediationStep,
    Report,
)


def _sample_plan():
    return RemediationPlan(
        project_name="Test Project",
        repository="test/repo",
        steps=[
            RemediationStep(
                id="first-step",
                action_name="first-action",
                params={"param": "value"},
                reason="First step",
                status="success",
                outputs={"commit_hash": "abc123"},
            ),
            RemediationStep(
                id="second-step",
                action_name="second-action",
                params={"hash": "placeholder"},
                output_refs={"hash": "first-step.commit_hash"},
                reason="Second step that depends on first step output",
                depends_on=["first-step"],
                status="pending",
            ),
        ],
    )


def test_plan_round_trip():
    plan = _sample_plan()
    assert RemediationPlan.from_dict(plan.to_dict()) == plan


def test_step_round_trip_preserves_output_refs():
    step = _sample_plan().steps[1]
    restored = RemediationStep.from_dict(step.to_dict())
    assert restored.output_refs == {"hash": "first-step.commit_hash"}
    assert restored.depends_on == ["first-step"]
    assert restored.outputs is None


def test_step_to_dict_omits_empty_optionals():
    data = RemediationStep(id="s", action_name="a").to_dict()
    assert set(data) == {"id", "action", "params", "reason"}


def test_step_from_dict_defaults():
    step = RemediationStep.from_dict({"id": "s", "action": "a"})
    assert step.params == {}
    assert step.depends_on == []
    assert step.status == ""


def test_step_from_dict_rejects_non_mapping():
    with pytest.raises(ValueError):
        RemediationStep.from_dict(["not", "a", "mapping"])


def test_plan_from_dict_rejects_bad_steps():
    with pytest.raises(ValueError):
        RemediationPlan.from_dict({"steps": "nope"})


def test_step_from_dict_rejects_bad_params():
    with pytest.raises(ValueError):
        RemediationStep.from_dict({"id": "s", "params": [1, 2]})


def test_option_defaults():
    options = ExecutionOptions()
    assert (options.dry_run, options.verbose_logging, options.continue_on_error) == (False, False, False)
    generate = GenerateOptions()
    assert generate.extra_params == {}
    assert generate.skip_defaults is False


def test_report_findings_independent():
    first, second = Report(), Report()
    first.findings["security_policy"] = "missing"
    assert second.findings == {}
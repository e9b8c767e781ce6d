import builtins
from pathlib import Path

import pytest

from darnit.darnit import create_action_resolver
from darnit.models import GenerateOptions, RemediationPlan, Report
from darnit.plan import (
    MappingError,
    MappingRule,
    evaluate_rule_match,
    generate_remediation_plan,
    load_mapping_config,
    process_mapping_rule,
)

ADD_SECURITY_MD = """# Test action
name: "add-security-md"
description: "Add SECURITY.md file to repository"
type: "shell"
command: "echo"
args: ["Creating SECURITY.md for {{.name}}"]
"""

ENABLE_MFA = """# Test action
name: "enable-mfa"
description: "Enable MFA for organization"
type: "shell"
command: "echo"
args: ["Enabling MFA for {{.organization}}"]
"""

SUB_MAPPING = """mappings:
  - id: "sub-mapping"
    steps:
      - id: "sub-step"
        action: "add-security-md"
        parameters:
          name: "{{.project_name}}"
          emails: ["{{.email}}"]
        reason: "Add security documentation"
"""

SUB_MAPPING_RESOLVABLE = """mappings:
  - id: "sub-mapping"
    steps:
      - id: "sub-step"
        action: "add-security-md"
        parameters:
          name: "{{.project_name}}"
          emails: ["{{.security_email}}"]
        reason: "Add security documentation"
      - id: "second"
        action: "enable-mfa"
        parameters:
          organization: "{{.organization}}"
        reason: "Follow up"
"""

LOOP_MAPPING = """mappings:
  - id: "loop"
    steps:
      - id: "again"
        mapping_ref: "loop.yaml"
"""

MAIN_MAPPING = """mappings:
  - id: "security-policy-remediation"
    condition: "security_policy == 'missing'"
    action: "add-security-md"
    reason: "Add security documentation"
    parameters:
      name: "{{.project_name}}"
      emails: ["{{.security_email}}"]
  - id: "mfa-remediation"
    condition: "mfa_status == 'disabled'"
    action: "enable-mfa"
    reason: "Enable MFA for organization"
    parameters:
      organization: "{{.organization}}"
  - id: "mapping-with-ref"
    condition: "branch_protection == 'partial'"
    mapping_ref: "SUBFILE"
    reason: "Apply additional protections"
    parameters:
      project_name: "{{.project_name}}"
      email: "{{.security_email}}"
"""

FINDINGS = {
    "security_policy": "missing",
    "mfa_status": "disabled",
    "branch_protection": "partial",
}

EXTRA = {
    "project_name": "Test Project",
    "organization": "test-org",
    "security_email": "security@example.com",
}


@pytest.fixture
def library(tmp_path, monkeypatch):
    home = tmp_path / "home"
    library_dir = home / ".darn" / "library"
    actions = library_dir / "actions"
    actions.mkdir(parents=True)
    (actions / "add-security-md.yaml").write_text(ADD_SECURITY_MD)
    (actions / "enable-mfa.yaml").write_text(ENABLE_MFA)
    mappings = library_dir / "mappings"
    mappings.mkdir()
    (mappings / "sub-mapping.yaml").write_text(SUB_MAPPING)
    (mappings / "sub-resolvable.yaml").write_text(SUB_MAPPING_RESOLVABLE)
    (mappings / "loop.yaml").write_text(LOOP_MAPPING)
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("DARN_HOME", str(home))
    monkeypatch.chdir(work)
    return mappings


def write_mapping(tmp_path: Path, content: str, name: str = "test-mapping.yaml") -> Path:
    path = tmp_path / name
    path.write_text(content)
    return path


def make_options(mappings_dir="", extra=None, interactive=False, verbose=False):
    return GenerateOptions(
        mappings_dir=str(mappings_dir),
        extra_params=dict(extra or {}),
        skip_defaults=True,
        skip_repo_inference=True,
        non_interactive=not interactive,
        verbose_logging=verbose,
    )


def test_load_mapping_config(tmp_path):
    content = """mappings:
  - id: "test-mapping"
    condition: "security_policy == 'missing'"
    action: "add-security-md"
    reason: "Add security documentation"
    parameters:
      name: "Test Project"
      emails: ["security@example.com"]
  - id: "second-mapping"
    condition: "mfa_status == 'disabled'"
    action: "enable-mfa"
    reason: "Enable MFA for organization"
    parameters:
      organization: "test-org"
"""
    config = load_mapping_config(write_mapping(tmp_path, content))
    assert len(config.mappings) == 2
    first = config.mappings[0]
    assert first.id == "test-mapping"
    assert first.condition == "security_policy == 'missing'"
    assert first.action == "add-security-md"
    assert first.reason == "Add security documentation"
    assert first.parameters["name"] == "Test Project"
    assert first.parameters["emails"] == ["security@example.com"]
    second = config.mappings[1]
    assert second.id == "second-mapping"
    assert second.condition == "mfa_status == 'disabled'"
    assert second.action == "enable-mfa"


def test_load_mapping_config_nonexistent_file():
    with pytest.raises(MappingError, match="error reading mapping file"):
        load_mapping_config("nonexistent-file.yaml")


def test_load_mapping_config_invalid_yaml(tmp_path):
    invalid = '\n\tmappings:\n\t  - id: "invalid-mapping\n\t    action: "missing-quotes\n\t'
    with pytest.raises(MappingError, match="error parsing mapping file"):
        load_mapping_config(write_mapping(tmp_path, invalid))


def test_mapping_rule_from_dict_nested_steps():
    rule = MappingRule.from_dict(
        {"id": "parent", "once": True, "steps": [{"id": "child", "action": "a", "depends_on": ["x"]}]}
    )
    assert rule.once is True
    assert rule.steps[0].id == "child"
    assert rule.steps[0].depends_on == ["x"]
    assert rule.depends_on is None


def test_generate_plan_with_unresolvable_sub_mapping_parameter(tmp_path, library):
    mapping = write_mapping(tmp_path, MAIN_MAPPING.replace("SUBFILE", "sub-mapping.yaml"))
    with pytest.raises(MappingError, match="missing values for some parameters"):
        generate_remediation_plan(
            Report(findings=dict(FINDINGS)), mapping, make_options(library, EXTRA, verbose=True)
        )


def test_generate_remediation_plan(tmp_path, library):
    mapping = write_mapping(tmp_path, MAIN_MAPPING.replace("SUBFILE", "sub-resolvable.yaml"))
    plan = generate_remediation_plan(
        Report(findings=dict(FINDINGS)), mapping, make_options(library, EXTRA)
    )
    assert plan.project_name == "Test Project"
    assert plan.repository == "Unknown Repository"
    steps = {step.id: step for step in plan.steps}
    assert set(steps) == {
        "security-policy-remediation",
        "mfa-remediation",
        "mapping-with-ref-sub-step",
        "mapping-with-ref-second",
    }

    security = steps["security-policy-remediation"]
    assert security.action_name == "add-security-md"
    assert security.reason == "Add security documentation"
    assert security.params["name"] == "Test Project"
    assert security.params["emails"] == ["security@example.com"]

    mfa = steps["mfa-remediation"]
    assert mfa.action_name == "enable-mfa"
    assert mfa.reason == "Enable MFA for organization"
    assert mfa.params["organization"] == "test-org"

    sub = steps["mapping-with-ref-sub-step"]
    assert sub.action_name == "add-security-md"
    assert sub.params["name"] == "Test Project"
    assert sub.params["email"] == "security@example.com"

    second = steps["mapping-with-ref-second"]
    assert second.depends_on == ["mapping-with-ref-sub-step"]
    ids = [step.id for step in plan.steps]
    assert ids.index("mapping-with-ref-sub-step") < ids.index("mapping-with-ref-second")


def test_parent_parameters_override_child(tmp_path, library):
    content = """mappings:
  - id: "ref"
    mapping_ref: "sub-resolvable.yaml"
    parameters:
      name: "Override"
"""
    plan = generate_remediation_plan(
        Report(findings={}), write_mapping(tmp_path, content), make_options(library, EXTRA)
    )
    steps = {step.id: step for step in plan.steps}
    assert steps["ref-sub-step"].params["name"] == "Override"
    assert steps["ref-second"].params["name"] == "Override"


def test_non_matching_condition_is_skipped(tmp_path, library):
    content = """mappings:
  - id: "mfa"
    condition: "mfa_status == 'disabled'"
    action: "enable-mfa"
    parameters:
      organization: "org"
"""
    plan = generate_remediation_plan(
        Report(findings={"mfa_status": "enabled"}), write_mapping(tmp_path, content), make_options()
    )
    assert plan.steps == []
    assert plan.project_name == "Unknown Project"


def test_steps_sorted_by_dependencies(tmp_path, library):
    content = """mappings:
  - id: "b"
    action: "enable-mfa"
    depends_on: ["a"]
  - id: "a"
    action: "enable-mfa"
"""
    plan = generate_remediation_plan(Report(findings={}), write_mapping(tmp_path, content), make_options())
    assert [step.id for step in plan.steps] == ["a", "b"]


def test_once_rule_added_only_once(tmp_path, library):
    content = """mappings:
  - id: "first"
    action: "enable-mfa"
    once: true
  - id: "second"
    action: "enable-mfa"
    once: true
"""
    plan = generate_remediation_plan(Report(findings={}), write_mapping(tmp_path, content), make_options())
    assert [step.id for step in plan.steps] == ["first"]


def test_depends_on_expr_merges_with_static(tmp_path, library):
    content = """mappings:
  - id: "zero"
    action: "enable-mfa"
  - id: "first"
    action: "add-security-md"
  - id: "second"
    action: "enable-mfa"
    depends_on: ["first"]
    depends_on_expr: "['first'] + (flag ? ['zero'] : [])"
"""
    plan = generate_remediation_plan(
        Report(findings={"flag": True}), write_mapping(tmp_path, content), make_options()
    )
    steps = {step.id: step for step in plan.steps}
    assert steps["second"].depends_on == ["first", "zero"]
    assert [step.id for step in plan.steps][-1] == "second"


def test_circular_step_dependencies(tmp_path, library):
    content = """mappings:
  - id: "step1"
    action: "enable-mfa"
    depends_on: ["step3"]
  - id: "step2"
    action: "enable-mfa"
    depends_on: ["step1"]
  - id: "step3"
    action: "enable-mfa"
    depends_on: ["step2"]
"""
    with pytest.raises(MappingError, match="circular dependency"):
        generate_remediation_plan(Report(findings={}), write_mapping(tmp_path, content), make_options())


def test_missing_dependency_is_reported(tmp_path, library):
    content = """mappings:
  - id: "only"
    action: "enable-mfa"
    depends_on: ["ghost"]
"""
    with pytest.raises(MappingError, match="non-existent step 'ghost'"):
        generate_remediation_plan(Report(findings={}), write_mapping(tmp_path, content), make_options())


def test_circular_mapping_reference(tmp_path, library):
    content = """mappings:
  - id: "start"
    mapping_ref: "loop.yaml"
"""
    with pytest.raises(MappingError, match="circular mapping reference detected"):
        generate_remediation_plan(
            Report(findings={}), write_mapping(tmp_path, content), make_options(library)
        )


def test_condition_with_unknown_field_fails(tmp_path, library):
    content = """mappings:
  - id: "x"
    condition: "nonexistent_field == 'value'"
    action: "enable-mfa"
"""
    with pytest.raises(MappingError, match="error evaluating rule x"):
        generate_remediation_plan(Report(findings={}), write_mapping(tmp_path, content), make_options())


def test_unknown_action_fails(tmp_path, library):
    content = """mappings:
  - id: "x"
    action: "does-not-exist"
"""
    with pytest.raises(MappingError, match="error getting action config for rule x"):
        generate_remediation_plan(Report(findings={}), write_mapping(tmp_path, content), make_options())


def test_prompts_for_missing_parameters(tmp_path, library, monkeypatch):
    content = """mappings:
  - id: "mfa"
    action: "enable-mfa"
    parameters:
      organization: "{{.owner}}"
"""
    monkeypatch.setattr(builtins, "input", lambda prompt="": "alice")
    plan = generate_remediation_plan(
        Report(findings={}), write_mapping(tmp_path, content), make_options(interactive=True)
    )
    assert plan.steps[0].params["organization"] == "alice"


def test_process_rule_without_action_fails(library):
    _, resolver = create_action_resolver()
    plan = RemediationPlan()
    with pytest.raises(MappingError, match="has no action, steps, or mapping reference"):
        process_mapping_rule(MappingRule(id="empty"), plan, {}, resolver, set(), make_options(), [])
    assert plan.steps == []


def test_process_rule_adds_step(library):
    _, resolver = create_action_resolver()
    plan = RemediationPlan()
    added = set()
    rule = MappingRule(id="mfa", action="enable-mfa", parameters={"organization": "{{.org}}"})
    process_mapping_rule(rule, plan, {"org": "test-org"}, resolver, added, make_options(), [])
    assert plan.steps[0].params == {"organization": "test-org"}
    assert added == {"enable-mfa"}


def test_evaluate_rule_match():
    options = make_options()
    assert evaluate_rule_match(MappingRule(id="any"), {}, options) is True
    rule = MappingRule(id="c", condition="security_policy == 'missing'")
    assert evaluate_rule_match(rule, {"security_policy": "missing"}, options) is True
    assert evaluate_rule_match(rule, {"security_policy": "present"}, options) is False
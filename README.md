# darnit

`darnit` is a library that reads a security findings report and matches it against a set of mapping rules. From that it builds a remediation plan. A plan is an ordered list of steps, and each step runs a named action with parameters. You can save a plan, load it back, validate it and execute it.

## Modules

| Module | Contents |
| --- | --- |
| `darnit.models` | `Report`, `RemediationStep`, `RemediationPlan`, `GenerateOptions`, `ExecutionOptions` |
| `darnit.condition` | `CELEvaluator`, `ExpressionError` |
| `darnit.inference` | `infer_parameters_from_repo` |
| `darnit.command_executor` | `CommandExecutor`, `CommandResult`, `render_template`, `TemplateError` |
| `darnit.resolver` | `ActionConfig`, `Action`, `OutputAction`, `Resolver`, `load_action_config`, `ResolverError` |
| `darnit.executor` | `StepExecutor`, `PlanExecutor`, `StepExecutionError` |
| `darnit.darnit` | `parse_report_file`, `load_plan_file`, `save_plan_to_file`, `validate_plan`, `detect_cycles`, `execute_plan`, `create_action_resolver`, `load_default_parameters`, `prompt_for_missing_parameters`, `CommandAction`, `PlanError` |
| `darnit.plan` | `MappingRule`, `MappingConfig`, `load_mapping_config`, `process_mapping_rule`, `evaluate_rule_match`, `generate_remediation_plan`, `MappingError` |

## How it fits together

1. **Report.** A report is a YAML or JSON file. Files ending in `.json` are read as JSON and every other file as YAML.
   - If the file has a top-level `findings` mapping, only its contents are used.
   - Otherwise the whole document is used.

   `parse_report_file` returns a `Report` whose `findings` dictionary gives flat access to these values.
2. **Mappings.** A mapping file is a YAML file with a `mappings` list. Each `MappingRule` has these parts:
   - an `id`;
   - an optional `condition`, which is an expression over the combined data;
   - exactly one of: an `action`, nested `steps`, or a `mapping_ref` pointing at another mapping file;
   - optionally `reason`, `labels`, `parameters`, `depends_on`, `depends_on_expr` and `once`.
3. **Actions.** An action is a YAML file named `<action>.yaml`. `load_action_config` reads one into an `ActionConfig`.
   - A `Resolver` searches a local actions directory and an `actions` directory inside a library path. The order between the two is configurable.
   - `resolve_action` creates an action through a factory.
   - `get_action_config` returns only the definition.
   - `list_available_actions` lists everything it finds. When two locations define the same name, the first location wins.
   - `filter_actions_by_labels` keeps actions whose labels match every selector key. A key matches if any of its values match, compared case-insensitively.
4. **Plan.** `generate_remediation_plan` merges the parameter sources, evaluates every rule and adds one step for each matching action rule. It then sorts the steps so that each step comes after the steps it depends on.
5. **Execution.** `execute_plan` runs each step through its action. Earlier steps can pass outputs to later ones. In a step's `output_refs`, a value of the form `step_id.output_name` fills a parameter from an earlier step's outputs.

## Conditions

Rule conditions and `depends_on_expr` use a small CEL-style expression language. Every top-level key of the data becomes a variable.

The language supports:

- **Literals:** strings, numbers, `true`, `false`, `null`, lists `[...]` and maps `{...}`.
- **Operators:** `== != < <= > >= in + - * / % && || !` and the `?:` conditional.
- **Access:** `.field` selection and `[...]` indexing.
- **Functions:** `has()`, `size()`, `string()`, `int()` and `double()`.
- **String methods:** `contains`, `startsWith`, `endsWith`, `matches` and `split`.
- **Macros on lists and maps:** `exists`, `all`, `exists_one`, `map` and `filter`.

```python
from darnit.condition import CELEvaluator

evaluator = CELEvaluator()
evaluator.evaluate_expression(
    "security_policy == 'missing' && mfa_status == 'disabled'",
    {"security_policy": "missing", "mfa_status": "disabled"},
)  # True

evaluator.evaluate_string_array_expression(
    "['base'] + (has_failed_control['CTRL-1'] ? ['contrib'] : [])",
    {"has_failed_control": {"CTRL-1": True}},
)  # ['base', 'contrib']
```

`ExpressionError` is raised in these cases:

- a syntax error;
- a reference to a name that is not in the data;
- a failure during evaluation;
- a result of the wrong type.

`evaluate_string_array_expression` accepts a single string and returns it as a one-element list.

## Generating and running a plan

```python
from darnit.darnit import parse_report_file, save_plan_to_file, load_plan_file, execute_plan
from darnit.models import GenerateOptions, ExecutionOptions
from darnit.plan import generate_remediation_plan

report = parse_report_file("report.json")

options = GenerateOptions(
    mappings_dir="mappings",
    extra_params={"project_name": "Example", "security_email": "security@example.com"},
    non_interactive=True,
)
plan = generate_remediation_plan(report, "mappings/main.yaml", options)
save_plan_to_file(plan, "plan.yaml")

plan = load_plan_file("plan.yaml")
execute_plan(plan, ExecutionOptions(dry_run=True))
```

### Where actions are looked up

`create_action_resolver` builds the resolver that both plan generation and `execute_plan` use. It searches two places, local first:

- `.darn/actions` under the working directory. For plan generation this is `GenerateOptions.repo_path`, or the current directory if that is empty.
- `.darn/library/actions` under `$DARN_HOME`, or under your home directory if `DARN_HOME` is not set.

### How rules become steps

- **Mapping references.** Relative `mapping_ref` paths are resolved against `mappings_dir`. A chain of references that leads back to a file already in the chain raises `MappingError`.
- **Steps pulled in by reference.** These steps get the parent rule's ID as a prefix (`parent-child`). They also inherit the parent's parameters.
- **`once`.** A rule with `once: true` is skipped if its action has already been added.

### Parameter templates

Parameter values may contain `{{.name}}` placeholders, which are filled from the combined data.

- A value that is nothing but one placeholder keeps the type of the referenced value. The exception is when the action's `schema` declares that parameter as a `string`.
- If a referenced value is missing, `MappingError` is raised ("missing values for some parameters").

### Validation

`save_plan_to_file` validates the plan with `validate_plan` before writing it. The plan is written as JSON for `.json` paths and as YAML otherwise.

`validate_plan` rejects:

- empty plans;
- empty or duplicate step IDs;
- steps without an action;
- unknown dependencies;
- dependency cycles, found with `detect_cycles`.

These problems are raised as `PlanError`.

### Execution

`PlanExecutor` stops at the first failing step, unless `ExecutionOptions.continue_on_error` is set. At the end it prints a summary.

In a dry run (`dry_run=True`), each step's parameters are printed instead of being run.

## Parameters

Parameters are merged in increasing order of priority:

1. Defaults from the `default_parameters` mapping of a params file, read by `load_default_parameters`. When no path is given, it uses the first of these that exists:
   - `./params.yaml`
   - `./params.json`
   - `./.darn/params.yaml`
   - `./.darn/params.json`
   - `~/.darn/params.yaml`
   - `~/.darn/params.json`
2. Values inferred from the repository by `infer_parameters_from_repo`. It runs `git` and reads `package.json` to fill in:
   - `project_repo`, the `origin` remote URL;
   - `organization`;
   - `repo_name`;
   - `project_name`, from `package.json`.
3. The report's findings.
4. `GenerateOptions.extra_params`.

Setting `skip_defaults` or `skip_repo_inference` leaves out the first two sources.

Unless `non_interactive` is set, `prompt_for_missing_parameters` asks on the terminal for every placeholder named in the top-level rules' parameters that still has no value.

The plan's `project_name` and `repository` come from the `project_name` and `project_repo` values. They default to "Unknown Project" and "Unknown Repository".

## Running commands

`CommandExecutor` runs a single command:

1. It renders `{{.name}}` placeholders in the command and its arguments.
2. It honours the `working_dir` and `environment` parameters.
3. It runs the command and returns a `CommandResult` holding the captured standard output.

It raises errors in these cases:

| Problem | Exception |
| --- | --- |
| A placeholder without a value | `TemplateError` |
| A command that cannot be started | `OSError` |
| A non-zero exit status | `subprocess.CalledProcessError` |

```python
from darnit.command_executor import CommandExecutor

executor = CommandExecutor("echo", ["Hello, {{.name}}!"])
executor.process_parameters({"name": "World"})
result = executor.execute()
result.output  # b"Hello, World!\n"
```

The actions created by `create_action_resolver` are `CommandAction`s, which work as follows:

- They run the `command` and `args` from the action definition, with the definition's `defaults` merged under the step parameters.
- They return `{"output": ..., "exit_status": ...}`, where `output` is the trimmed standard output.
- An action definition without a `command` cannot be created.

## What this package does not do

- It has no command-line program. Use it as a library.
- It only runs command actions. Actions that render a template into a file are not executed.
- It has no built-in library of actions, templates or mappings, and it does not fetch one. Action and mapping files must already exist in the directories described above.
- The expression language is a subset of CEL, not a complete implementation.
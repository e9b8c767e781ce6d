"""Execution of remediation plans step by step."""

from __future__ import annotations

import json
from typing import Any, Protocol

from darnit.models import ExecutionOptions, RemediationPlan, RemediationStep
from darnit.resolver import Action, ActionConfig

__all__ = ["StepExecutionError", "StepExecutor", "PlanExecutor"]


class StepExecutionError(RuntimeError):
    """Raised when a plan step cannot be prepared or fails while running."""


class _Resolver(Protocol):
    def resolve_action(self, name: str) -> Action: ...

    def get_action_config(self, name: str) -> ActionConfig: ...


def _indented_json(value: Any) -> str:
    text = json.dumps(value, indent=2, default=str)
    return text.replace("\n", "\n  ")


class StepExecutor:
    """Runs single steps and keeps the outputs they produce for later steps."""

    def __init__(self, resolver: _Resolver, options: ExecutionOptions):
        self.resolver = resolver
        self.options = options
        self.step_outputs: dict[str, dict[str, Any]] = {}

    def execute_step(self, step: RemediationStep) -> None:
        """Run one step, updating its status, error and outputs."""
        step.status = "running"
        if self.options.verbose_logging:
            print(f"Executing step: {step.id} (Action: {step.action_name})")
            print(f"Reason: {step.reason}")
        else:
            print(f"Executing step: {step.id}")

        self.process_output_references(step)

        if self.options.dry_run:
            self._dry_run(step)
            return

        try:
            action = self.resolver.resolve_action(step.action_name)
        except Exception as exc:  # noqa: BLE001 - any resolution failure fails the step
            step.status = "failure"
            step.error = f"error resolving action: {exc}"
            if self.options.verbose_logging:
                print(f"Error resolving action '{step.action_name}': {exc}")
            else:
                print(f"Error: {exc}")
            raise StepExecutionError(f"error resolving action '{step.action_name}': {exc}") from exc

        if step.params is None:
            step.params = {}
        step.params["verbose"] = self.options.verbose_logging
        self._execute_action(step, action)

    def process_output_references(self, step: RemediationStep) -> None:
        """Fill step parameters from outputs of earlier steps named as ``step_id.output_name``."""
        if not step.output_refs:
            return
        if step.params is None:
            step.params = {}

        for param_name, output_ref in step.output_refs.items():
            parts = output_ref.split(".")
            if len(parts) != 2:
                raise StepExecutionError(f"invalid output reference format: {output_ref}")
            source_id, output_name = parts

            source_outputs = self.step_outputs.get(source_id)
            if source_outputs is None:
                raise StepExecutionError(
                    f"referenced step {source_id} not found or has not completed successfully"
                )
            if output_name not in source_outputs:
                raise StepExecutionError(f"output {output_name} not found in step {source_id}")

            try:
                self.resolver.get_action_config(step.action_name)
            except Exception as exc:  # noqa: BLE001
                raise StepExecutionError(f"error getting action config: {exc}") from exc

            value = source_outputs[output_name]
            step.params[param_name] = value
            if self.options.verbose_logging:
                print(
                    f"  Setting parameter {param_name} to value from "
                    f"{source_id}.{output_name} (type: {type(value).__name__})"
                )

    def _dry_run(self, step: RemediationStep) -> None:
        print(f"  Would execute action '{step.action_name}' with parameters:")
        print(f"  {_indented_json(step.params)}")
        if step.outputs is not None:
            self.step_outputs[step.id] = step.outputs
        step.status = "success"

    def _execute_action(self, step: RemediationStep, action: Action) -> None:
        try:
            self.resolver.get_action_config(step.action_name)
        except Exception as exc:  # noqa: BLE001
            error = StepExecutionError(f"error getting action config: {exc}")
            self._record_failure(step, error)
            raise error from exc

        run_with_output = getattr(action, "execute_with_output", None)
        try:
            if callable(run_with_output):
                result = run_with_output(step.params)
                if result is not None:
                    self.step_outputs[step.id] = result
                    step.outputs = result
            else:
                action.execute(step.params)
        except Exception as exc:  # noqa: BLE001 - an action may fail in any way
            self._record_failure(step, exc)
            raise StepExecutionError(f"execution failed: {exc}") from exc

        if step.outputs is not None and not self.step_outputs.get(step.id):
            self.step_outputs[step.id] = step.outputs

        step.status = "success"
        if self.options.verbose_logging:
            print("Step completed successfully")
            outputs = self.step_outputs.get(step.id)
            if outputs:
                print(f"  Outputs: {_indented_json(outputs)}")

    def _record_failure(self, step: RemediationStep, error: Exception) -> None:
        step.status = "failure"
        step.error = f"execution failed: {error}"
        if self.options.verbose_logging:
            print(f"Error executing action '{step.action_name}': {error}")
        else:
            print(f"Error: {error}")


class PlanExecutor:
    """Runs every step of a plan in order."""

    def __init__(self, factory: Any, resolver: _Resolver, options: ExecutionOptions):
        self.factory = factory
        self.resolver = resolver
        self.options = options
        self.step_executor = StepExecutor(resolver, options)

    @property
    def step_outputs(self) -> dict[str, dict[str, Any]]:
        """Outputs collected from the steps run so far, keyed by step ID."""
        return self.step_executor.step_outputs

    def execute_plan(self, plan: RemediationPlan) -> None:
        """Run the plan; stop at the first failure unless told to continue."""
        succeeded = failed = 0
        total = len(plan.steps)
        for number, step in enumerate(plan.steps, 1):
            print(f"Executing step {number}/{total}: {step.id}")
            try:
                self.step_executor.execute_step(step)
            except StepExecutionError:
                failed += 1
                if not self.options.continue_on_error:
                    raise
            else:
                succeeded += 1

        print(
            f"\nExecution summary: {succeeded} successful, {failed} failed "
            f"(out of {total} total steps)"
        )
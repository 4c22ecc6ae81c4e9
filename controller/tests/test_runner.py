"""Tests for the local step runner."""

import pytest

from controller.src.models.step import SecretRef, StepConfig
from controller.src.services.runner import LocalStepRunner
from controller.src.services.secrets import EnvironmentSecretProvider, MissingSecretError

def make_runner(workspace, secrets=None):
    return LocalStepRunner(workspace, EnvironmentSecretProvider(environ=secrets or {}))

def test_runs_commands_in_order(tmp_path):
    step = StepConfig(name="build", commands=["echo hello", "echo world"])

    outcome = make_runner(tmp_path).run(step, {})

    assert outcome.succeeded
    assert outcome.logs == "hello\nworld\n"

def test_stops_at_first_failure(tmp_path):
    step = StepConfig(name="test", commands=["echo one", "exit 3", "echo never"])

    outcome = make_runner(tmp_path).run(step, {})

    assert outcome.exit_code == 3
    assert "one" in outcome.logs
    assert "never" not in outcome.logs

def test_runs_inside_workspace(tmp_path):
    step = StepConfig(name="touch", commands=["touch marker"])

    make_runner(tmp_path).run(step, {})

    assert (tmp_path / "marker").exists()

def test_captures_stderr(tmp_path):
    step = StepConfig(name="warn", commands=["echo oops >&2"])

    outcome = make_runner(tmp_path).run(step, {})

    assert outcome.logs == "oops\n"

def test_environment_and_secrets(tmp_path):
    step = StepConfig(name="env", commands=['echo "$MODE:$TOKEN:$CONVEYOR_STEP_NAME"'])
    runner = make_runner(tmp_path, secrets={"CONVEYOR_SECRET_API_TOKEN": "s3cret"})

    outcome = runner.run(step, {"MODE": "ci", "TOKEN": SecretRef(from_secret="api_token")})

    assert outcome.logs == "ci:s3cret:env\n"

def test_missing_secret_fails(tmp_path):
    step = StepConfig(name="env", commands=["true"])

    with pytest.raises(MissingSecretError):
        make_runner(tmp_path).run(step, {"TOKEN": SecretRef(from_secret="absent")})

def test_timeout(tmp_path):
    step = StepConfig(name="slow", commands=["exec sleep 5"], timeout=1)

    outcome = make_runner(tmp_path).run(step, {})

    assert outcome.exit_code == 124
    assert "timed out" in outcome.logs

def test_terminate_unknown_step_is_noop(tmp_path):
    make_runner(tmp_path).terminate("nothing-running")

def test_controller_environment_does_not_reach_steps(tmp_path, monkeypatch):
    monkeypatch.setenv("CONVEYOR_SECRET_AWS_SECRET_ACCESS_KEY", "topsecret")
    monkeypatch.setenv("DATABASE_URL", "postgresql://conveyor:hunter2@db/conveyor")
    step = StepConfig(
        name="env",
        commands=['echo "leak=$CONVEYOR_SECRET_AWS_SECRET_ACCESS_KEY"', 'echo "db=$DATABASE_URL"'],
    )

    outcome = make_runner(tmp_path).run(step, {})

    assert outcome.succeeded
    assert outcome.logs == "leak=\ndb=\n"

def test_declared_secret_still_resolves_with_minimal_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("CONVEYOR_SECRET_AWS_SECRET_ACCESS_KEY", "topsecret")
    step = StepConfig(name="deploy", commands=['echo "key=$AWS_SECRET_ACCESS_KEY"'])
    runner = make_runner(tmp_path, secrets={"CONVEYOR_SECRET_AWS_SECRET_ACCESS_KEY": "topsecret"})

    outcome = runner.run(step, {"AWS_SECRET_ACCESS_KEY": SecretRef(from_secret="aws_secret_access_key")})

    assert outcome.logs == "key=topsecret\n"

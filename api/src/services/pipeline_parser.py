"""
Pipeline YAML parser and validator.

A pipeline file holds one or more YAML documents. Documents with
`kind: pipeline` (or no kind) declare pipelines; an optional trailing
`kind: signature` document carries an HMAC over everything before it.
"""

import hashlib
import hmac
import re
import posixpath
import yaml
from typing import List, Dict, Any, Optional, Tuple

from api.src.models.event import EventKind

class PipelineConfigError(Exception):
    """Raised when pipeline configuration is invalid."""
    pass

RUN_STATUSES = ("success", "failure")
PULL_POLICIES = {
    "if-not-exists": "IfNotPresent",
    "always": "Always",
    "never": "Never",
}
DEFAULT_WORKSPACE = "/workspace"
DEFAULT_TIMEOUT = 600  # 10 min

_DOC_SEPARATOR = re.compile(r"^---[ \t]*$", re.MULTILINE)
_SHA256_HEX = re.compile(r"^[0-9a-fA-F]{64}$")

def parse_pipeline_config(yaml_content: str) -> Dict[str, Any]:
    """Parse a single pipeline YAML document from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def parse_pipeline_dict(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate pipeline configuration from dict."""
    return validate_config(config)

def split_documents(content: str) -> List[Tuple[int, str]]:
    """
    Split a multi-document YAML string.
    Returns (offset of the separator preceding the document, document text).
    """
    documents = []
    offset, start = 0, 0
    for match in _DOC_SEPARATOR.finditer(content):
        documents.append((offset, content[start:match.start()]))
        offset, start = match.start(), match.end()
    documents.append((offset, content[start:]))
    return [(offset, text) for offset, text in documents if text.strip()]

def sign_config(content: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of a pipeline file's signed content."""
    return hmac.new(secret.encode(), content.encode(), hashlib.sha256).hexdigest()

def parse_pipeline_documents(content: str, signing_secret: str = "") -> List[Dict[str, Any]]:
    """
    Parse every pipeline declared in a (possibly multi-document) file.
    When `signing_secret` is set, the file must end with a valid signature document.
    """
    if not content or not content.strip():
        raise PipelineConfigError("Empty pipeline configuration")

    pipelines = []
    signature: Optional[str] = None
    signed_content = content

    for offset, text in split_documents(content):
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise PipelineConfigError(f"Invalid YAML: {e}")

        if document is None:
            continue
        if not isinstance(document, dict):
            raise PipelineConfigError("Pipeline configuration must be a dictionary")

        kind = document.get("kind", "pipeline")
        if signature is not None:
            raise PipelineConfigError("Signature must be the last document")

        if kind == "signature":
            signature = document.get("hmac")
            if not isinstance(signature, str):
                raise PipelineConfigError("Signature document missing 'hmac'")
            signed_content = content[:offset]
        elif kind == "pipeline":
            pipelines.append(validate_config(document))
        else:
            raise PipelineConfigError(f"Unsupported document kind '{kind}'")

    if signing_secret:
        if signature is None:
            raise PipelineConfigError("Pipeline configuration is not signed")
        expected = sign_config(signed_content, signing_secret)
        if not hmac.compare_digest(expected, signature.lower()):
            raise PipelineConfigError("Pipeline configuration signature mismatch")

    if not pipelines:
        raise PipelineConfigError("No pipelines defined")

    names = [p["name"] for p in pipelines]
    for name in names:
        if names.count(name) > 1:
            raise PipelineConfigError(f"Duplicate pipeline name '{name}'")

    return pipelines

def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    # Validate steps
    if "steps" not in config:
        raise PipelineConfigError("Pipeline must have 'steps' defined")

    steps = config["steps"]
    if not isinstance(steps, list):
        raise PipelineConfigError("Pipeline 'steps' must be a list")

    if len(steps) == 0:
        raise PipelineConfigError("Pipeline must have at least one step")

    validated_steps = []
    for i, step in enumerate(steps):
        validated_step = validate_step(step, i)
        validated_steps.append(validated_step)

    return {
        "name": name,
        "workspace": validate_workspace(config.get("workspace")),
        "environment": validate_environment(
            config.get("environment", config.get("env")), "Pipeline", allow_secrets=False
        ),
        "integrity": validate_integrity(config.get("integrity")),
        "steps": validated_steps,
        "trigger": validate_trigger(config.get("trigger")),
    }

def validate_step(step: Dict[str, Any], index: int) -> Dict[str, Any]:
    """Validate a single pipeline step."""
    if not isinstance(step, dict):
        raise PipelineConfigError(f"Step {index} must be a dictionary")

    if "name" not in step:
        raise PipelineConfigError(f"Step {index} missing 'name'")

    if not isinstance(step["name"], str) or not step["name"]:
        raise PipelineConfigError(f"Step {index} 'name' must be a string")

    cache = validate_cache(step.get("cache"), index)

    # Cache steps run inside the controller and need no image or commands
    if cache is None:
        if "image" not in step:
            raise PipelineConfigError(f"Step {index} missing 'image'")

        if "commands" not in step:
            raise PipelineConfigError(f"Step {index} missing 'commands'")

    image = step.get("image", "")
    if not isinstance(image, str):
        raise PipelineConfigError(f"Step {index} 'image' must be a string")

    commands = step.get("commands", [])
    if not isinstance(commands, list):
        raise PipelineConfigError(f"Step {index} 'commands' must be a list")

    for j, cmd in enumerate(commands):
        if not isinstance(cmd, str):
            raise PipelineConfigError(f"Step {index} command {j} must be a string")

    depends_on = step.get("depends_on", [])
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise PipelineConfigError(f"Step {index} 'depends_on' must be a list of step names")

    timeout = step.get("timeout", DEFAULT_TIMEOUT)
    if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
        raise PipelineConfigError(f"Step {index} 'timeout' must be a positive integer")

    pull = step.get("pull", "if-not-exists")
    if pull not in PULL_POLICIES:
        raise PipelineConfigError(
            f"Step {index} 'pull' must be one of {', '.join(PULL_POLICIES)}"
        )

    return {
        "name": step["name"],
        "image": image,
        "commands": commands,
        "environment": validate_environment(
            step.get("environment", step.get("env")), f"Step {index}"
        ),
        "depends_on": depends_on,
        "when": validate_when(step.get("when"), index),
        "cache": cache,
        "timeout": timeout,
        "pull": PULL_POLICIES[pull],
    }

def validate_environment(
    env: Optional[Dict[str, Any]],
    owner: str,
    allow_secrets: bool = True,
) -> Dict[str, Any]:
    """Normalize env values to strings, keeping `from_secret` references."""
    if env is None:
        return {}
    if not isinstance(env, dict):
        raise PipelineConfigError(f"{owner} 'environment' must be a dictionary")

    validated = {}
    for key, value in env.items():
        if not isinstance(key, str):
            raise PipelineConfigError(f"{owner} environment keys must be strings")
        if isinstance(value, dict):
            if not allow_secrets:
                raise PipelineConfigError(f"{owner} environment '{key}' cannot reference a secret")
            if set(value) != {"from_secret"} or not isinstance(value["from_secret"], str):
                raise PipelineConfigError(
                    f"{owner} environment '{key}' must be a string or {{from_secret: name}}"
                )
            validated[key] = {"from_secret": value["from_secret"]}
        elif isinstance(value, bool):
            validated[key] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            validated[key] = str(value)
        else:
            raise PipelineConfigError(f"{owner} environment '{key}' has an unsupported value")
    return validated

def validate_when(when: Optional[Dict[str, Any]], index: int) -> Dict[str, Any]:
    """Validate a step's run condition. Defaults to running on success only."""
    if when is None:
        return {"status": ["success"]}
    if not isinstance(when, dict):
        raise PipelineConfigError(f"Step {index} 'when' must be a dictionary")

    status = when.get("status", ["success"])
    if isinstance(status, str):
        status = [status]
    if not isinstance(status, list) or not status:
        raise PipelineConfigError(f"Step {index} 'when.status' must be a non-empty list")
    for value in status:
        if value not in RUN_STATUSES:
            raise PipelineConfigError(
                f"Step {index} 'when.status' values must be 'success' or 'failure'"
            )
    return {"status": list(dict.fromkeys(status))}

def _validate_relative_path(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value:
        raise PipelineConfigError(f"{what} must be a non-empty string")
    normalized = posixpath.normpath(value)
    if posixpath.isabs(normalized) or normalized == ".." or normalized.startswith("../"):
        raise PipelineConfigError(f"{what} must stay inside the workspace")
    return normalized

def validate_cache(cache: Optional[Dict[str, Any]], index: int) -> Optional[Dict[str, Any]]:
    if cache is None:
        return None
    if not isinstance(cache, dict):
        raise PipelineConfigError(f"Step {index} 'cache' must be a dictionary")

    restore = cache.get("restore", False)
    rebuild = cache.get("rebuild", False)
    if not isinstance(restore, bool) or not isinstance(rebuild, bool) or restore == rebuild:
        raise PipelineConfigError(
            f"Step {index} cache must set exactly one of 'restore' or 'rebuild'"
        )

    namespace = cache.get("namespace")
    if not isinstance(namespace, str) or not namespace.strip("/"):
        raise PipelineConfigError(f"Step {index} cache missing 'namespace'")

    lockfile = _validate_relative_path(cache.get("lockfile"), f"Step {index} cache 'lockfile'")

    mount = cache.get("mount")
    if not isinstance(mount, list) or not mount:
        raise PipelineConfigError(f"Step {index} cache 'mount' must be a non-empty list")
    mount = [_validate_relative_path(m, f"Step {index} cache mount") for m in mount]

    override = cache.get("override", False)
    if not isinstance(override, bool):
        raise PipelineConfigError(f"Step {index} cache 'override' must be a boolean")

    return {
        "restore": restore,
        "rebuild": rebuild,
        "namespace": namespace,
        "lockfile": lockfile,
        "mount": mount,
        "override": override,
    }

def validate_integrity(integrity: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if integrity is None:
        return None
    if not isinstance(integrity, dict):
        raise PipelineConfigError("Pipeline 'integrity' must be a dictionary")

    files = integrity.get("files", [])
    if not isinstance(files, list):
        raise PipelineConfigError("Integrity 'files' must be a list")

    records = []
    for i, record in enumerate(files):
        if not isinstance(record, dict) or "path" not in record or "sha256" not in record:
            raise PipelineConfigError(f"Integrity file {i} needs 'path' and 'sha256'")
        path = _validate_relative_path(record["path"], f"Integrity file {i} 'path'")
        digest = record["sha256"]
        if not isinstance(digest, str) or not _SHA256_HEX.match(digest):
            raise PipelineConfigError(f"Integrity file {i} 'sha256' must be a hex SHA-256 digest")
        records.append({"path": path, "sha256": digest.lower()})

    validated = {"files": records, "pre_run": None}

    image = integrity.get("image")
    if image is not None:
        if not isinstance(image, str):
            raise PipelineConfigError("Integrity 'image' must be a string")
        validated["image"] = image

    pre_run = integrity.get("pre_run")
    if pre_run is not None:
        if not isinstance(pre_run, dict) or "script" not in pre_run:
            raise PipelineConfigError("Integrity 'pre_run' needs a 'script'")
        script = _validate_relative_path(pre_run["script"], "Integrity 'pre_run.script'")
        args = pre_run.get("args", [])
        if not isinstance(args, list):
            raise PipelineConfigError("Integrity 'pre_run.args' must be a list")
        enabled = pre_run.get("enabled", True)
        if not isinstance(enabled, bool):
            raise PipelineConfigError("Integrity 'pre_run.enabled' must be a boolean")
        validated["pre_run"] = {
            "script": script,
            "args": [str(a).lower() if isinstance(a, bool) else str(a) for a in args],
            "enabled": enabled,
        }

    return validated

def _string_list(value: Any, what: str) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PipelineConfigError(f"{what} must be a string or a list of strings")
    return value

def validate_trigger(trigger: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate a pipeline trigger. A missing trigger accepts every event."""
    if trigger is None:
        trigger = {}
    if not isinstance(trigger, dict):
        raise PipelineConfigError("Pipeline 'trigger' must be a dictionary")

    events = _string_list(trigger.get("event"), "Trigger 'event'")
    if events is None:
        events = [kind.value for kind in EventKind]
    valid_kinds = {kind.value for kind in EventKind}
    for event in events:
        if event not in valid_kinds:
            raise PipelineConfigError(
                f"Trigger event '{event}' must be one of {', '.join(sorted(valid_kinds))}"
            )

    return {
        "event": events,
        "branch": _string_list(trigger.get("branch"), "Trigger 'branch'"),
        "cron": _string_list(trigger.get("cron"), "Trigger 'cron'"),
    }

def validate_workspace(workspace: Any) -> str:
    if workspace is None:
        return DEFAULT_WORKSPACE
    if isinstance(workspace, dict):
        workspace = workspace.get("path")
    if not isinstance(workspace, str) or not posixpath.isabs(workspace):
        raise PipelineConfigError("Pipeline 'workspace' must be an absolute path")
    return workspace

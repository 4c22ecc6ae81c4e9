from api.src.services.github import (
    verify_signature,
    clone_repository,
    fetch_pipeline_config,
    parse_webhook_payload,
    parse_pull_request_payload,
    build_event,
    cleanup_repo,
)
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    parse_pipeline_documents,
    PipelineConfigError,
)
from api.src.services.trigger import trigger_matches, select_pipelines
from api.src.services.queue import (
    enqueue_pipeline_run,
    request_cancel,
    get_run_status,
    get_queue_length,
)
from api.src.services.runs import process_event

__all__ = [
    "verify_signature",
    "clone_repository",
    "fetch_pipeline_config",
    "parse_webhook_payload",
    "parse_pull_request_payload",
    "build_event",
    "cleanup_repo",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "parse_pipeline_documents",
    "PipelineConfigError",
    "trigger_matches",
    "select_pipelines",
    "enqueue_pipeline_run",
    "request_cancel",
    "get_run_status",
    "get_queue_length",
    "process_event",
]

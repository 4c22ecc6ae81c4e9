"""
Decide which pipelines an incoming event should start.
"""

import fnmatch
from typing import List, Dict, Any

from api.src.models.event import Event, EventKind, Trigger

def _matches_any(value: str, patterns: List[str]) -> bool:
    return any(fnmatch.fnmatchcase(value, pattern) for pattern in patterns)

def trigger_matches(trigger: Trigger, event: Event) -> bool:
    """
    An event matches when its kind is listed. Push and pull request events
    must also match a declared branch pattern, cron events a declared cron
    pattern. Undeclared lists accept anything.
    """
    if event.kind not in trigger.event:
        return False

    if trigger.branch is not None and event.kind != EventKind.CRON:
        if event.branch is None or not _matches_any(event.branch, trigger.branch):
            return False

    if trigger.cron is not None and event.kind == EventKind.CRON:
        if event.cron is None or not _matches_any(event.cron, trigger.cron):
            return False

    return True

def select_pipelines(pipelines: List[Dict[str, Any]], event: Event) -> List[Dict[str, Any]]:
    """Return the validated pipeline configs whose trigger accepts the event."""
    selected = []
    for pipeline in pipelines:
        trigger = Trigger(**pipeline.get("trigger", {}))
        if trigger_matches(trigger, event):
            selected.append(pipeline)
    return selected

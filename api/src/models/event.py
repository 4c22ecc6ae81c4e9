from pydantic import BaseModel
from typing import Optional, List
from enum import Enum

class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    CRON = "cron"

class Event(BaseModel):
    """An incoming trigger. For pull requests `branch` is the target branch."""
    kind: EventKind
    branch: Optional[str] = None
    cron: Optional[str] = None

class Trigger(BaseModel):
    event: List[EventKind] = list(EventKind)
    branch: Optional[List[str]] = None
    cron: Optional[List[str]] = None

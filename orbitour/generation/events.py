from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Started:
    job_id: Optional[str] = None
    worker_name: Optional[str] = None


@dataclass(frozen=True)
class Progress:
    percent: float
    worker_name: Optional[str] = None


@dataclass(frozen=True)
class Completed:
    video_url: str
    sdk_project_id: Optional[str] = None
    sdk_job_id: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    reason: str
    code: Optional[Union[int, str]] = None


TransportEvent = Union[Started, Progress, Completed, Failed]


def is_terminal(event: TransportEvent) -> bool:
    return isinstance(event, (Completed, Failed))

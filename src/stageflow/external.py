# external.py
from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple
from urllib.parse import quote, urljoin

from .artifacts import ArtifactKey, ArtifactStore, StoredArtifact
from .dag import PollNode
from .errors import ExternalDependencyTimeout, InfrastructureError
from .model import JobState

log = logging.getLogger(__name__)


class APIError(InfrastructureError):
    """Raised when a request to another pipeline service fails."""


@dataclass(frozen=True)
class ExternalJobStatus:
    """
    Answer to "what happened to <job> on <project>@<ref>?".

    status is a job state value ("succeeded", "failed", ...) or "unknown"
    when no published run has that job.
    """
    status: str = "unknown"
    artifacts_available: bool = False
    artifact_keys: Tuple[ArtifactKey, ...] = ()
    pipeline_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobState.SUCCEEDED.value

    def satisfies(self, require_artifacts: bool) -> bool:
        return self.succeeded and (self.artifacts_available or not require_artifacts)

    @classmethod
    def from_dict(cls, data: dict) -> "ExternalJobStatus":
        return cls(
            status=str(data.get("status", "unknown")),
            artifacts_available=bool(data.get("artifacts_available", False)),
            artifact_keys=tuple(ArtifactKey(**k) for k in data.get("artifact_keys") or ()),
            pipeline_id=data.get("pipeline_id"),
        )

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "artifacts_available": self.artifacts_available,
            "artifact_keys": [k.as_dict() for k in self.artifact_keys],
            "pipeline_id": self.pipeline_id,
        }


class PipelineClient(Protocol):
    def poll_external_job(self, project: str, ref: str, job: str) -> ExternalJobStatus:
        ...

    def latest_artifact(self, project: str, ref: str, job: str) -> Optional[StoredArtifact]:
        ...


# ----------------------------------------------------------------------
# In-process index
# ----------------------------------------------------------------------

class LocalPipelineIndex:
    """
    Cross-pipeline view for engines sharing one process.

    Finished runs are published here as reports (PipelineRun.to_report());
    the newest report that contains a job decides its status.
    """

    def __init__(self, store: Optional[ArtifactStore] = None):
        self.store = store
        self._lock = threading.Lock()
        self._seq = 0
        self._jobs: Dict[Tuple[str, str, str], Tuple[int, str, dict]] = {}

    def publish(self, report: dict) -> None:
        with self._lock:
            self._seq += 1
            for job in report.get("jobs", ()):
                key = (report.get("project", ""), report["ref"], job["name"])
                self._jobs[key] = (self._seq, str(report.get("id")), job)
        log.debug("published pipeline %s (%s@%s)", report.get("id"), report.get("project"), report["ref"])

    def poll_external_job(self, project: str, ref: str, job: str) -> ExternalJobStatus:
        with self._lock:
            entry = self._jobs.get((project, ref, job))
        if entry is None:
            return ExternalJobStatus()
        _, pipeline_id, data = entry

        keys: Tuple[ArtifactKey, ...] = ()
        if data.get("artifact"):
            keys = (ArtifactKey(**data["artifact"]),)
        if self.store is not None:
            available = self.store.latest(project, ref, job) is not None
        else:
            available = bool(keys)
        return ExternalJobStatus(
            status=data["state"],
            artifacts_available=available,
            artifact_keys=keys,
            pipeline_id=pipeline_id,
        )

    def latest_artifact(self, project: str, ref: str, job: str) -> Optional[StoredArtifact]:
        if self.store is None:
            return None
        return self.store.latest(project, ref, job)


# ----------------------------------------------------------------------
# HTTP client
# ----------------------------------------------------------------------

class HttpPipelineClient:
    """
    Client for the cloud service (stageflow.cloud).

    Artifact bytes never travel over this API; when a shared artifact store
    is configured, latest_artifact() resolves from it.
    """

    def __init__(self, base_url: str, *, store: Optional[ArtifactStore] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.timeout = timeout

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> Optional[dict]:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        body = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(
            url, data=body, headers={"Content-Type": "application/json"}, method=method
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                raw = response.read().decode("utf-8")
                return json.loads(raw) if raw else {}
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}") from e
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}") from e
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}") from e

    def publish(self, report: dict) -> dict:
        return self._request("POST", "/pipelines", report) or {}

    def poll_external_job(self, project: str, ref: str, job: str) -> ExternalJobStatus:
        path = "/projects/{}/refs/{}/jobs/{}".format(
            quote(project, safe=""), quote(ref, safe=""), quote(job, safe="")
        )
        data = self._request("GET", path)
        if data is None:
            return ExternalJobStatus()
        return ExternalJobStatus.from_dict(data)

    def latest_artifact(self, project: str, ref: str, job: str) -> Optional[StoredArtifact]:
        if self.store is None:
            return None
        return self.store.latest(project, ref, job)


# ----------------------------------------------------------------------
# Polling
# ----------------------------------------------------------------------

def check_external(client: PipelineClient, node: PollNode) -> Optional[ExternalJobStatus]:
    """One poll. Returns the satisfying status, or None when not satisfied yet."""
    try:
        status = client.poll_external_job(node.project, node.ref, node.job)
    except APIError as e:
        log.warning("poll %s failed: %s", node.id, e)
        return None
    if status.satisfies(node.artifacts):
        log.info("external dependency %s satisfied (pipeline %s)", node.id, status.pipeline_id)
        return status
    log.debug("external dependency %s not satisfied yet (status=%s)", node.id, status.status)
    return None


def wait_for_external(
    client: PipelineClient,
    node: PollNode,
    *,
    interval: float,
    timeout: float,
    cancel_event: threading.Event,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[ExternalJobStatus]:
    """
    Poll until the external job succeeded (with artifacts, when required).

    Returns the satisfying status, or None if cancel_event was set first.
    Raises ExternalDependencyTimeout once `timeout` seconds have passed.
    Errors talking to the other side count as "not yet".
    """
    started = clock()
    while True:
        status = check_external(client, node)
        if status is not None:
            return status

        waited = clock() - started
        if waited >= timeout:
            log.warning("external dependency %s timed out after %.1fs", node.id, waited)
            raise ExternalDependencyTimeout(project=node.project, ref=node.ref, job=node.job, waited_s=waited)
        if cancel_event.wait(min(interval, timeout - waited)):
            return None

"""
Client for the external profiling service (NimbleDroid-style REST API).

upload() hands the APK over and gets back a job URL, wait_for_profile() polls
that URL until the profile is done or the deadline passes, and
get_profile_result() reads the per-scenario timings.
"""

from __future__ import annotations

import time
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from github import _ca_bundle

log = logging.getLogger("profiler")

PROFILED = "Profiled"
FAILED = "Failed"
TERMINAL_STATUSES = (PROFILED, FAILED)


class ProfilerError(Exception):
    pass


class UploadError(ProfilerError):
    pass


class PollTimeout(ProfilerError):
    pass


class FetchError(ProfilerError):
    pass


@dataclass(frozen=True)
class ProfileJob:
    job_url: str


@dataclass(frozen=True)
class ScenarioOutcome:
    name: str
    status: str
    time_ms: int


class ProfilerClient:
    def __init__(
        self,
        token: str,
        base_url: str = "https://nimbledroid.com",
        timeout: Optional[int] = None,
        poll_interval_s: float = 30,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval_s = poll_interval_s
        self._sleep = sleep
        self._clock = clock
        self.session = requests.Session()
        self.session.verify = _ca_bundle()
        # API key goes in as the basic-auth user name, empty password
        self.session.auth = (token, "")
        self.session.headers.update({"User-Agent": "pr-profile-bot"})

    def upload(self, path: Path) -> ProfileJob:
        url = f"{self.base_url}/api/v2/apks"
        try:
            with open(path, "rb") as fh:
                r = self.session.post(url, files={"apk": (Path(path).name, fh)}, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except OSError as e:
            # requests errors are OSErrors too, so this covers the file and the wire
            raise UploadError(f"upload of {path} failed: {e}") from e
        except ValueError as e:
            raise UploadError(f"upload response was not JSON: {e}") from e

        job_url = data.get("profile_status_url") if isinstance(data, dict) else None
        if not isinstance(job_url, str) or not job_url:
            raise UploadError(f"upload response has no profile_status_url: {str(data)[:400]}")
        log.info("uploaded %s -> %s", path, job_url)
        return ProfileJob(job_url=job_url)

    def wait_for_profile(self, job: ProfileJob, timeout_s: float = 1200) -> None:
        """
        Block until the job stops running; PollTimeout after `timeout_s`.
        A job that ended in FAILED also returns, and get_profile_result reports it.
        """
        deadline = self._clock() + timeout_s
        while True:
            try:
                status = self._job_status(job)
            except (requests.RequestException, ValueError) as e:
                log.warning("poll of %s failed, will retry: %s", job.job_url, e)
                status = None
            if status in TERMINAL_STATUSES:
                return
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise PollTimeout(f"{job.job_url} not profiled after {timeout_s}s (last status={status!r})")
            self._sleep(min(self.poll_interval_s, remaining))

    def get_profile_result(self, job: ProfileJob) -> List[ScenarioOutcome]:
        try:
            data = self._get_job(job)
        except (requests.RequestException, ValueError) as e:
            raise FetchError(f"GET {job.job_url} failed: {e}") from e

        if isinstance(data, dict) and data.get("status") == FAILED:
            raise FetchError(f"{job.job_url} failed on the profiling side: {str(data)[:400]}")

        profiles = data.get("profiles") if isinstance(data, dict) else None
        if not isinstance(profiles, list):
            raise FetchError(f"{job.job_url} has no profiles: {str(data)[:400]}")
        return [_scenario_from_json(p, job) for p in profiles]

    def _get_job(self, job: ProfileJob) -> Any:
        r = self.session.get(job.job_url, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def _job_status(self, job: ProfileJob) -> Optional[str]:
        data = self._get_job(job)
        return data.get("status") if isinstance(data, dict) else None


def _scenario_from_json(p: Dict[str, Any], job: ProfileJob) -> ScenarioOutcome:
    try:
        return ScenarioOutcome(
            name=str(p["scenario_name"]),
            status=str(p["status"]),
            time_ms=int(p["time_in_ms"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise FetchError(f"bad scenario in {job.job_url}: {p!r}") from e

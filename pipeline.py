"""
One profiling run, start to finish:

  extract trigger -> authorize -> build in a throwaway dir -> upload APK ->
  wait for the profile -> fetch results -> comment on the PR

Extraction and authorization failures end the run quietly (operator log only).
Anything that goes wrong after that still produces a comment, just a less
useful one.
"""

import uuid
import logging
from contextlib import ExitStack
from enum import Enum
from typing import Any, Dict, List, Optional

from builders.docker_build import (
    BuildArtifact,
    WorkspaceError,
    ephemeral_workspace,
    expected_artifact,
    run_build,
)
from config import ServerConfig
from github import GitHubClient, PublishError
from profiler import FetchError, PollTimeout, ProfilerClient, UploadError
from report import (
    FETCH_FAILED_MESSAGE,
    TIMEOUT_MESSAGE,
    UPLOAD_FAILED_MESSAGE,
    format_profile_table,
)
from trigger import PullRequestTrigger, TriggerError, extract_trigger, is_authorized

log = logging.getLogger("pipeline")


class RunState(str, Enum):
    RECEIVED = "received"
    EXTRACTED = "extracted"
    AUTHORIZED = "authorized"
    BUILT = "built"
    UPLOADED = "uploaded"
    POLLED = "polled"
    REPORTED = "reported"
    DONE = "done"
    ABORTED = "aborted"


_ORDER = list(RunState)
_ABORTABLE_FROM = {RunState.RECEIVED, RunState.EXTRACTED}


class RunTracker:
    """Forward-only state for one run. ABORTED and DONE are terminal."""

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or uuid.uuid4().hex[:8]
        self.state = RunState.RECEIVED
        self.history: List[RunState] = [RunState.RECEIVED]

    def advance(self, new: RunState) -> RunState:
        if self.state in (RunState.DONE, RunState.ABORTED):
            raise RuntimeError(f"run {self.run_id} already finished ({self.state.value})")
        if new is RunState.ABORTED:
            if self.state not in _ABORTABLE_FROM:
                raise RuntimeError(f"run {self.run_id} cannot abort from {self.state.value}")
        elif _ORDER.index(new) <= _ORDER.index(self.state):
            raise RuntimeError(f"run {self.run_id} cannot go {self.state.value} -> {new.value}")
        log.info("run=%s %s -> %s", self.run_id, self.state.value, new.value)
        self.state = new
        self.history.append(new)
        return new


def profile_artifact(
    profiler: ProfilerClient,
    artifact: Optional[BuildArtifact],
    timeout_s: float,
    run: RunTracker,
) -> str:
    """Upload, wait, fetch. Returns the report text for whichever step got furthest."""
    if artifact is None:
        log.error("run=%s no artifact to upload", run.run_id)
        return UPLOAD_FAILED_MESSAGE

    try:
        job = profiler.upload(artifact.path)
    except UploadError as e:
        log.error("run=%s failed to upload the artifact: %s", run.run_id, e)
        return UPLOAD_FAILED_MESSAGE
    run.advance(RunState.UPLOADED)

    log.info("run=%s waiting up to %ss for %s", run.run_id, timeout_s, job.job_url)
    try:
        profiler.wait_for_profile(job, timeout_s)
    except PollTimeout as e:
        log.error("run=%s %s", run.run_id, e)
        return TIMEOUT_MESSAGE
    run.advance(RunState.POLLED)

    try:
        outcomes = profiler.get_profile_result(job)
    except FetchError as e:
        log.error("run=%s failed to get the profile results: %s", run.run_id, e)
        return FETCH_FAILED_MESSAGE
    log.info("run=%s profile has %d scenarios", run.run_id, len(outcomes))
    return format_profile_table(outcomes)


def publish_report(github: GitHubClient, trigger: PullRequestTrigger, report: str, run: RunTracker) -> None:
    try:
        resp = github.post_issue_comment(trigger.report_url, report)
        log.info("run=%s posted a comment: %s", run.run_id, resp.get("html_url") or trigger.report_url)
    except PublishError as e:
        log.error("run=%s failed to post a comment: %s", run.run_id, e)


def _build_and_profile(trigger: PullRequestTrigger, config: ServerConfig, run: RunTracker) -> str:
    profiler = ProfilerClient(
        config.profiling_api_token,
        base_url=config.profiler_api,
        timeout=config.http_timeout_s,
        poll_interval_s=config.profile_poll_interval_s,
    )

    # The workspace must outlive the upload, so profiling happens inside it.
    with ExitStack() as stack:
        try:
            workspace = stack.enter_context(ephemeral_workspace())
        except WorkspaceError as e:
            log.error("run=%s %s; skipping build", run.run_id, e)
            return profile_artifact(profiler, None, config.profile_timeout_s, run)

        outcome = run_build(
            trigger.clone_url,
            trigger.head_commit,
            workspace,
            image=config.build_image,
            script=config.build_script,
            target=config.build_target,
            output_glob=config.build_output_glob,
            docker_bin=config.docker_bin,
        )
        if outcome.ok:
            log.info("run=%s build succeeded", run.run_id)
        else:
            # Profiling is still attempted against the expected path.
            log.error("run=%s failed to build: %s", run.run_id, outcome)
        run.advance(RunState.BUILT)

        artifact = expected_artifact(workspace, config.artifact_relpath)
        return profile_artifact(profiler, artifact, config.profile_timeout_s, run)


def run_profile_pipeline(event: Dict[str, Any], config: ServerConfig, run: Optional[RunTracker] = None) -> RunState:
    run = run or RunTracker()
    log.info("run=%s begin", run.run_id)

    github = GitHubClient(config.source_api_token, timeout=config.http_timeout_s)

    try:
        trigger = extract_trigger(event, github)
    except TriggerError as e:
        log.error("run=%s could not extract the trigger from the notification: %s", run.run_id, e)
        return run.advance(RunState.ABORTED)
    run.advance(RunState.EXTRACTED)
    log.info("run=%s clone_url=%s head=%s comments=%s commenter=%s",
             run.run_id, trigger.clone_url, trigger.head_commit, trigger.report_url, trigger.commenter_id)

    if not is_authorized(trigger, config):
        return run.advance(RunState.ABORTED)
    run.advance(RunState.AUTHORIZED)

    report = UPLOAD_FAILED_MESSAGE
    try:
        report = _build_and_profile(trigger, config, run)
    except Exception as e:
        log.exception("run=%s pipeline error: %s", run.run_id, e)

    run.advance(RunState.REPORTED)
    publish_report(github, trigger, report, run)
    return run.advance(RunState.DONE)

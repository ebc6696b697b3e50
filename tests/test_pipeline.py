import json

import pytest
import requests

import pipeline
from builders import docker_build
from builders.docker_build import BuildOutcome, WorkspaceError
from config import ServerConfig
from github import PublishError
from pipeline import RunState, RunTracker, run_profile_pipeline
from profiler import FetchError, PollTimeout, ProfileJob, ScenarioOutcome, UploadError
from report import FETCH_FAILED_MESSAGE, TIMEOUT_MESSAGE, UPLOAD_FAILED_MESSAGE

EVENT = {
    "issue": {"pull_request": {"url": "U"}, "comments_url": "C"},
    "comment": {"body": "profile", "user": {"login": "Alice"}},
}
PULL = {"head": {"sha": "abc123", "repo": {"clone_url": "https://x/y.git"}}}
CONFIG = ServerConfig(
    source_api_token="gh-tok",
    profiling_api_token="nd-tok",
    allowed_commenters=frozenset({"alice"}),
)


class FakeGitHub:
    def __init__(self, pull=PULL, publish_exc=None):
        self.pull = pull
        self.publish_exc = publish_exc
        self.gets = []
        self.comments = []

    def get_pull_request(self, url):
        self.gets.append(url)
        if isinstance(self.pull, Exception):
            raise self.pull
        return json.dumps(self.pull)

    def post_issue_comment(self, url, body):
        self.comments.append((url, body))
        if self.publish_exc:
            raise self.publish_exc
        return {"html_url": "https://github.example/comment/1"}


class FakeProfiler:
    def __init__(self, upload=None, wait=None, fetch=None):
        self._upload = upload
        self._wait = wait
        self._fetch = fetch
        self.calls = []

    def upload(self, path):
        self.calls.append(("upload", path))
        if isinstance(self._upload, Exception):
            raise self._upload
        return ProfileJob("https://profiler.example/job/1")

    def wait_for_profile(self, job, timeout_s=1200):
        self.calls.append(("wait", job.job_url, timeout_s))
        if isinstance(self._wait, Exception):
            raise self._wait

    def get_profile_result(self, job):
        self.calls.append(("fetch", job.job_url))
        if isinstance(self._fetch, Exception):
            raise self._fetch
        return self._fetch if self._fetch is not None else []

    def names(self):
        return [c[0] for c in self.calls]


@pytest.fixture
def fakes(monkeypatch):
    """Wire fake GitHub / profiler / build into the pipeline module."""
    state = {"github": FakeGitHub(), "profiler": FakeProfiler(), "builds": [], "build_code": 0}

    monkeypatch.setattr(pipeline, "GitHubClient", lambda token, timeout=None: state["github"])
    monkeypatch.setattr(pipeline, "ProfilerClient", lambda token, **kw: state["profiler"])

    def fake_build(clone_url, head_commit, workspace, **kw):
        state["builds"].append((clone_url, head_commit, workspace, kw))
        return BuildOutcome(kind="exited", code=state["build_code"])

    monkeypatch.setattr(pipeline, "run_build", fake_build)
    return state


def test_example_run_posts_table(fakes):
    fakes["profiler"] = FakeProfiler(fetch=[ScenarioOutcome("cold_start", "OK", 412)])

    assert run_profile_pipeline(EVENT, CONFIG) is RunState.DONE

    gh = fakes["github"]
    assert gh.gets == ["U"]
    assert len(gh.comments) == 1
    url, body = gh.comments[0]
    assert url == "C"
    assert "cold_start | OK | 412" in body.split("\n")

    clone_url, head, workspace, kw = fakes["builds"][0]
    assert (clone_url, head) == ("https://x/y.git", "abc123")
    assert kw["target"] == "assembleGeckoNightlyFenixNightly"
    assert fakes["profiler"].calls[0] == ("upload", workspace / CONFIG.artifact_relpath)
    # workspace is gone once the run is over
    assert not workspace.exists()


def test_success_report_has_n_plus_two_lines_in_order(fakes):
    outcomes = [ScenarioOutcome(f"s{i}", "OK", 100 - i) for i in range(5)]
    fakes["profiler"] = FakeProfiler(fetch=outcomes)

    tracker = RunTracker("t1")
    run_profile_pipeline(EVENT, CONFIG, tracker)

    lines = fakes["github"].comments[0][1].split("\n")
    assert len(lines) == 7
    assert lines[2:] == [f"s{i} | OK | {100 - i}" for i in range(5)]
    assert tracker.history == [
        RunState.RECEIVED, RunState.EXTRACTED, RunState.AUTHORIZED, RunState.BUILT,
        RunState.UPLOADED, RunState.POLLED, RunState.REPORTED, RunState.DONE,
    ]


def test_timeout_skips_fetch(fakes):
    fakes["profiler"] = FakeProfiler(wait=PollTimeout("too slow"))

    assert run_profile_pipeline(EVENT, CONFIG) is RunState.DONE
    assert fakes["profiler"].names() == ["upload", "wait"]
    assert fakes["profiler"].calls[1][2] == 1200
    assert fakes["github"].comments == [("C", TIMEOUT_MESSAGE)]


def test_fetch_failure_report(fakes):
    fakes["profiler"] = FakeProfiler(fetch=FetchError("gone"))

    run_profile_pipeline(EVENT, CONFIG)
    assert fakes["profiler"].names() == ["upload", "wait", "fetch"]
    assert fakes["github"].comments == [("C", FETCH_FAILED_MESSAGE)]


def test_upload_failure_report(fakes):
    fakes["profiler"] = FakeProfiler(upload=UploadError("no apk"))

    tracker = RunTracker()
    run_profile_pipeline(EVENT, CONFIG, tracker)
    assert fakes["profiler"].names() == ["upload"]
    assert fakes["github"].comments == [("C", UPLOAD_FAILED_MESSAGE)]
    assert RunState.UPLOADED not in tracker.history
    assert tracker.state is RunState.DONE


def test_failed_build_still_profiles(fakes):
    fakes["build_code"] = 1
    fakes["profiler"] = FakeProfiler(fetch=[ScenarioOutcome("cold_start", "OK", 412)])

    run_profile_pipeline(EVENT, CONFIG)
    assert fakes["profiler"].names() == ["upload", "wait", "fetch"]
    assert "cold_start | OK | 412" in fakes["github"].comments[0][1]


def test_undeletable_workspace_keeps_profile_report(fakes, monkeypatch):
    fakes["profiler"] = FakeProfiler(fetch=[ScenarioOutcome("cold_start", "OK", 412)])
    real_rmtree = docker_build.shutil.rmtree
    left_behind = []

    def root_owned(path, *a, **k):
        left_behind.append(path)
        raise PermissionError(13, "Permission denied", path)

    monkeypatch.setattr(docker_build.shutil, "rmtree", root_owned)

    tracker = RunTracker()
    assert run_profile_pipeline(EVENT, CONFIG, tracker) is RunState.DONE
    assert RunState.POLLED in tracker.history
    url, body = fakes["github"].comments[0]
    assert url == "C"
    assert "cold_start | OK | 412" in body.split("\n")
    real_rmtree(left_behind[0])


def test_workspace_failure_reports_upload_failure(fakes, monkeypatch):
    def no_workspace():
        raise WorkspaceError("disk full")

    monkeypatch.setattr(pipeline, "ephemeral_workspace", no_workspace)

    assert run_profile_pipeline(EVENT, CONFIG) is RunState.DONE
    assert fakes["builds"] == []
    assert fakes["profiler"].calls == []
    assert fakes["github"].comments == [("C", UPLOAD_FAILED_MESSAGE)]


@pytest.mark.parametrize("body", ["Profile", "profile!", "please profile", "lgtm"])
def test_wrong_command_does_nothing(fakes, body):
    event = {**EVENT, "comment": {"body": body, "user": {"login": "Alice"}}}

    assert run_profile_pipeline(event, CONFIG) is RunState.ABORTED
    assert fakes["builds"] == []
    assert fakes["profiler"].calls == []
    assert fakes["github"].comments == []


def test_unlisted_commenter_does_nothing(fakes):
    event = {**EVENT, "comment": {"body": "profile", "user": {"login": "Mallory"}}}

    tracker = RunTracker()
    assert run_profile_pipeline(event, CONFIG, tracker) is RunState.ABORTED
    assert tracker.history == [RunState.RECEIVED, RunState.EXTRACTED, RunState.ABORTED]
    assert fakes["builds"] == []
    assert fakes["profiler"].calls == []
    assert fakes["github"].comments == []


def test_malformed_event_aborts_before_network(fakes):
    tracker = RunTracker()
    assert run_profile_pipeline({"zen": "hi"}, CONFIG, tracker) is RunState.ABORTED
    assert tracker.history == [RunState.RECEIVED, RunState.ABORTED]
    assert fakes["github"].gets == []
    assert fakes["github"].comments == []


def test_pull_request_lookup_failure_aborts(fakes):
    fakes["github"] = FakeGitHub(pull=requests.ConnectionError("down"))

    assert run_profile_pipeline(EVENT, CONFIG) is RunState.ABORTED
    assert fakes["builds"] == []
    assert fakes["github"].comments == []


def test_publish_failure_is_swallowed(fakes):
    fakes["github"] = FakeGitHub(publish_exc=PublishError("403"))
    fakes["profiler"] = FakeProfiler(fetch=[])

    assert run_profile_pipeline(EVENT, CONFIG) is RunState.DONE
    # one attempt, no retry
    assert len(fakes["github"].comments) == 1


def test_unexpected_error_still_publishes(fakes, monkeypatch):
    def explode(*a, **k):
        raise RuntimeError("docker socket vanished")

    monkeypatch.setattr(pipeline, "run_build", explode)

    assert run_profile_pipeline(EVENT, CONFIG) is RunState.DONE
    assert fakes["github"].comments == [("C", UPLOAD_FAILED_MESSAGE)]


def test_tracker_is_forward_only():
    t = RunTracker()
    t.advance(RunState.EXTRACTED)
    t.advance(RunState.AUTHORIZED)
    with pytest.raises(RuntimeError):
        t.advance(RunState.EXTRACTED)
    with pytest.raises(RuntimeError):
        t.advance(RunState.ABORTED)
    t.advance(RunState.REPORTED)
    t.advance(RunState.DONE)
    with pytest.raises(RuntimeError):
        t.advance(RunState.DONE)

import os
import json
import logging
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

log = logging.getLogger("config")

DEFAULT_PROFILERS_FILE = "./profilers.json"


def int_env(name: str, default: Optional[int]) -> Optional[int]:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        log.warning("ignoring non-integer %s=%r; using %s", name, v, default)
        return default


@dataclass(frozen=True)
class ServerConfig:
    """Process-wide settings, built once at startup and shared read-only by every run."""
    source_api_token: str = ""
    profiling_api_token: str = ""
    allowed_commenters: FrozenSet[str] = field(default_factory=frozenset)

    profiler_api: str = "https://nimbledroid.com"
    profile_timeout_s: int = 1200
    profile_poll_interval_s: int = 30

    build_image: str = "fenix-builder"
    build_script: str = "/buildtools/build_fenix.sh"
    build_target: str = "assembleGeckoNightlyFenixNightly"
    build_output_glob: str = "app/build/outputs/apk/*"
    artifact_relpath: str = "fenixNightly/app-geckoNightly-armeabi-v7a-fenixNightly-unsigned.apk"
    docker_bin: str = "docker"

    # None = no timeout on outbound HTTP
    http_timeout_s: Optional[int] = None


def load_allowed_commenters(filename: str) -> List[str]:
    """
    Read the allow-list file: a JSON array of logins.
    Anything else (missing file, bad JSON, wrong shape) means deny-all.
    """
    try:
        with open(filename, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        log.warning("allow-list %s not found; no one can trigger a profile", filename)
        return []
    except (OSError, ValueError) as e:
        log.error("allow-list %s unreadable (%s); no one can trigger a profile", filename, e)
        return []

    if not isinstance(data, list) or not all(isinstance(x, str) for x in data):
        log.error("allow-list %s must be a JSON array of logins; no one can trigger a profile", filename)
        return []
    return [x.lower() for x in data]


def load_server_config() -> ServerConfig:
    defaults = ServerConfig()
    commenters = load_allowed_commenters(os.getenv("PROFILERS_FILE") or DEFAULT_PROFILERS_FILE)
    return ServerConfig(
        source_api_token=(os.getenv("GITHUB_TOKEN") or "").strip(),
        profiling_api_token=(os.getenv("PROFILER_API_TOKEN") or "").strip(),
        allowed_commenters=frozenset(commenters),
        profiler_api=(os.getenv("PROFILER_API") or defaults.profiler_api).rstrip("/"),
        profile_timeout_s=int_env("PROFILE_TIMEOUT_S", defaults.profile_timeout_s),
        profile_poll_interval_s=int_env("PROFILE_POLL_INTERVAL_S", defaults.profile_poll_interval_s),
        build_image=os.getenv("BUILD_IMAGE") or defaults.build_image,
        build_script=os.getenv("BUILD_SCRIPT") or defaults.build_script,
        build_target=os.getenv("BUILD_TARGET") or defaults.build_target,
        build_output_glob=os.getenv("BUILD_OUTPUT_GLOB") or defaults.build_output_glob,
        artifact_relpath=os.getenv("ARTIFACT_RELPATH") or defaults.artifact_relpath,
        docker_bin=os.getenv("DOCKER_BIN") or defaults.docker_bin,
        http_timeout_s=int_env("HTTP_TIMEOUT_S", None),
    )

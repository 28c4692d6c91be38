import threading
import tomllib
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field


def get_project_root() -> Path:
    """Get the project root directory"""
    return Path(__file__).resolve().parent.parent


PROJECT_ROOT = get_project_root()


DEFAULT_READY_PATTERNS = [
    r"-\s*Local:\s+(?:https?://)?(\S+)",
    r"ready on (?:https?://)?(\S+)",
    r"Local:\s+(?:https?://)?(\S+)",
    r"server running at (?:https?://)?(\S+)",
    r"listening on (?:https?://)?(\S+)",
    r"https?://(\S+)",
]


class GuardSettings(BaseModel):
    system_directories: List[str] = Field(
        default_factory=lambda: [
            "/etc",
            "/proc",
            "/sys",
            "/dev",
            "/root",
            "/home",
            "/boot",
            "/var/log",
        ],
        description="Directories no workspace path may reference",
    )
    extra_deny_patterns: List[str] = Field(
        default_factory=list,
        description="Additional regular expressions rejected in command text",
    )
    allowed_sandbox_ids: List[str] = Field(
        default_factory=list,
        description="If non-empty, only these sandbox ids may be addressed",
    )


class GatewaySettings(BaseModel):
    default_timeout: float = Field(
        10.0, description="Timeout in seconds for interactive sandbox calls"
    )
    workspace_base: str = Field(
        "/app/workspace", description="Parent directory of project workspaces"
    )
    find_max_depth: Optional[int] = Field(
        None, description="Default -maxdepth for find requests (None for unlimited)"
    )
    write_chunk_bytes: int = Field(
        48 * 1024, description="Content bytes sent per write request"
    )


class LifecycleSettings(BaseModel):
    start_command: str = Field("npm run dev", description="Dev server start command")
    process_patterns: List[str] = Field(
        default_factory=lambda: ["npm run dev", "next dev"],
        description="Patterns used by pgrep/pkill to find the dev server",
    )
    log_path: str = Field(
        "logs/dev.log", description="Dev server log, relative to the workspace root"
    )
    start_timeout: float = Field(
        30.0, description="Seconds to wait for the server to report running"
    )
    poll_interval: float = Field(1.0, description="Seconds between status probes")
    ready_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_READY_PATTERNS),
        description="Regexes with one group capturing host:port from log output",
    )
    probe_ports: List[int] = Field(
        default_factory=lambda: [3000, 3001, 8080, 5173, 4000],
        description="Ports probed when the log does not reveal the URL",
    )
    max_restarts: int = Field(5, description="Restarts allowed inside one cooldown window")
    restart_cooldown: float = Field(
        10.0, description="Seconds after the last restart before the counter resets"
    )
    log_tail_lines: int = Field(50, description="Log lines scanned for ready patterns")
    max_log_lines: int = Field(10000, description="Upper bound for log reads")
    health_timeout: float = Field(5.0, description="Seconds allowed for a health probe")


class DispatcherSettings(BaseModel):
    default_max_calls_per_minute: int = Field(
        60, description="Rate limit used when a tool declares none"
    )
    rate_window: float = Field(60.0, description="Rate limit window in seconds")
    default_timeout: Optional[float] = Field(
        None, description="Handler timeout in seconds (None for unlimited)"
    )


class LoopSettings(BaseModel):
    max_retries: int = Field(3, description="Decision loop attempt budget")
    success_markers: List[str] = Field(
        default_factory=lambda: [
            "✅",
            "success",
            "successfully",
            "completed",
            "created",
            "updated",
            "done",
        ],
        description="Markers that suggest a task finished",
    )
    failure_markers: List[str] = Field(
        default_factory=lambda: [
            "❌",
            "error",
            "failed",
            "failure",
            "unable",
            "cannot",
            "not found",
            "retry",
        ],
        description="Markers that suggest more work is needed",
    )


class DockerSettings(BaseModel):
    base_url: Optional[str] = Field(
        None, description="Docker daemon URL (None uses the environment)"
    )
    exec_user: Optional[str] = Field(None, description="User for exec calls")
    lookup_attempts: int = Field(3, description="Attempts for container lookup")


class AppConfig(BaseModel):
    guard: GuardSettings = Field(default_factory=GuardSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)
    loop: LoopSettings = Field(default_factory=LoopSettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)


class Config:
    _instance = None
    _lock = threading.Lock()
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._config = None
                    self._load_initial_config()
                    self._initialized = True

    @staticmethod
    def _get_config_path() -> Path:
        root = PROJECT_ROOT
        config_path = root / "config" / "config.toml"
        if config_path.exists():
            return config_path
        example_path = root / "config" / "config.example.toml"
        if example_path.exists():
            return example_path
        raise FileNotFoundError("No configuration file found in config directory")

    def _load_config(self) -> dict:
        config_path = self._get_config_path()
        with config_path.open("rb") as f:
            return tomllib.load(f)

    def _load_initial_config(self):
        raw_config = self._load_config()
        self._config = AppConfig(
            guard=GuardSettings(**raw_config.get("guard", {})),
            gateway=GatewaySettings(**raw_config.get("gateway", {})),
            lifecycle=LifecycleSettings(**raw_config.get("lifecycle", {})),
            dispatcher=DispatcherSettings(**raw_config.get("dispatcher", {})),
            loop=LoopSettings(**raw_config.get("loop", {})),
            docker=DockerSettings(**raw_config.get("docker", {})),
        )

    @property
    def guard(self) -> GuardSettings:
        return self._config.guard

    @property
    def gateway(self) -> GatewaySettings:
        return self._config.gateway

    @property
    def lifecycle(self) -> LifecycleSettings:
        return self._config.lifecycle

    @property
    def dispatcher(self) -> DispatcherSettings:
        return self._config.dispatcher

    @property
    def loop(self) -> LoopSettings:
        return self._config.loop

    @property
    def docker(self) -> DockerSettings:
        return self._config.docker

    @property
    def root_path(self) -> Path:
        """Get the root path of the application"""
        return PROJECT_ROOT


config = Config()
